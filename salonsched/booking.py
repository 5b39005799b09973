"""Booking and rescheduling of appointments.

A booking is planned (services and span), validated against the salon's
booking rules, the professional's working hours and the existing calendar,
then inserted together with its occupancy cells. The unique
``(staff_id, slot_start)`` constraint on those cells makes the insert fail if
a concurrent booking took any part of the interval after our check.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .clock import Clock
from .config import SalonPolicy
from .conflicts import block_occurrences, check_working_hours, find_conflicts, overlaps
from .durations import (
    PlannedService,
    ServiceRequest,
    ServiceSelection,
    compute_end,
    plan_services,
    total_minutes,
    total_price_cents,
)
from .errors import (
    BookingPolicyViolation,
    ClientBlocked,
    InvalidTransition,
    NotFound,
    OutsideWorkingHours,
    SchedulingConflict,
)
from .extensions import db
from .models import (
    SLOT_GRID_MINUTES,
    Appointment,
    AppointmentService,
    AppointmentStatus,
    Salon,
    Staff,
)

logger = logging.getLogger(__name__)

RESCHEDULABLE = (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)


@dataclass(frozen=True)
class BookingRequest:
    salon_id: int
    staff_id: int
    client_id: int
    start: datetime
    services: ServiceSelection
    notes: str | None = None
    # Bookings made by the client online honour the online-booking switches.
    online: bool = True


class BookingService:
    def __init__(self, schedules, clients, messages, clock: Clock, rate_limiter=None) -> None:
        self.schedules = schedules
        self.clients = clients
        self.messages = messages
        self.clock = clock
        self.rate_limiter = rate_limiter

    # --- Lookups ---

    def _salon_and_staff(self, salon_id: int, staff_id: int) -> tuple[Salon, Staff]:
        salon = self.schedules.get_salon(salon_id)
        if salon is None:
            raise NotFound("Salon not found")
        staff = self.schedules.get_staff(staff_id)
        if staff is None or staff.salon_id != salon.salon_id or not staff.is_active:
            raise NotFound("Professional not found")
        return salon, staff

    def _plan(self, selection: ServiceSelection, salon_id: int) -> list[PlannedService]:
        catalog = self.schedules.get_services(selection.service_ids())
        return plan_services(selection, catalog, salon_id=salon_id)

    # --- Rules ---

    @staticmethod
    def _check_slot_interval(policy: SalonPolicy) -> None:
        if policy.slot_minutes <= 0 or policy.slot_minutes % SLOT_GRID_MINUTES:
            raise BookingPolicyViolation(
                f"Salon slot interval must be a positive multiple of {SLOT_GRID_MINUTES} minutes"
            )

    def _check_start(self, policy: SalonPolicy, start: datetime) -> None:
        self._check_slot_interval(policy)
        minute_of_day = start.hour * 60 + start.minute
        if start.second or start.microsecond or minute_of_day % policy.slot_minutes:
            raise BookingPolicyViolation(
                f"Appointments must start on a {policy.slot_minutes}-minute boundary"
            )
        earliest = self.clock.now() + timedelta(hours=policy.min_advance_hours)
        if start < earliest:
            raise BookingPolicyViolation(
                f"Appointments must be booked at least {policy.min_advance_hours} hours in advance"
            )

    def check_availability(
        self,
        staff_id: int,
        start: datetime,
        end: datetime,
        exclude_id: int | None = None,
    ) -> None:
        """Raise OutsideWorkingHours or SchedulingConflict if the interval cannot be booked."""
        schedule = self.schedules.find_work_schedule(staff_id, start.weekday())
        check_working_hours(schedule, start, end)
        find_conflicts(self.schedules, staff_id, start, end, exclude_id=exclude_id).raise_if_any()

    # --- Persistence ---

    @staticmethod
    def _line_items(planned: list[PlannedService]) -> list[AppointmentService]:
        return [
            AppointmentService(
                sequence=item.sequence,
                service_id=item.service_id,
                duration_minutes=item.duration_minutes,
                prep_minutes=item.prep_minutes,
                price_cents=item.price_cents,
            )
            for item in planned
        ]

    def _commit(self, staff_id: int, start: datetime) -> None:
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            logger.info("Concurrent booking rejected for staff %s at %s", staff_id, start)
            raise SchedulingConflict("This time was just booked by someone else") from exc
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to save appointment for staff %s at %s", staff_id, start)
            raise

    # --- Operations ---

    def book(self, request: BookingRequest) -> Appointment:
        if self.rate_limiter is not None:
            self.rate_limiter.hit(f"booking:{request.client_id}")

        salon, staff = self._salon_and_staff(request.salon_id, request.staff_id)
        policy = SalonPolicy.from_salon(salon)
        if request.online and not policy.accepts_online_booking:
            raise BookingPolicyViolation("This salon does not accept online bookings")
        if request.online and not staff.accepts_online_booking:
            raise BookingPolicyViolation("This professional does not accept online bookings")

        client = self.clients.get(request.client_id)
        if client is None or client.salon_id != salon.salon_id:
            raise NotFound("Client not found")
        if client.blocked:
            raise ClientBlocked("Client is blocked from booking at this salon")

        planned = self._plan(request.services, salon.salon_id)
        end = compute_end(request.start, planned)
        self._check_start(policy, request.start)
        self.check_availability(staff.staff_id, request.start, end)

        appointment = Appointment(
            salon_id=salon.salon_id,
            staff_id=staff.staff_id,
            client_id=client.client_id,
            starts_at=request.start,
            ends_at=end,
            status=AppointmentStatus.CONFIRMED if policy.auto_confirm else AppointmentStatus.PENDING,
            notes=(request.notes or "").strip() or None,
            price_cents=total_price_cents(planned),
            confirmation_token=uuid.uuid4().hex,
            reminder_24h_sent=False,
            reminder_2h_sent=False,
        )
        appointment.line_items = self._line_items(planned)
        self.schedules.occupy(appointment)

        try:
            self.schedules.save(appointment)
            self.clients.increment_total_appointments(client.client_id)
        except IntegrityError as exc:
            db.session.rollback()
            logger.info("Concurrent booking rejected for staff %s at %s", staff.staff_id, request.start)
            raise SchedulingConflict("This time was just booked by someone else") from exc
        self._commit(staff.staff_id, request.start)

        logger.info(
            "Booked appointment %s for client %s with staff %s at %s",
            appointment.appointment_id,
            client.client_id,
            staff.staff_id,
            appointment.starts_at,
        )
        return appointment

    def reschedule(
        self,
        appointment_id: int,
        new_start: datetime,
        services: ServiceSelection | None = None,
        staff_id: int | None = None,
    ) -> Appointment:
        """Move an appointment to a new time, optionally changing services or professional.

        The appointment returns to PENDING and both reminder flags start over for
        the new time; reminder messages sent or queued for the old booking are
        detached from it.
        """
        appointment = self.schedules.get_appointment(appointment_id)
        if appointment is None:
            raise NotFound("Appointment not found")
        if appointment.status not in RESCHEDULABLE:
            raise InvalidTransition(
                f"Cannot reschedule a {appointment.status} appointment",
                current=appointment.status,
                target=AppointmentStatus.PENDING,
            )

        salon, staff = self._salon_and_staff(appointment.salon_id, staff_id or appointment.staff_id)
        policy = SalonPolicy.from_salon(salon)
        if services is None:
            services = ServiceSelection.of(
                *[
                    ServiceRequest(item.service_id, item.duration_minutes, item.prep_minutes)
                    for item in appointment.line_items
                ]
            )
        planned = self._plan(services, salon.salon_id)
        end = compute_end(new_start, planned)
        self._check_start(policy, new_start)
        self.check_availability(staff.staff_id, new_start, end, exclude_id=appointment.appointment_id)

        current = appointment.status
        if not self.schedules.transition_status(
            appointment.appointment_id,
            current,
            AppointmentStatus.PENDING,
            reminder_24h_sent=False,
            reminder_2h_sent=False,
        ):
            db.session.rollback()
            raise InvalidTransition(
                "Appointment was modified concurrently",
                current=current,
                target=AppointmentStatus.PENDING,
            )
        self.messages.detach_reminders(appointment.appointment_id)

        # Old cells and line items must be gone before the new ones are inserted.
        appointment.slots.clear()
        appointment.line_items.clear()
        db.session.flush()

        appointment.staff_id = staff.staff_id
        appointment.starts_at = new_start
        appointment.ends_at = end
        appointment.price_cents = total_price_cents(planned)
        appointment.line_items = self._line_items(planned)
        self.schedules.occupy(appointment)
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            raise SchedulingConflict("This time was just booked by someone else") from exc
        self._commit(staff.staff_id, new_start)

        logger.info("Rescheduled appointment %s to %s", appointment.appointment_id, new_start)
        return appointment

    def available_slots(self, staff_id: int, day: date, services: ServiceSelection) -> list[datetime]:
        """Start times on the salon's slot grid at which the services could be booked."""
        staff = self.schedules.get_staff(staff_id)
        if staff is None:
            raise NotFound("Professional not found")
        salon, staff = self._salon_and_staff(staff.salon_id, staff_id)
        policy = SalonPolicy.from_salon(salon)
        self._check_slot_interval(policy)

        schedule = self.schedules.find_work_schedule(staff_id, day.weekday())
        if schedule is None or not schedule.is_active:
            return []

        span = timedelta(minutes=total_minutes(self._plan(services, salon.salon_id)))
        day_start = datetime.combine(day, schedule.start_time)
        day_end = datetime.combine(day, schedule.end_time)

        busy = [
            (appointment.starts_at, appointment.ends_at)
            for appointment in self.schedules.find_conflicts(staff_id, day_start, day_end)
        ]
        for block in self.schedules.find_blocks(staff_id, day_start, day_end):
            busy.extend(block_occurrences(block, day_start, day_end))

        earliest = self.clock.now() + timedelta(hours=policy.min_advance_hours)
        step = timedelta(minutes=policy.slot_minutes)
        candidate = datetime.combine(day, time.min)
        while candidate < day_start:
            candidate += step

        slots = []
        while candidate + span <= day_end:
            end = candidate + span
            if candidate >= earliest and not any(overlaps(candidate, end, s, e) for s, e in busy):
                try:
                    check_working_hours(schedule, candidate, end)
                except OutsideWorkingHours:
                    pass
                else:
                    slots.append(candidate)
            candidate += step
        return slots
