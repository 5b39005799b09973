"""Persistence access for appointments, clients and outbound messages.

Stores flush but never commit; transaction boundaries belong to the caller.
Status changes are compare-and-set updates so that two writers racing on the
same row cannot both succeed.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from .conflicts import block_occurrences, occupied_cells
from .extensions import db
from .models import (
    Appointment,
    AppointmentSlot,
    AppointmentStatus,
    Client,
    MessageKind,
    MessageStatus,
    OutboundMessage,
    Salon,
    Schedule,
    Service,
    Staff,
    TimeBlock,
)

logger = logging.getLogger(__name__)

RECEIPT_STATUSES = {
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.DELIVERED,
    "failed": MessageStatus.FAILED,
}

REMINDER_FLAGS = {
    MessageKind.REMINDER_24H: "reminder_24h_sent",
    MessageKind.REMINDER_2H: "reminder_2h_sent",
}


def reminder_flag(kind: str) -> str:
    try:
        return REMINDER_FLAGS[kind]
    except KeyError:
        raise ValueError(f"Unknown reminder kind: {kind}") from None


class ScheduleStore:
    """Appointments, working hours and time blocks of professionals."""

    def get_salon(self, salon_id: int) -> Salon | None:
        return db.session.get(Salon, salon_id)

    def get_staff(self, staff_id: int) -> Staff | None:
        return db.session.get(Staff, staff_id)

    def get_services(self, service_ids: Iterable[int]) -> dict[int, Service]:
        ids = set(service_ids)
        if not ids:
            return {}
        rows = db.session.execute(select(Service).where(Service.service_id.in_(sorted(ids)))).scalars()
        return {service.service_id: service for service in rows}

    def get_appointment(self, appointment_id: int) -> Appointment | None:
        return db.session.get(Appointment, appointment_id)

    def get_by_token(self, token: str) -> Appointment | None:
        return db.session.execute(
            select(Appointment).where(Appointment.confirmation_token == token)
        ).scalar_one_or_none()

    def find_conflicts(
        self,
        staff_id: int,
        start: datetime,
        end: datetime,
        exclude_id: int | None = None,
    ) -> list[Appointment]:
        query = select(Appointment).where(
            Appointment.staff_id == staff_id,
            Appointment.status.notin_(sorted(AppointmentStatus.NON_OCCUPYING)),
            Appointment.starts_at < end,
            Appointment.ends_at > start,
        )
        if exclude_id is not None:
            query = query.where(Appointment.appointment_id != exclude_id)
        return list(db.session.execute(query.order_by(Appointment.starts_at)).scalars())

    def find_blocks(self, staff_id: int, start: datetime, end: datetime) -> list[TimeBlock]:
        query = select(TimeBlock).where(
            TimeBlock.staff_id == staff_id,
            TimeBlock.starts_at < end,
            or_(TimeBlock.is_recurring.is_(True), TimeBlock.ends_at > start),
        )
        blocks = db.session.execute(query.order_by(TimeBlock.starts_at)).scalars()
        return [block for block in blocks if any(block_occurrences(block, start, end))]

    def find_work_schedule(self, staff_id: int, weekday: int) -> Schedule | None:
        return db.session.execute(
            select(Schedule).where(Schedule.staff_id == staff_id, Schedule.day_of_week == weekday)
        ).scalar_one_or_none()

    def save(self, appointment: Appointment) -> Appointment:
        db.session.add(appointment)
        db.session.flush()
        return appointment

    def occupy(self, appointment: Appointment) -> None:
        appointment.slots = [
            AppointmentSlot(staff_id=appointment.staff_id, slot_start=cell)
            for cell in occupied_cells(appointment.starts_at, appointment.ends_at)
        ]

    def release_slots(self, appointment: Appointment) -> None:
        appointment.slots.clear()
        db.session.flush()

    def find_needing_reminder(self, kind: str, start: datetime, end: datetime) -> list[Appointment]:
        """Confirmed appointments starting within ``[start, end]`` whose reminder flag is unset."""
        flag = getattr(Appointment, reminder_flag(kind))
        query = (
            select(Appointment)
            .where(
                Appointment.status == AppointmentStatus.CONFIRMED,
                flag.is_(False),
                Appointment.starts_at >= start,
                Appointment.starts_at <= end,
            )
            .order_by(Appointment.starts_at, Appointment.appointment_id)
        )
        return list(db.session.execute(query).scalars())

    def find_no_show_candidates(self, cutoff: datetime) -> list[Appointment]:
        query = (
            select(Appointment)
            .where(
                Appointment.status == AppointmentStatus.CONFIRMED,
                Appointment.starts_at < cutoff,
            )
            .order_by(Appointment.starts_at, Appointment.appointment_id)
        )
        return list(db.session.execute(query).scalars())

    def transition_status(self, appointment_id: int, current: str, target: str, **values) -> bool:
        """Move the appointment to ``target`` only if it is still in ``current``."""
        result = db.session.execute(
            update(Appointment)
            .where(Appointment.appointment_id == appointment_id, Appointment.status == current)
            .values(status=target, **values)
        )
        return result.rowcount == 1

    def mark_reminder_sent(self, appointment_id: int, kind: str, scheduled_for: datetime | None) -> bool:
        """Set the reminder flag, provided the appointment is still booked at ``scheduled_for``."""
        if scheduled_for is None:
            return False
        query = update(Appointment).where(
            Appointment.appointment_id == appointment_id,
            Appointment.starts_at == scheduled_for,
        )
        flag = getattr(Appointment, reminder_flag(kind))
        result = db.session.execute(query.values({flag: True}))
        return result.rowcount == 1


class ClientStore:
    def get(self, client_id: int) -> Client | None:
        return db.session.get(Client, client_id)

    def increment_no_show(self, client_id: int) -> int:
        """Increment the counter in SQL and return the new value."""
        db.session.execute(
            update(Client)
            .where(Client.client_id == client_id)
            .values(no_shows=Client.no_shows + 1)
            .execution_options(synchronize_session="fetch")
        )
        return db.session.execute(
            select(Client.no_shows).where(Client.client_id == client_id)
        ).scalar_one()

    def increment_total_appointments(self, client_id: int) -> None:
        db.session.execute(
            update(Client)
            .where(Client.client_id == client_id)
            .values(total_appointments=Client.total_appointments + 1)
            .execution_options(synchronize_session="fetch")
        )

    def set_blocked(self, client_id: int, blocked: bool) -> None:
        db.session.execute(
            update(Client).where(Client.client_id == client_id).values(blocked=blocked)
        )


class MessageStore:
    """Outbound messages and their delivery bookkeeping."""

    def __init__(self, max_attempts: int = 3) -> None:
        self.max_attempts = max_attempts

    def get(self, message_id: int) -> OutboundMessage | None:
        return db.session.get(OutboundMessage, message_id)

    def save(self, message: OutboundMessage) -> OutboundMessage:
        db.session.add(message)
        db.session.flush()
        return message

    def find_retryable(self, since: datetime) -> list[OutboundMessage]:
        """Failed messages created after ``since`` with attempts left, oldest first."""
        query = (
            select(OutboundMessage)
            .where(
                OutboundMessage.status == MessageStatus.FAILED,
                OutboundMessage.attempts < self.max_attempts,
                OutboundMessage.created_at > since,
                OutboundMessage.exhausted.is_(False),
            )
            .order_by(OutboundMessage.created_at, OutboundMessage.message_id)
        )
        return list(db.session.execute(query).scalars())

    def find_reminder(self, appointment_id: int, kind: str, scheduled_for: datetime) -> OutboundMessage | None:
        return db.session.execute(
            select(OutboundMessage).where(
                OutboundMessage.appointment_id == appointment_id,
                OutboundMessage.kind == kind,
                OutboundMessage.scheduled_for == scheduled_for,
            )
        ).scalar_one_or_none()

    def create_claimed(self, **fields) -> OutboundMessage | None:
        """Insert a message as the first delivery attempt.

        Returns None when another worker already holds the same
        (appointment, kind, scheduled_for) message. The session must not carry
        other pending changes, since a lost race rolls it back.
        """
        message = OutboundMessage(
            status=MessageStatus.QUEUED,
            attempts=1,
            **fields,
        )
        message.last_attempt_at = message.last_attempt_at or message.created_at
        db.session.add(message)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            return None
        return message

    def claim_for_retry(self, message_id: int, now: datetime) -> bool:
        result = db.session.execute(
            update(OutboundMessage)
            .where(
                OutboundMessage.message_id == message_id,
                OutboundMessage.status == MessageStatus.FAILED,
                OutboundMessage.attempts < self.max_attempts,
            )
            .values(
                status=MessageStatus.RETRYING,
                attempts=OutboundMessage.attempts + 1,
                last_attempt_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    def mark_sent(self, message: OutboundMessage, provider_message_id: str | None, now: datetime) -> None:
        message.status = MessageStatus.SENT
        message.provider_message_id = provider_message_id
        message.error_message = None
        message.last_attempt_at = now
        db.session.flush()

    def mark_failed(self, message: OutboundMessage, error: str, now: datetime) -> None:
        message.status = MessageStatus.FAILED
        message.error_message = error
        message.last_attempt_at = now
        db.session.flush()

    def recover_stale(self, older_than: datetime) -> int:
        """Return messages left in flight by an interrupted worker to FAILED."""
        result = db.session.execute(
            update(OutboundMessage)
            .where(
                OutboundMessage.status.in_(sorted(MessageStatus.IN_FLIGHT)),
                func.coalesce(OutboundMessage.last_attempt_at, OutboundMessage.created_at) < older_than,
            )
            .values(status=MessageStatus.FAILED, error_message="Delivery interrupted before completion")
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    def mark_exhausted(self, since: datetime) -> list[OutboundMessage]:
        """Flag failed messages that are out of attempts or older than ``since``."""
        query = select(OutboundMessage).where(
            OutboundMessage.status == MessageStatus.FAILED,
            OutboundMessage.exhausted.is_(False),
            or_(
                OutboundMessage.attempts >= self.max_attempts,
                OutboundMessage.created_at <= since,
            ),
        )
        messages = list(db.session.execute(query.order_by(OutboundMessage.created_at)).scalars())
        for message in messages:
            message.exhausted = True
        db.session.flush()
        return messages

    def find_exhausted(self, salon_id: int | None = None) -> list[OutboundMessage]:
        query = select(OutboundMessage).where(OutboundMessage.exhausted.is_(True))
        if salon_id is not None:
            query = query.where(OutboundMessage.salon_id == salon_id)
        return list(db.session.execute(query.order_by(OutboundMessage.created_at)).scalars())

    def detach_reminders(self, appointment_id: int) -> int:
        """Release the reminder keys of an appointment whose booked time starts over.

        Detached rows keep their history but no longer match
        (appointment, kind, scheduled_for), so the new booking gets fresh reminders.
        """
        result = db.session.execute(
            update(OutboundMessage)
            .where(
                OutboundMessage.appointment_id == appointment_id,
                OutboundMessage.kind.in_(sorted(MessageKind.REMINDERS)),
                OutboundMessage.scheduled_for.is_not(None),
            )
            .values(scheduled_for=None)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    def record_delivery_status(self, provider_message_id: str, status: str) -> OutboundMessage | None:
        """Apply a provider delivery receipt (sent, delivered, read or failed).

        Unknown statuses are ignored, and a delivered message never moves back.
        """
        target = RECEIPT_STATUSES.get((status or "").lower())
        if target is None:
            logger.warning("Ignoring unsupported delivery status %r for %s", status, provider_message_id)
            return None
        message = db.session.execute(
            select(OutboundMessage).where(OutboundMessage.provider_message_id == provider_message_id)
        ).scalar_one_or_none()
        if message is None:
            return None
        if message.status == MessageStatus.DELIVERED:
            logger.debug("Message %s already delivered, ignoring %s receipt", message.message_id, status)
            return message
        message.status = target
        db.session.flush()
        return message
