"""Appointment state machine and the no-show detector."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from .clock import Clock
from .config import SalonPolicy
from .errors import BookingPolicyViolation, InvalidTransition, NotFound
from .extensions import db
from .models import Appointment, AppointmentStatus, MessageKind, MessageStatus, OutboundMessage
from .notifications import Dispatcher, cancellation_text

logger = logging.getLogger(__name__)

S = AppointmentStatus

TRANSITIONS: dict[str, frozenset[str]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.CANCELED}),
    S.CONFIRMED: frozenset({S.IN_PROGRESS, S.CANCELED, S.NO_SHOW}),
    S.IN_PROGRESS: frozenset({S.COMPLETED}),
    S.COMPLETED: frozenset(),
    S.CANCELED: frozenset(),
    S.NO_SHOW: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


class AppointmentLifecycle:
    def __init__(self, schedules, clients, messages, dispatcher: Dispatcher, clock: Clock) -> None:
        self.schedules = schedules
        self.clients = clients
        self.messages = messages
        self.dispatcher = dispatcher
        self.clock = clock

    def _load(self, appointment_id: int) -> Appointment:
        appointment = self.schedules.get_appointment(appointment_id)
        if appointment is None:
            raise NotFound("Appointment not found")
        return appointment

    def _load_by_token(self, token: str) -> Appointment:
        appointment = self.schedules.get_by_token(token) if token else None
        if appointment is None:
            raise NotFound("Invalid confirmation token")
        return appointment

    @staticmethod
    def _ensure_allowed(appointment: Appointment, target: str) -> None:
        if not can_transition(appointment.status, target):
            raise InvalidTransition(
                f"Cannot move appointment {appointment.appointment_id} from {appointment.status} to {target}",
                current=appointment.status,
                target=target,
            )

    def _transition(self, appointment: Appointment, target: str, **values) -> Appointment:
        self._ensure_allowed(appointment, target)
        current = appointment.status
        if not self.schedules.transition_status(appointment.appointment_id, current, target, **values):
            db.session.rollback()
            raise InvalidTransition(
                f"Appointment {appointment.appointment_id} was modified concurrently",
                current=current,
                target=target,
            )
        return appointment

    def _commit(self, appointment: Appointment, action: str) -> Appointment:
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to %s appointment %s", action, appointment.appointment_id)
            raise
        logger.info("Appointment %s is now %s", appointment.appointment_id, appointment.status)
        return appointment

    # --- Transitions ---

    def confirm(self, appointment_id: int) -> Appointment:
        appointment = self._transition(self._load(appointment_id), S.CONFIRMED)
        return self._commit(appointment, "confirm")

    def confirm_by_token(self, token: str) -> Appointment:
        appointment = self._transition(self._load_by_token(token), S.CONFIRMED)
        return self._commit(appointment, "confirm")

    def start(self, appointment_id: int) -> Appointment:
        appointment = self._transition(self._load(appointment_id), S.IN_PROGRESS)
        return self._commit(appointment, "start")

    def complete(self, appointment_id: int, charge_override_cents: int | None = None) -> Appointment:
        appointment = self._load(appointment_id)
        self._ensure_allowed(appointment, S.COMPLETED)
        values = {}
        if charge_override_cents is not None:
            if charge_override_cents < 0:
                raise BookingPolicyViolation("Charge amount cannot be negative")
            values["charge_override_cents"] = charge_override_cents
        self._transition(appointment, S.COMPLETED, **values)
        return self._commit(appointment, "complete")

    def cancel(self, appointment_id: int, reason: str, by_salon: bool = False) -> Appointment:
        return self._cancel(self._load(appointment_id), reason, by_salon)

    def cancel_by_token(self, token: str, reason: str) -> Appointment:
        return self._cancel(self._load_by_token(token), reason, by_salon=False)

    def _cancel(self, appointment: Appointment, reason: str, by_salon: bool) -> Appointment:
        self._ensure_allowed(appointment, S.CANCELED)
        reason = (reason or "").strip()
        if not reason:
            raise BookingPolicyViolation("A cancellation reason is required")
        if not by_salon:
            policy = SalonPolicy.from_salon(appointment.salon)
            notice = timedelta(hours=policy.min_cancel_notice_hours)
            if appointment.starts_at - self.clock.now() < notice:
                raise BookingPolicyViolation(
                    f"Appointments can only be canceled up to {policy.min_cancel_notice_hours} hours in advance"
                )

        self._transition(appointment, S.CANCELED, cancellation_reason=reason[:500])
        self.schedules.release_slots(appointment)
        message = self._queue_cancellation(appointment)
        self._commit(appointment, "cancel")

        if message is not None:
            self._deliver_notice(message)
        return appointment

    def _deliver_notice(self, message: OutboundMessage) -> None:
        """Send a notice for an already committed change; failures stay on the message."""
        message_id = message.message_id
        try:
            self.dispatcher.deliver(message)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to record delivery of message %s", message_id)

    def _queue_cancellation(self, appointment: Appointment):
        client = appointment.client
        if client is None or not client.phone:
            logger.info("Client of appointment %s has no phone, skipping cancellation notice", appointment.appointment_id)
            return None
        now = self.clock.now()
        return self.messages.save(
            OutboundMessage(
                salon_id=appointment.salon_id,
                appointment_id=appointment.appointment_id,
                kind=MessageKind.CANCELLATION,
                channel=self.dispatcher.sender.channel,
                target=client.phone,
                content=cancellation_text(appointment),
                status=MessageStatus.QUEUED,
                attempts=1,
                scheduled_for=appointment.starts_at,
                created_at=now,
                last_attempt_at=now,
            )
        )

    def record_no_show(self, appointment: Appointment) -> bool:
        """Apply a no-show inside the caller's transaction; return True if the client got blocked."""
        self._transition(appointment, S.NO_SHOW)
        self.schedules.release_slots(appointment)
        count = self.clients.increment_no_show(appointment.client_id)
        policy = SalonPolicy.from_salon(appointment.salon)
        if count >= policy.max_no_shows and not appointment.client.blocked:
            self.clients.set_blocked(appointment.client_id, True)
            logger.warning(
                "Client %s blocked after %s no-shows (limit %s)",
                appointment.client_id,
                count,
                policy.max_no_shows,
            )
            return True
        return False

    def mark_no_show(self, appointment_id: int) -> Appointment:
        appointment = self._load(appointment_id)
        self._ensure_allowed(appointment, S.NO_SHOW)
        if appointment.starts_at > self.clock.now():
            raise BookingPolicyViolation("Cannot mark a no-show before the appointment starts")
        self.record_no_show(appointment)
        return self._commit(appointment, "mark no-show")


@dataclass
class NoShowSummary:
    candidates: int = 0
    marked: int = 0
    blocked: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class NoShowDetector:
    """Sweep that turns confirmed appointments past their grace period into no-shows.

    Each appointment is processed in its own transaction. The status guard makes
    a second pass a no-op, so a failed item is simply picked up again next run.
    """

    def __init__(self, lifecycle: AppointmentLifecycle, schedules, clock: Clock, grace_minutes: int = 15) -> None:
        self.lifecycle = lifecycle
        self.schedules = schedules
        self.clock = clock
        self.grace = timedelta(minutes=grace_minutes)

    def run(self) -> NoShowSummary:
        cutoff = self.clock.now() - self.grace
        candidate_ids = [a.appointment_id for a in self.schedules.find_no_show_candidates(cutoff)]
        summary = NoShowSummary(candidates=len(candidate_ids))

        for appointment_id in candidate_ids:
            try:
                appointment = self.schedules.get_appointment(appointment_id)
                if appointment is None or appointment.status != S.CONFIRMED:
                    summary.skipped += 1
                    continue
                blocked = self.lifecycle.record_no_show(appointment)
                db.session.commit()
            except InvalidTransition:
                db.session.rollback()
                summary.skipped += 1
                logger.info("Appointment %s changed during no-show sweep, skipping", appointment_id)
            except Exception:
                db.session.rollback()
                summary.failed += 1
                logger.exception("Failed to mark appointment %s as no-show", appointment_id)
            else:
                summary.marked += 1
                summary.blocked += int(blocked)
                logger.info("Appointment %s marked as no-show", appointment_id)

        if summary.candidates:
            logger.info("No-show sweep finished: %s", summary.to_dict())
        return summary
