"""24-hour and 2-hour appointment reminder sweeps.

A reminder is claimed by inserting its OutboundMessage, keyed by
(appointment, kind, start time), and committing before anything is sent.
Overlapping sweeps find the claim and skip, so each reminder is dispatched at
most once per attempt. The appointment flag is set only after a successful
delivery.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from .clock import Clock
from .extensions import db
from .models import Appointment, AppointmentStatus, MessageKind, MessageStatus
from .notifications import FAILED, SENT, SKIPPED, Dispatcher, reminder_24h_text, reminder_2h_text
from .stores import reminder_flag

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReminderRule:
    kind: str
    offset: timedelta
    tolerance: timedelta

    def window(self, now: datetime) -> tuple[datetime, datetime]:
        target = now + self.offset
        return target - self.tolerance, target + self.tolerance


REMINDER_RULES = {
    MessageKind.REMINDER_24H: ReminderRule(
        MessageKind.REMINDER_24H, timedelta(hours=24), timedelta(minutes=15)
    ),
    MessageKind.REMINDER_2H: ReminderRule(
        MessageKind.REMINDER_2H, timedelta(hours=2), timedelta(minutes=7)
    ),
}

REPAIRED = "repaired"


@dataclass
class ReminderSummary:
    kind: str
    candidates: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    repaired: int = 0

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


class ReminderScheduler:
    def __init__(
        self,
        schedules,
        messages,
        dispatcher: Dispatcher,
        clock: Clock,
        frontend_url: str = "http://localhost:3000",
    ) -> None:
        self.schedules = schedules
        self.messages = messages
        self.dispatcher = dispatcher
        self.clock = clock
        self.frontend_url = frontend_url

    def content_for(self, kind: str, appointment: Appointment) -> str:
        if kind == MessageKind.REMINDER_24H:
            return reminder_24h_text(appointment, self.frontend_url)
        return reminder_2h_text(appointment)

    def run(self, kind: str) -> ReminderSummary:
        rule = REMINDER_RULES[kind]
        start, end = rule.window(self.clock.now())
        candidate_ids = [a.appointment_id for a in self.schedules.find_needing_reminder(kind, start, end)]
        summary = ReminderSummary(kind=kind, candidates=len(candidate_ids))

        for appointment_id in candidate_ids:
            try:
                outcome = self._remind(kind, appointment_id)
            except Exception:
                db.session.rollback()
                summary.failed += 1
                logger.exception("Failed to process %s for appointment %s", kind, appointment_id)
                continue
            setattr(summary, outcome, getattr(summary, outcome) + 1)

        if summary.candidates:
            logger.info("Reminder sweep finished: %s", summary.to_dict())
        return summary

    def _remind(self, kind: str, appointment_id: int) -> str:
        appointment = self.schedules.get_appointment(appointment_id)
        if (
            appointment is None
            or appointment.status != AppointmentStatus.CONFIRMED
            or getattr(appointment, reminder_flag(kind))
        ):
            return SKIPPED

        client = appointment.client
        if client is None or not client.phone:
            logger.info("Client of appointment %s has no phone, skipping %s", appointment_id, kind)
            return SKIPPED

        now = self.clock.now()
        existing = self.messages.find_reminder(appointment_id, kind, appointment.starts_at)
        if existing is not None:
            if existing.status in MessageStatus.DONE:
                # Delivered earlier but the flag update did not land.
                self.schedules.mark_reminder_sent(appointment_id, kind, appointment.starts_at)
                db.session.commit()
                return REPAIRED
            if existing.status != MessageStatus.FAILED or existing.exhausted:
                return SKIPPED
            if not self.messages.claim_for_retry(existing.message_id, now):
                db.session.rollback()
                return SKIPPED
            message = existing
        else:
            message = self.messages.create_claimed(
                salon_id=appointment.salon_id,
                appointment_id=appointment_id,
                kind=kind,
                channel=self.dispatcher.sender.channel,
                target=client.phone,
                content=self.content_for(kind, appointment),
                scheduled_for=appointment.starts_at,
                created_at=now,
            )
            if message is None:
                return SKIPPED
        scheduled_for = message.scheduled_for
        db.session.commit()

        delivered = self.dispatcher.deliver(message)
        if delivered:
            self.schedules.mark_reminder_sent(appointment_id, kind, scheduled_for)
        db.session.commit()
        return SENT if delivered else FAILED
