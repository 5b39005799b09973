"""Bounded redelivery of failed outbound messages."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta

from .clock import Clock
from .extensions import db
from .models import AppointmentStatus, MessageKind, OutboundMessage
from .notifications import FAILED, SENT, SKIPPED, Dispatcher

logger = logging.getLogger(__name__)


@dataclass
class RetrySummary:
    recovered: int = 0
    candidates: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    exhausted: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class RetryEngine:
    """Redelivers FAILED messages, oldest first, while attempts and age allow.

    Messages that run out of attempts or age out are flagged ``exhausted`` and
    logged once so an operator can pick them up; they are never dropped.
    """

    def __init__(
        self,
        messages,
        schedules,
        dispatcher: Dispatcher,
        clock: Clock,
        window_hours: int = 24,
        stale_minutes: int = 30,
    ) -> None:
        self.messages = messages
        self.schedules = schedules
        self.dispatcher = dispatcher
        self.clock = clock
        self.window = timedelta(hours=window_hours)
        self.stale_after = timedelta(minutes=stale_minutes)

    @property
    def max_attempts(self) -> int:
        return self.messages.max_attempts

    def run(self) -> RetrySummary:
        now = self.clock.now()
        since = now - self.window
        summary = RetrySummary()

        summary.recovered = self.messages.recover_stale(now - self.stale_after)
        db.session.commit()
        if summary.recovered:
            logger.warning("Recovered %s messages left in flight", summary.recovered)

        message_ids = [message.message_id for message in self.messages.find_retryable(since)]
        summary.candidates = len(message_ids)
        for message_id in message_ids:
            try:
                outcome = self._retry(message_id)
            except Exception:
                db.session.rollback()
                summary.failed += 1
                logger.exception("Failed to retry message %s", message_id)
                continue
            setattr(summary, outcome, getattr(summary, outcome) + 1)

        for message in self.messages.mark_exhausted(since):
            summary.exhausted += 1
            logger.warning(
                "Message %s (%s to %s) gave up after %s attempts: %s",
                message.message_id,
                message.kind,
                message.target,
                message.attempts,
                message.error_message,
            )
        db.session.commit()

        if summary.candidates or summary.exhausted or summary.recovered:
            logger.info("Retry sweep finished: %s", summary.to_dict())
        return summary

    def _still_relevant(self, message: OutboundMessage) -> bool:
        if message.kind not in MessageKind.REMINDERS or message.appointment is None:
            return True
        appointment = message.appointment
        return (
            appointment.status == AppointmentStatus.CONFIRMED
            and appointment.starts_at == message.scheduled_for
        )

    def _retry(self, message_id: int) -> str:
        message = self.messages.get(message_id)
        if message is None:
            return SKIPPED
        if not self._still_relevant(message):
            message.exhausted = True
            message.error_message = "Appointment is no longer confirmed for this time"
            db.session.commit()
            logger.info("Dropped reminder %s for a changed appointment", message_id)
            return SKIPPED

        if not self.messages.claim_for_retry(message_id, self.clock.now()):
            db.session.rollback()
            return SKIPPED
        db.session.commit()

        delivered = self.dispatcher.deliver(message)
        if delivered and message.kind in MessageKind.REMINDERS and message.appointment_id:
            self.schedules.mark_reminder_sent(message.appointment_id, message.kind, message.scheduled_for)
        db.session.commit()
        return SENT if delivered else FAILED
