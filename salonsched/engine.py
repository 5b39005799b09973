"""Composition of stores, services and sweeps into one engine per app."""
from __future__ import annotations

from typing import Mapping

from flask import current_app

from .audit import appointment_state, appointment_state_by_token, audited
from .booking import BookingService
from .cache import KeyValueStore, RateLimiter, build_store
from .clock import Clock, SystemClock
from .extensions import ENGINE_KEY, db
from .lifecycle import AppointmentLifecycle, NoShowDetector
from .notifications import Dispatcher, NotificationSender, build_sender
from .reminders import ReminderScheduler
from .retry import RetryEngine
from .stores import ClientStore, MessageStore, ScheduleStore


class SchedulingEngine:
    """Entry points for booking, lifecycle transitions and the background sweeps.

    Booking and lifecycle operations are exposed through ``audited`` wrappers;
    the underlying services stay available as attributes for internal use.
    """

    def __init__(
        self,
        config: Mapping[str, object],
        clock: Clock | None = None,
        sender: NotificationSender | None = None,
        store: KeyValueStore | None = None,
    ) -> None:
        self.config = config
        self.clock = clock or SystemClock()

        self.schedules = ScheduleStore()
        self.clients = ClientStore()
        self.messages = MessageStore(max_attempts=int(config.get("RETRY_MAX_ATTEMPTS", 3)))

        self.cache = store or build_store(config, self.clock)
        self.rate_limiter = RateLimiter(
            self.cache,
            limit=int(config.get("BOOKING_RATE_LIMIT", 20)),
            window_seconds=int(config.get("BOOKING_RATE_WINDOW_SECONDS", 3600)),
        )
        self.sender = sender or build_sender(config)
        self.dispatcher = Dispatcher(self.sender, self.messages, self.clock)

        self.booking = BookingService(
            self.schedules, self.clients, self.messages, self.clock, self.rate_limiter
        )
        self.lifecycle = AppointmentLifecycle(
            self.schedules, self.clients, self.messages, self.dispatcher, self.clock
        )
        self.no_shows = NoShowDetector(
            self.lifecycle,
            self.schedules,
            self.clock,
            grace_minutes=int(config.get("NO_SHOW_GRACE_MINUTES", 15)),
        )
        self.reminders = ReminderScheduler(
            self.schedules,
            self.messages,
            self.dispatcher,
            self.clock,
            frontend_url=str(config.get("FRONTEND_URL") or "http://localhost:3000"),
        )
        self.retry = RetryEngine(
            self.messages,
            self.schedules,
            self.dispatcher,
            self.clock,
            window_hours=int(config.get("RETRY_WINDOW_HOURS", 24)),
            stale_minutes=int(config.get("RETRY_STALE_MINUTES", 30)),
        )

        self.book = audited("BOOK", "appointment")(self.booking.book)
        self.reschedule = audited("RESCHEDULE", "appointment", before=appointment_state)(
            self.booking.reschedule
        )
        self.confirm = audited("CONFIRM", "appointment", before=appointment_state)(self.lifecycle.confirm)
        self.confirm_by_token = audited("CONFIRM", "appointment", before=appointment_state_by_token)(
            self.lifecycle.confirm_by_token
        )
        self.start = audited("START", "appointment", before=appointment_state)(self.lifecycle.start)
        self.complete = audited("COMPLETE", "appointment", before=appointment_state)(self.lifecycle.complete)
        self.cancel = audited("CANCEL", "appointment", before=appointment_state)(self.lifecycle.cancel)
        self.cancel_by_token = audited("CANCEL", "appointment", before=appointment_state_by_token)(
            self.lifecycle.cancel_by_token
        )
        self.mark_no_show = audited("NO_SHOW", "appointment", before=appointment_state)(
            self.lifecycle.mark_no_show
        )

    def with_clock(self, clock: Clock) -> "SchedulingEngine":
        """A copy of this engine evaluating time with ``clock``, sharing sender and store."""
        return SchedulingEngine(self.config, clock=clock, sender=self.sender, store=self.cache)

    def available_slots(self, staff_id, day, services):
        return self.booking.available_slots(staff_id, day, services)

    def sweep_no_shows(self):
        return self.no_shows.run()

    def sweep_reminders(self, kind: str):
        return self.reminders.run(kind)

    def retry_failed_messages(self):
        return self.retry.run()

    def exhausted_messages(self, salon_id: int | None = None):
        return self.messages.find_exhausted(salon_id)

    def record_delivery_status(self, provider_message_id: str, status: str):
        message = self.messages.record_delivery_status(provider_message_id, status)
        db.session.commit()
        return message


def get_engine(app=None) -> SchedulingEngine:
    app = app or current_app
    return app.extensions[ENGINE_KEY]
