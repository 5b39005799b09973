"""Periodic sweeps run by APScheduler inside the Flask app context."""
from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .engine import get_engine
from .models import MessageKind

logger = logging.getLogger(__name__)

SWEEPS = {
    "no_show_sweep": lambda engine: engine.sweep_no_shows(),
    "reminder_24h_sweep": lambda engine: engine.sweep_reminders(MessageKind.REMINDER_24H),
    "reminder_2h_sweep": lambda engine: engine.sweep_reminders(MessageKind.REMINDER_2H),
    "message_retry_sweep": lambda engine: engine.retry_failed_messages(),
}


class SweepScheduler:
    """
    Scheduler for the background sweeps:
    - Detect no-shows
    - Send 24h and 2h reminders
    - Retry failed outbound messages
    """

    def __init__(self, app, scheduler=None):
        self.app = app
        self.scheduler = scheduler or BackgroundScheduler(
            job_defaults={"coalesce": True, "max_instances": 2, "misfire_grace_time": 60}
        )
        self.is_running = False

    def start(self):
        """Start the scheduler"""
        if self.is_running:
            logger.warning("Scheduler is already running")
            return

        self.register_jobs()
        self.scheduler.start()
        self.is_running = True
        logger.info("Scheduler started with jobs: %s", [job.id for job in self.scheduler.get_jobs()])

    def shutdown(self, wait=True):
        """Shutdown the scheduler"""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=wait)
        self.is_running = False
        logger.info("Scheduler shut down")

    def register_jobs(self):
        config = self.app.config

        self._add("no_show_sweep", "Detect No-Shows", config["NO_SHOW_SWEEP_MINUTES"])
        if config.get("REMINDERS_ENABLED", True):
            self._add("reminder_24h_sweep", "Send 24h Reminders", config["REMINDER_24H_SWEEP_MINUTES"])
            self._add("reminder_2h_sweep", "Send 2h Reminders", config["REMINDER_2H_SWEEP_MINUTES"])
        if config.get("RETRY_ENABLED", True):
            self._add("message_retry_sweep", "Retry Failed Messages", config["RETRY_SWEEP_MINUTES"])

    def _add(self, job_id, name, minutes):
        self.scheduler.add_job(
            self.run_job,
            trigger=IntervalTrigger(minutes=minutes),
            args=[job_id],
            id=job_id,
            name=name,
            replace_existing=True,
        )

    def run_job(self, job_id):
        """Run one sweep in a fresh app context; errors are logged, never raised into the scheduler."""
        with self.app.app_context():
            try:
                summary = SWEEPS[job_id](get_engine(self.app))
            except Exception:
                logger.exception("Sweep %s failed", job_id)
                return None
            logger.debug("Sweep %s: %s", job_id, summary.to_dict())
            return summary
