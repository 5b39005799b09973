"""Time sources used by booking rules and the background sweeps.

All times are naive salon-local wall-clock datetimes, the same convention the
appointment columns use.
"""
from __future__ import annotations

import threading
from datetime import datetime, timedelta


class Clock:
    """Supplies the current time."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now().replace(microsecond=0)


class FixedClock(Clock):
    """A clock frozen at a given instant; moved explicitly with ``advance``/``set``."""

    def __init__(self, current: datetime) -> None:
        self._current = current
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def set(self, current: datetime) -> None:
        with self._lock:
            self._current = current

    def advance(self, **kwargs: float) -> datetime:
        with self._lock:
            self._current = self._current + timedelta(**kwargs)
            return self._current
