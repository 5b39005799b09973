"""Structured errors raised by the scheduling engine.

Every error carries a stable ``code`` and renders to the same
``{"error": ..., "message": ...}`` shape the SalonHub API returns.
"""
from __future__ import annotations


class SchedulingError(Exception):
    code = "scheduling_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, object]:
        return {"error": self.code, "message": self.message}


class NotFound(SchedulingError):
    code = "not_found"


class SchedulingConflict(SchedulingError):
    """The proposed interval overlaps an occupying appointment or a time block."""

    code = "conflict"

    def __init__(
        self,
        message: str = "Professional has a conflicting appointment or time block",
        appointment_ids: list[int] | None = None,
        block_ids: list[int] | None = None,
    ) -> None:
        super().__init__(message)
        self.appointment_ids = list(appointment_ids or [])
        self.block_ids = list(block_ids or [])

    def to_dict(self) -> dict[str, object]:
        data = super().to_dict()
        data["appointment_ids"] = self.appointment_ids
        data["block_ids"] = self.block_ids
        return data


class OutsideWorkingHours(SchedulingError):
    code = "outside_hours"


class InvalidServiceSelection(SchedulingError):
    code = "invalid_services"


class InvalidTransition(SchedulingError):
    code = "invalid_transition"

    def __init__(self, message: str, current: str | None = None, target: str | None = None) -> None:
        super().__init__(message)
        self.current = current
        self.target = target


class ClientBlocked(SchedulingError):
    code = "client_blocked"


class BookingPolicyViolation(SchedulingError):
    code = "policy_violation"


class RateLimitExceeded(SchedulingError):
    code = "rate_limited"


class DeliveryError(Exception):
    """Raised by a NotificationSender when a message could not be delivered."""
