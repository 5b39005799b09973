"""Service selection and appointment span calculation."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Mapping

from .errors import InvalidServiceSelection
from .models import Service


@dataclass(frozen=True)
class ServiceRequest:
    """One requested service, optionally overriding the catalog duration and the gap before it."""

    service_id: int
    duration_minutes: int | None = None
    prep_minutes: int | None = None


@dataclass(frozen=True)
class ServiceSelection:
    """Either a single legacy service id or an ordered list of requests, never both."""

    service_id: int | None = None
    items: tuple[ServiceRequest, ...] = field(default_factory=tuple)
    # Gap applied before every item after the first unless the item sets its own.
    default_gap_minutes: int = 0

    @classmethod
    def single(cls, service_id: int) -> "ServiceSelection":
        return cls(service_id=service_id)

    @classmethod
    def of(cls, *items: ServiceRequest | int, default_gap_minutes: int = 0) -> "ServiceSelection":
        requests = tuple(
            item if isinstance(item, ServiceRequest) else ServiceRequest(item) for item in items
        )
        return cls(items=requests, default_gap_minutes=default_gap_minutes)

    def requests(self) -> list[ServiceRequest]:
        if self.service_id is not None and self.items:
            raise InvalidServiceSelection(
                "Provide either a single service or a list of services, not both"
            )
        if self.service_id is not None:
            return [ServiceRequest(self.service_id)]
        if not self.items:
            raise InvalidServiceSelection("At least one service is required")
        return list(self.items)

    def service_ids(self) -> list[int]:
        return [request.service_id for request in self.requests()]


@dataclass(frozen=True)
class PlannedService:
    sequence: int
    service_id: int
    duration_minutes: int
    prep_minutes: int
    price_cents: int

    @property
    def span_minutes(self) -> int:
        return self.duration_minutes + self.prep_minutes


def plan_services(
    selection: ServiceSelection,
    catalog: Mapping[int, Service],
    salon_id: int | None = None,
) -> list[PlannedService]:
    """Resolve a selection against the catalog into sequenced line items.

    Raises InvalidServiceSelection for unknown, inactive or foreign services and
    for non-positive durations or negative gaps.
    """
    if selection.default_gap_minutes < 0:
        raise InvalidServiceSelection("Preparation time cannot be negative")

    planned: list[PlannedService] = []
    for sequence, request in enumerate(selection.requests(), start=1):
        service = catalog.get(request.service_id)
        if service is None or not service.is_active:
            raise InvalidServiceSelection(f"Service {request.service_id} is not available")
        if salon_id is not None and service.salon_id != salon_id:
            raise InvalidServiceSelection(
                f"Service {request.service_id} does not belong to salon {salon_id}"
            )

        duration = request.duration_minutes
        if duration is None:
            duration = service.duration_minutes
        if duration is None or duration <= 0:
            raise InvalidServiceSelection(f"Service {request.service_id} must last at least one minute")

        prep = request.prep_minutes
        if prep is None:
            prep = selection.default_gap_minutes if sequence > 1 else 0
        if prep < 0:
            raise InvalidServiceSelection("Preparation time cannot be negative")

        planned.append(
            PlannedService(
                sequence=sequence,
                service_id=service.service_id,
                duration_minutes=duration,
                prep_minutes=prep,
                price_cents=service.price_cents or 0,
            )
        )
    return planned


def total_minutes(planned: list[PlannedService]) -> int:
    return sum(item.span_minutes for item in planned)


def compute_end(start: datetime, planned: list[PlannedService]) -> datetime:
    if not planned:
        raise InvalidServiceSelection("At least one service is required")
    return start + timedelta(minutes=total_minutes(planned))


def total_price_cents(planned: list[PlannedService]) -> int:
    return sum(item.price_cents for item in planned)
