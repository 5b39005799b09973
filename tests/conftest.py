"""pytest configuration: path management and shared fixtures."""
from __future__ import annotations

import sys
from dataclasses import dataclass
from datetime import date, datetime, time
from pathlib import Path

import pytest

# Ensure the project root is available on sys.path so tests can import the package.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from salonsched import create_app, get_engine  # noqa: E402
from salonsched.booking import BookingRequest  # noqa: E402
from salonsched.clock import FixedClock  # noqa: E402
from salonsched.durations import ServiceSelection  # noqa: E402
from salonsched.errors import DeliveryError  # noqa: E402
from salonsched.extensions import db  # noqa: E402
from salonsched.models import Client, Salon, Schedule, Service, Staff  # noqa: E402
from salonsched.notifications import NotificationSender  # noqa: E402

# Friday morning; the following Monday is 2026-10-19.
NOW = datetime(2026, 10, 16, 8, 0)
MONDAY = date(2026, 10, 19)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute))


class FakeSender(NotificationSender):
    """Records sent messages; can be told to fail or to run a hook while sending."""

    channel = "fake"

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail_with: str | None = None
        self.on_send = None

    def send(self, target: str, content: str) -> str:
        if self.on_send is not None:
            self.on_send(target, content)
        if self.fail_with:
            raise DeliveryError(self.fail_with)
        self.sent.append((target, content))
        return f"wamid.{len(self.sent)}"


@dataclass
class SalonSetup:
    salon_id: int
    staff_id: int
    client_id: int
    haircut_id: int
    wash_id: int
    coloring_id: int

    def request(self, start: datetime, services: ServiceSelection | None = None, **kwargs) -> BookingRequest:
        return BookingRequest(
            salon_id=self.salon_id,
            staff_id=self.staff_id,
            client_id=kwargs.pop("client_id", self.client_id),
            start=start,
            services=services or ServiceSelection.single(self.haircut_id),
            **kwargs,
        )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def app(clock, sender):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "CACHE_BACKEND": "memory",
            "BOOKING_RATE_LIMIT": 100,
            "FRONTEND_URL": "https://salonhub.test",
            "LOG_LEVEL": "DEBUG",
        },
        clock=clock,
        sender=sender,
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def engine(app):
    return get_engine(app)


def seed_salon(max_no_shows: int = 3, auto_confirm: bool = False) -> SalonSetup:
    salon = Salon(
        name="Studio Bella",
        address="42 Elm Street",
        phone="+15550100",
        max_no_shows=max_no_shows,
        auto_confirm_bookings=auto_confirm,
    )
    db.session.add(salon)
    db.session.flush()

    staff = Staff(salon_id=salon.salon_id, name="Ana", title="Stylist")
    client = Client(salon_id=salon.salon_id, name="Carla", phone="+1 (555) 012-3456")
    haircut = Service(salon_id=salon.salon_id, name="Haircut", price_cents=5000, duration_minutes=60)
    wash = Service(salon_id=salon.salon_id, name="Wash", price_cents=2000, duration_minutes=30)
    coloring = Service(salon_id=salon.salon_id, name="Coloring", price_cents=9000, duration_minutes=90)
    db.session.add_all([staff, client, haircut, wash, coloring])
    db.session.flush()

    for weekday in range(5):
        db.session.add(
            Schedule(
                staff_id=staff.staff_id,
                day_of_week=weekday,
                start_time=time(9, 0),
                end_time=time(18, 0),
                break_start=time(12, 0),
                break_end=time(13, 0),
            )
        )
    db.session.commit()

    return SalonSetup(
        salon_id=salon.salon_id,
        staff_id=staff.staff_id,
        client_id=client.client_id,
        haircut_id=haircut.service_id,
        wash_id=wash.service_id,
        coloring_id=coloring.service_id,
    )


@pytest.fixture
def salon(app) -> SalonSetup:
    return seed_salon()
