"""Configuration objects for the scheduling engine.

Values come from the environment (a ``.env`` file is loaded first) and can be
overridden per app by passing a mapping or object to ``create_app``.
"""
from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///salonsched.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Background sweeps
    NO_SHOW_GRACE_MINUTES = _env_int("NO_SHOW_GRACE_MINUTES", 15)
    NO_SHOW_SWEEP_MINUTES = _env_int("NO_SHOW_SWEEP_MINUTES", 5)
    REMINDER_24H_SWEEP_MINUTES = _env_int("REMINDER_24H_SWEEP_MINUTES", 30)
    REMINDER_2H_SWEEP_MINUTES = _env_int("REMINDER_2H_SWEEP_MINUTES", 15)
    RETRY_SWEEP_MINUTES = _env_int("RETRY_SWEEP_MINUTES", 15)
    RETRY_MAX_ATTEMPTS = _env_int("RETRY_MAX_ATTEMPTS", 3)
    RETRY_WINDOW_HOURS = _env_int("RETRY_WINDOW_HOURS", 24)
    RETRY_STALE_MINUTES = _env_int("RETRY_STALE_MINUTES", 30)
    REMINDERS_ENABLED = _env_bool("REMINDERS_ENABLED", True)
    RETRY_ENABLED = _env_bool("RETRY_ENABLED", True)

    # WhatsApp Cloud API
    WHATSAPP_API_URL = os.environ.get("WHATSAPP_API_URL", "https://graph.facebook.com")
    WHATSAPP_API_VERSION = os.environ.get("WHATSAPP_API_VERSION", "v18.0")
    WHATSAPP_PHONE_NUMBER_ID = os.environ.get("WHATSAPP_PHONE_NUMBER_ID", "")
    WHATSAPP_ACCESS_TOKEN = os.environ.get("WHATSAPP_ACCESS_TOKEN", "")
    WHATSAPP_TIMEOUT_SECONDS = _env_int("WHATSAPP_TIMEOUT_SECONDS", 10)
    FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")

    # Keyed TTL store and booking throttle
    CACHE_BACKEND = os.environ.get("CACHE_BACKEND", "memory")
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
    BOOKING_RATE_LIMIT = _env_int("BOOKING_RATE_LIMIT", 20)
    BOOKING_RATE_WINDOW_SECONDS = _env_int("BOOKING_RATE_WINDOW_SECONDS", 3600)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    CACHE_BACKEND = "memory"
    LOG_LEVEL = "DEBUG"


@dataclass(frozen=True)
class SalonPolicy:
    """Per-salon booking rules, loaded from the salon row."""

    slot_minutes: int = 30
    min_advance_hours: int = 2
    min_cancel_notice_hours: int = 2
    max_no_shows: int = 3
    accepts_online_booking: bool = True
    auto_confirm: bool = False

    @classmethod
    def from_salon(cls, salon) -> "SalonPolicy":
        if salon is None:
            return cls()
        return cls(
            slot_minutes=salon.slot_minutes if salon.slot_minutes is not None else cls.slot_minutes,
            min_advance_hours=salon.min_advance_hours if salon.min_advance_hours is not None else cls.min_advance_hours,
            min_cancel_notice_hours=(
                salon.min_cancel_notice_hours
                if salon.min_cancel_notice_hours is not None
                else cls.min_cancel_notice_hours
            ),
            max_no_shows=salon.max_no_shows if salon.max_no_shows is not None else cls.max_no_shows,
            accepts_online_booking=bool(salon.accepts_online_booking),
            auto_confirm=bool(salon.auto_confirm_bookings),
        )
