"""Tests for the flask CLI commands."""
from __future__ import annotations

import json

from conftest import MONDAY, at
from salonsched.extensions import db
from salonsched.models import MessageKind, MessageStatus, OutboundMessage


def test_init_db(app) -> None:
    result = app.test_cli_runner().invoke(args=["init-db"])

    assert result.exit_code == 0
    assert "Database tables initialized" in result.output


def test_sweep_no_shows_at_given_time(app, engine, salon) -> None:
    appointment = engine.book(salon.request(at(MONDAY, 10, 0)))
    engine.confirm(appointment.appointment_id)

    result = app.test_cli_runner().invoke(args=["sweep", "no-shows", "--at", "2026-10-19 11:00:00"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {
        "candidates": 1,
        "marked": 1,
        "blocked": 0,
        "skipped": 0,
        "failed": 0,
    }


def test_sweep_reminders_kind_option(app, engine, salon, sender) -> None:
    appointment = engine.book(salon.request(at(MONDAY, 10, 0)))
    engine.confirm(appointment.appointment_id)

    result = app.test_cli_runner().invoke(
        args=["sweep", "reminders", "--kind", "reminder_2h", "--at", "2026-10-19 08:00:00"]
    )

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["sent"] == 1
    assert len(sender.sent) == 1


def test_messages_exhausted_listing(app, salon) -> None:
    runner = app.test_cli_runner()
    assert "No exhausted messages" in runner.invoke(args=["messages", "exhausted"]).output

    db.session.add(
        OutboundMessage(
            salon_id=salon.salon_id,
            kind=MessageKind.SOCIAL_POST,
            channel="whatsapp",
            target="+15550123",
            content="Promo",
            status=MessageStatus.FAILED,
            attempts=3,
            exhausted=True,
        )
    )
    db.session.commit()

    result = runner.invoke(args=["messages", "exhausted", "--salon-id", str(salon.salon_id)])

    assert result.exit_code == 0
    listed = json.loads(result.output.strip())
    assert listed["target"] == "+15550123"
    assert listed["attempts"] == 3
    assert listed["exhausted"] is True
