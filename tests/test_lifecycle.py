"""Tests for appointment status transitions."""
from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from conftest import MONDAY, at
from salonsched.errors import BookingPolicyViolation, InvalidTransition, NotFound
from salonsched.extensions import db
from salonsched.lifecycle import TRANSITIONS, can_transition
from salonsched.models import (
    Appointment,
    AppointmentStatus,
    AuditLog,
    Client,
    MessageKind,
    MessageStatus,
    OutboundMessage,
)

S = AppointmentStatus


@pytest.fixture
def appointment(engine, salon) -> Appointment:
    return engine.book(salon.request(at(MONDAY, 10, 0)))


def test_happy_path(engine, appointment, clock) -> None:
    engine.confirm(appointment.appointment_id)
    clock.set(at(MONDAY, 10, 0))
    engine.start(appointment.appointment_id)
    completed = engine.complete(appointment.appointment_id, charge_override_cents=4000)

    assert completed.status == S.COMPLETED
    assert completed.charge_override_cents == 4000
    assert completed.amount_due_cents == 4000


def test_pending_cannot_start(engine, appointment) -> None:
    with pytest.raises(InvalidTransition) as excinfo:
        engine.start(appointment.appointment_id)

    assert excinfo.value.current == S.PENDING
    assert excinfo.value.to_dict()["error"] == "invalid_transition"


def _drive_to(engine, appointment_id: int, status: str, clock) -> None:
    if status == S.CANCELED:
        engine.cancel(appointment_id, "Client asked")
        return
    engine.confirm(appointment_id)
    clock.set(at(MONDAY, 10, 30))
    if status == S.NO_SHOW:
        engine.mark_no_show(appointment_id)
        return
    engine.start(appointment_id)
    engine.complete(appointment_id)


@pytest.mark.parametrize("terminal", sorted(S.TERMINAL))
def test_every_transition_from_terminal_state_fails(engine, appointment, clock, terminal) -> None:
    _drive_to(engine, appointment.appointment_id, terminal, clock)
    assert db.session.get(Appointment, appointment.appointment_id).status == terminal

    attempts = [
        lambda: engine.confirm(appointment.appointment_id),
        lambda: engine.start(appointment.appointment_id),
        lambda: engine.complete(appointment.appointment_id),
        lambda: engine.cancel(appointment.appointment_id, "again"),
        lambda: engine.cancel(appointment.appointment_id, ""),
        lambda: engine.mark_no_show(appointment.appointment_id),
    ]
    for attempt in attempts:
        with pytest.raises(InvalidTransition):
            attempt()
    assert db.session.get(Appointment, appointment.appointment_id).status == terminal


def test_transition_table_has_no_exits_from_terminal_states() -> None:
    for status in S.TERMINAL:
        assert TRANSITIONS[status] == frozenset()
        for target in S.ALL:
            assert not can_transition(status, target)


def test_cancel_requires_reason(engine, appointment) -> None:
    with pytest.raises(BookingPolicyViolation):
        engine.cancel(appointment.appointment_id, "   ")


def test_cancel_respects_minimum_notice(engine, appointment, clock) -> None:
    clock.set(at(MONDAY, 9, 0))

    with pytest.raises(BookingPolicyViolation):
        engine.cancel(appointment.appointment_id, "Running late")

    canceled = engine.cancel(appointment.appointment_id, "Staff sick", by_salon=True)
    assert canceled.status == S.CANCELED


def test_cancel_sends_notification(engine, appointment, sender) -> None:
    engine.cancel(appointment.appointment_id, "Changed plans")

    message = OutboundMessage.query.filter_by(kind=MessageKind.CANCELLATION).one()
    assert message.status == MessageStatus.SENT
    assert message.attempts == 1
    assert len(sender.sent) == 1
    assert "Changed plans" in sender.sent[0][1]


def test_cancel_keeps_state_when_notification_fails(engine, appointment, sender) -> None:
    sender.fail_with = "provider down"

    canceled = engine.cancel(appointment.appointment_id, "Changed plans")

    assert canceled.status == S.CANCELED
    message = OutboundMessage.query.filter_by(kind=MessageKind.CANCELLATION).one()
    assert message.status == MessageStatus.FAILED
    assert message.error_message == "provider down"


def test_cancel_survives_failure_to_record_notice_delivery(engine, appointment, sender, monkeypatch) -> None:
    def broken_mark_sent(message, provider_message_id, now):
        raise OperationalError("UPDATE outbound_messages", {}, Exception("database is locked"))

    monkeypatch.setattr(engine.messages, "mark_sent", broken_mark_sent)

    canceled = engine.cancel(appointment.appointment_id, "Changed plans")

    assert canceled.status == S.CANCELED
    assert len(sender.sent) == 1
    assert db.session.get(Appointment, appointment.appointment_id).status == S.CANCELED
    # The notice stays in flight and is picked up by stale recovery.
    message = OutboundMessage.query.filter_by(kind=MessageKind.CANCELLATION).one()
    assert message.status == MessageStatus.QUEUED
    log = AuditLog.query.filter_by(action="CANCEL").one()
    assert log.success is True


def test_confirm_and_cancel_by_token(engine, salon, appointment) -> None:
    token = appointment.confirmation_token

    assert engine.confirm_by_token(token).status == S.CONFIRMED
    assert engine.cancel_by_token(token, "Cannot make it").status == S.CANCELED

    with pytest.raises(NotFound):
        engine.confirm_by_token("not-a-token")


def test_manual_no_show_counts_against_client(engine, salon, appointment, clock) -> None:
    engine.confirm(appointment.appointment_id)

    with pytest.raises(BookingPolicyViolation):
        engine.mark_no_show(appointment.appointment_id)

    clock.set(at(MONDAY, 10, 5))
    engine.mark_no_show(appointment.appointment_id)

    client = db.session.get(Client, salon.client_id)
    assert client.no_shows == 1
    assert client.blocked is False


def test_stale_status_loses_compare_and_set(engine, appointment) -> None:
    """A writer holding an outdated status cannot overwrite a newer one."""
    stale = db.session.get(Appointment, appointment.appointment_id)
    engine.schedules.transition_status(appointment.appointment_id, S.PENDING, S.CANCELED)
    db.session.commit()

    assert engine.schedules.transition_status(appointment.appointment_id, S.PENDING, S.CONFIRMED) is False
    db.session.refresh(stale)
    assert stale.status == S.CANCELED


def test_transitions_are_audited(engine, appointment) -> None:
    engine.confirm(appointment.appointment_id)
    with pytest.raises(InvalidTransition):
        engine.complete(appointment.appointment_id)

    logs = AuditLog.query.filter(AuditLog.action != "BOOK").order_by(AuditLog.audit_id).all()
    assert [(log.action, log.success) for log in logs] == [("CONFIRM", True), ("COMPLETE", False)]
    assert logs[0].before_state["status"] == S.PENDING
    assert logs[0].after_state["status"] == S.CONFIRMED
    assert logs[1].entity_id == appointment.appointment_id
