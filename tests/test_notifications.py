"""Tests for the WhatsApp sender and the delivery dispatcher."""
from __future__ import annotations

import json

import httpx
import pytest

from conftest import NOW
from salonsched.errors import DeliveryError
from salonsched.extensions import db
from salonsched.models import MessageKind, MessageStatus, OutboundMessage
from salonsched.notifications import Dispatcher, LoggingSender, WhatsAppSender, build_sender


def _sender(handler) -> WhatsAppSender:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return WhatsAppSender(
        phone_number_id="12345",
        access_token="secret-token",
        api_url="https://graph.example.com/",
        api_version="v18.0",
        client=client,
    )


def test_whatsapp_send_posts_text_message() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"messages": [{"id": "wamid.ABC"}]})

    provider_id = _sender(handler).send("+1 (555) 012-3456", "See you tomorrow")

    assert provider_id == "wamid.ABC"
    assert seen["url"] == "https://graph.example.com/v18.0/12345/messages"
    assert seen["auth"] == "Bearer secret-token"
    assert seen["body"] == {
        "messaging_product": "whatsapp",
        "to": "15550123456",
        "type": "text",
        "text": {"body": "See you tomorrow"},
    }


def test_whatsapp_error_status_raises_delivery_error() -> None:
    sender = _sender(lambda request: httpx.Response(401, json={"error": {"message": "bad token"}}))

    with pytest.raises(DeliveryError, match="401"):
        sender.send("+15550123", "hello")


def test_whatsapp_network_error_raises_delivery_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(DeliveryError, match="request failed"):
        _sender(handler).send("+15550123", "hello")


def test_whatsapp_response_without_id_raises_delivery_error() -> None:
    sender = _sender(lambda request: httpx.Response(200, json={"messages": []}))

    with pytest.raises(DeliveryError):
        sender.send("+15550123", "hello")


def test_whatsapp_rejects_empty_phone() -> None:
    sender = _sender(lambda request: httpx.Response(200, json={"messages": [{"id": "x"}]}))

    with pytest.raises(DeliveryError):
        sender.send("n/a", "hello")


def test_build_sender_falls_back_to_logging() -> None:
    assert isinstance(build_sender({}), LoggingSender)
    configured = build_sender({"WHATSAPP_PHONE_NUMBER_ID": "1", "WHATSAPP_ACCESS_TOKEN": "t"})
    assert isinstance(configured, WhatsAppSender)
    assert configured.messages_url == "https://graph.facebook.com/v18.0/1/messages"


def test_logging_sender_returns_an_id() -> None:
    assert LoggingSender().send("+15550123", "hi").startswith("log-")


class _RecordingMessages:
    def __init__(self) -> None:
        self.outcomes = []

    def mark_sent(self, message, provider_id, now):
        self.outcomes.append(("sent", provider_id))

    def mark_failed(self, message, error, now):
        self.outcomes.append(("failed", error))


def test_dispatcher_records_outcome_of_each_attempt(clock) -> None:
    messages = _RecordingMessages()
    message = OutboundMessage(message_id=7, target="+15550123", content="hello")
    ok = Dispatcher(_sender(lambda request: httpx.Response(200, json={"messages": [{"id": "wamid.1"}]})), messages, clock)
    down = Dispatcher(_sender(lambda request: httpx.Response(503, text="unavailable")), messages, clock)

    assert ok.deliver(message) is True
    assert down.deliver(message) is False
    assert messages.outcomes[0] == ("sent", "wamid.1")
    assert messages.outcomes[1][0] == "failed"
    assert "503" in messages.outcomes[1][1]


def test_dispatcher_contains_unexpected_sender_errors(clock, sender) -> None:
    messages = _RecordingMessages()

    def crash(target, content):
        raise RuntimeError("boom")

    sender.on_send = crash

    delivered = Dispatcher(sender, messages, clock).deliver(OutboundMessage(target="+1", content="x"))

    assert delivered is False
    assert messages.outcomes == [("failed", "RuntimeError: boom")]


def test_delivery_receipt_updates_message_status(engine, salon) -> None:
    message = OutboundMessage(
        salon_id=salon.salon_id,
        kind=MessageKind.SOCIAL_POST,
        channel="whatsapp",
        target="+15550123",
        content="Promo",
        status=MessageStatus.SENT,
        attempts=1,
        provider_message_id="wamid.XYZ",
    )
    db.session.add(message)
    db.session.commit()

    updated = engine.record_delivery_status("wamid.XYZ", MessageStatus.DELIVERED)

    assert updated.message_id == message.message_id
    assert db.session.get(OutboundMessage, message.message_id).status == MessageStatus.DELIVERED
    assert engine.record_delivery_status("wamid.unknown", MessageStatus.DELIVERED) is None


def _sent_message(salon, provider_message_id: str) -> OutboundMessage:
    message = OutboundMessage(
        salon_id=salon.salon_id,
        kind=MessageKind.SOCIAL_POST,
        channel="whatsapp",
        target="+15550123",
        content="Promo",
        status=MessageStatus.SENT,
        attempts=1,
        provider_message_id=provider_message_id,
        created_at=NOW,
        last_attempt_at=NOW,
    )
    db.session.add(message)
    db.session.commit()
    return message


def test_read_receipt_counts_as_delivered(engine, salon) -> None:
    message = _sent_message(salon, "wamid.READ")

    engine.record_delivery_status("wamid.READ", "read")

    assert db.session.get(OutboundMessage, message.message_id).status == MessageStatus.DELIVERED


def test_unsupported_receipt_status_is_ignored(engine, salon, caplog) -> None:
    message = _sent_message(salon, "wamid.ABC")

    with caplog.at_level("WARNING", logger="salonsched.stores"):
        assert engine.record_delivery_status("wamid.ABC", MessageStatus.RETRYING) is None
        assert engine.record_delivery_status("wamid.ABC", "queued") is None
        assert engine.record_delivery_status("wamid.ABC", "bogus") is None

    assert db.session.get(OutboundMessage, message.message_id).status == MessageStatus.SENT
    assert "Ignoring unsupported delivery status" in caplog.text


def test_late_receipts_do_not_undo_delivery(engine, salon, clock, sender) -> None:
    message = _sent_message(salon, "wamid.LATE")
    engine.record_delivery_status("wamid.LATE", MessageStatus.DELIVERED)

    engine.record_delivery_status("wamid.LATE", MessageStatus.SENT)
    engine.record_delivery_status("wamid.LATE", MessageStatus.FAILED)
    engine.record_delivery_status("wamid.LATE", MessageStatus.RETRYING)
    clock.advance(minutes=31)
    summary = engine.retry_failed_messages()

    assert db.session.get(OutboundMessage, message.message_id).status == MessageStatus.DELIVERED
    assert summary.recovered == 0
    assert summary.candidates == 0
    assert sender.sent == []
