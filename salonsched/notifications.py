"""Outbound notification delivery.

A ``NotificationSender`` only knows how to push text to a target. The
``Dispatcher`` records the outcome of each attempt on the OutboundMessage.
"""
from __future__ import annotations

import logging
import re
import uuid
from typing import Mapping

import httpx

from .clock import Clock
from .errors import DeliveryError
from .models import Appointment, OutboundMessage

logger = logging.getLogger(__name__)

# Outcomes of one sweep item, named after the summary counters.
SENT = "sent"
FAILED = "failed"
SKIPPED = "skipped"


class NotificationSender:
    channel = "generic"

    def send(self, target: str, content: str) -> str:
        """Deliver ``content`` and return the provider message id; raise DeliveryError on failure."""
        raise NotImplementedError


class LoggingSender(NotificationSender):
    """Writes messages to the log instead of a provider, for unconfigured environments."""

    channel = "log"

    def send(self, target: str, content: str) -> str:
        logger.info("Notification to %s: %s", target, content)
        return f"log-{uuid.uuid4().hex}"


class WhatsAppSender(NotificationSender):
    """Sends text messages through the WhatsApp Cloud API."""

    channel = "whatsapp"

    def __init__(
        self,
        phone_number_id: str,
        access_token: str,
        api_url: str = "https://graph.facebook.com",
        api_version: str = "v18.0",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.api_url = api_url.rstrip("/")
        self.api_version = api_version
        self._client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_config(cls, config: Mapping[str, object], client: httpx.Client | None = None) -> "WhatsAppSender":
        return cls(
            phone_number_id=str(config.get("WHATSAPP_PHONE_NUMBER_ID") or ""),
            access_token=str(config.get("WHATSAPP_ACCESS_TOKEN") or ""),
            api_url=str(config.get("WHATSAPP_API_URL") or "https://graph.facebook.com"),
            api_version=str(config.get("WHATSAPP_API_VERSION") or "v18.0"),
            timeout=float(config.get("WHATSAPP_TIMEOUT_SECONDS") or 10),
            client=client,
        )

    @property
    def messages_url(self) -> str:
        return f"{self.api_url}/{self.api_version}/{self.phone_number_id}/messages"

    @staticmethod
    def normalize_phone(target: str) -> str:
        return re.sub(r"\D", "", target or "")

    def send(self, target: str, content: str) -> str:
        phone = self.normalize_phone(target)
        if not phone:
            raise DeliveryError(f"Invalid phone number: {target!r}")

        payload = {
            "messaging_product": "whatsapp",
            "to": phone,
            "type": "text",
            "text": {"body": content},
        }
        try:
            response = self._client.post(
                self.messages_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(f"WhatsApp request failed: {exc}") from exc

        if response.status_code >= 400:
            raise DeliveryError(f"WhatsApp API returned {response.status_code}: {response.text[:200]}")

        try:
            return response.json()["messages"][0]["id"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise DeliveryError("WhatsApp API response did not include a message id") from exc


def build_sender(config: Mapping[str, object]) -> NotificationSender:
    if config.get("WHATSAPP_PHONE_NUMBER_ID") and config.get("WHATSAPP_ACCESS_TOKEN"):
        return WhatsAppSender.from_config(config)
    logger.warning("WhatsApp credentials missing, notifications will only be logged")
    return LoggingSender()


class Dispatcher:
    def __init__(self, sender: NotificationSender, messages, clock: Clock) -> None:
        self.sender = sender
        self.messages = messages
        self.clock = clock

    def deliver(self, message: OutboundMessage) -> bool:
        """Attempt delivery once and record SENT or FAILED. Does not commit."""
        try:
            provider_id = self.sender.send(message.target, message.content)
        except DeliveryError as exc:
            error = str(exc)
            logger.warning("Delivery of message %s failed: %s", message.message_id, error)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("Unexpected error delivering message %s", message.message_id)
        else:
            self.messages.mark_sent(message, provider_id, self.clock.now())
            logger.info("Message %s delivered (%s)", message.message_id, provider_id)
            return True
        self.messages.mark_failed(message, error, self.clock.now())
        return False


# --- Message content ---


def _service_names(appointment: Appointment) -> str:
    names = [item.service.name for item in appointment.line_items if item.service is not None]
    return ", ".join(names) or "your service"


def reminder_24h_text(appointment: Appointment, frontend_url: str) -> str:
    salon = appointment.salon
    return (
        f"Hi {appointment.client.name}! Reminder: your appointment at {salon.name} is tomorrow, "
        f"{appointment.starts_at.strftime('%B %d at %I:%M %p')} ({_service_names(appointment)}). "
        f"Confirm your visit: {frontend_url.rstrip('/')}/confirm/{appointment.confirmation_token}"
    )


def reminder_2h_text(appointment: Appointment) -> str:
    salon = appointment.salon
    text = (
        f"Hi {appointment.client.name}! Your appointment at {salon.name} starts at "
        f"{appointment.starts_at.strftime('%I:%M %p')}."
    )
    if salon.address:
        text += f" Address: {salon.address}."
    return text


def cancellation_text(appointment: Appointment) -> str:
    text = (
        f"Hi {appointment.client.name}, your appointment at {appointment.salon.name} on "
        f"{appointment.starts_at.strftime('%B %d at %I:%M %p')} was canceled."
    )
    if appointment.cancellation_reason:
        text += f" Reason: {appointment.cancellation_reason}."
    return text
