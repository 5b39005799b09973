"""Database models for the appointment scheduling engine."""
from __future__ import annotations

from datetime import datetime

from .extensions import db

# Occupancy rows are laid on a fixed grid of this many minutes.
SLOT_GRID_MINUTES = 5


def local_now() -> datetime:
    """Return a naive salon-local datetime."""
    return datetime.now().replace(microsecond=0)


def _iso(value) -> str | None:
    return value.isoformat() if value else None


class AppointmentStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELED = "canceled"
    NO_SHOW = "no_show"

    ALL = (PENDING, CONFIRMED, IN_PROGRESS, COMPLETED, CANCELED, NO_SHOW)
    TERMINAL = frozenset({COMPLETED, CANCELED, NO_SHOW})
    # Appointments in these states never conflict with a new booking.
    NON_OCCUPYING = frozenset({CANCELED, NO_SHOW})


class MessageStatus:
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRYING = "retrying"

    ALL = (QUEUED, SENT, DELIVERED, FAILED, RETRYING)
    IN_FLIGHT = frozenset({QUEUED, RETRYING})
    DONE = frozenset({SENT, DELIVERED})


class MessageKind:
    REMINDER_24H = "reminder_24h"
    REMINDER_2H = "reminder_2h"
    CANCELLATION = "cancellation"
    SOCIAL_POST = "social_post"

    ALL = (REMINDER_24H, REMINDER_2H, CANCELLATION, SOCIAL_POST)
    REMINDERS = (REMINDER_24H, REMINDER_2H)


class Salon(db.Model):
    __tablename__ = "salons"

    salon_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    address = db.Column(db.String(255))
    phone = db.Column(db.String(30))
    slot_minutes = db.Column(db.Integer, nullable=False, default=30)
    min_advance_hours = db.Column(db.Integer, nullable=False, default=2)
    min_cancel_notice_hours = db.Column(db.Integer, nullable=False, default=2)
    max_no_shows = db.Column(db.Integer, nullable=False, default=3)
    accepts_online_booking = db.Column(db.Boolean, nullable=False, default=True)
    auto_confirm_bookings = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=local_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=local_now, onupdate=local_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.salon_id,
            "name": self.name,
            "address": self.address,
            "phone": self.phone,
            "slot_minutes": self.slot_minutes,
            "min_advance_hours": self.min_advance_hours,
            "min_cancel_notice_hours": self.min_cancel_notice_hours,
            "max_no_shows": self.max_no_shows,
            "accepts_online_booking": bool(self.accepts_online_booking),
            "auto_confirm_bookings": bool(self.auto_confirm_bookings),
        }


class Client(db.Model):
    """A salon's customer, with no-show tracking."""

    __tablename__ = "clients"

    client_id = db.Column(db.Integer, primary_key=True)
    salon_id = db.Column(db.Integer, db.ForeignKey("salons.salon_id"), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    phone = db.Column(db.String(30))
    email = db.Column(db.String(255))
    no_shows = db.Column(db.Integer, nullable=False, default=0)
    total_appointments = db.Column(db.Integer, nullable=False, default=0)
    blocked = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=local_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=local_now, onupdate=local_now)

    salon = db.relationship("Salon")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.client_id,
            "salon_id": self.salon_id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "no_shows": self.no_shows,
            "total_appointments": self.total_appointments,
            "blocked": bool(self.blocked),
        }


class Staff(db.Model):
    """A professional who performs services."""

    __tablename__ = "staff"

    staff_id = db.Column(db.Integer, primary_key=True)
    salon_id = db.Column(db.Integer, db.ForeignKey("salons.salon_id"), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    title = db.Column(db.String(100))
    phone = db.Column(db.String(30))
    accepts_online_booking = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=local_now)

    salon = db.relationship("Salon")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.staff_id,
            "salon_id": self.salon_id,
            "name": self.name,
            "title": self.title,
            "accepts_online_booking": bool(self.accepts_online_booking),
            "is_active": bool(self.is_active),
        }


class Schedule(db.Model):
    """Weekly working hours of a professional, one row per weekday."""

    __tablename__ = "schedules"
    __table_args__ = (db.UniqueConstraint("staff_id", "day_of_week", name="uq_schedule_staff_day"),)

    schedule_id = db.Column(db.Integer, primary_key=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=False)
    day_of_week = db.Column(db.Integer, nullable=False)  # 0=Monday ... 6=Sunday
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    break_start = db.Column(db.Time)
    break_end = db.Column(db.Time)

    staff = db.relationship("Staff")

    @property
    def has_break(self) -> bool:
        return self.break_start is not None and self.break_end is not None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.schedule_id,
            "staff_id": self.staff_id,
            "day_of_week": self.day_of_week,
            "is_active": bool(self.is_active),
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "break_start": _iso(self.break_start),
            "break_end": _iso(self.break_end),
        }


class TimeBlock(db.Model):
    """Unavailability window (vacation, day off). Recurring blocks repeat weekly."""

    __tablename__ = "time_blocks"

    block_id = db.Column(db.Integer, primary_key=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=False, index=True)
    starts_at = db.Column(db.DateTime, nullable=False)
    ends_at = db.Column(db.DateTime, nullable=False)
    reason = db.Column(db.String(255))
    is_recurring = db.Column(db.Boolean, nullable=False, default=False)

    staff = db.relationship("Staff")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.block_id,
            "staff_id": self.staff_id,
            "starts_at": _iso(self.starts_at),
            "ends_at": _iso(self.ends_at),
            "reason": self.reason,
            "is_recurring": bool(self.is_recurring),
        }


class Service(db.Model):
    """Catalog entry offered by a salon."""

    __tablename__ = "services"

    service_id = db.Column(db.Integer, primary_key=True)
    salon_id = db.Column(db.Integer, db.ForeignKey("salons.salon_id"), nullable=False, index=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    duration_minutes = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.service_id,
            "salon_id": self.salon_id,
            "name": self.name,
            "price_cents": self.price_cents,
            "duration_minutes": self.duration_minutes,
            "is_active": bool(self.is_active),
        }


class Appointment(db.Model):
    """A booked visit of one client with one professional."""

    __tablename__ = "appointments"
    __table_args__ = (
        db.CheckConstraint("ends_at > starts_at", name="ck_appointment_interval"),
        db.Index("ix_appointment_staff_interval", "staff_id", "starts_at", "ends_at"),
        db.Index("ix_appointment_status_start", "status", "starts_at"),
    )

    appointment_id = db.Column(db.Integer, primary_key=True)
    salon_id = db.Column(db.Integer, db.ForeignKey("salons.salon_id"), nullable=False)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.client_id"), nullable=False)
    starts_at = db.Column(db.DateTime, nullable=False)
    ends_at = db.Column(db.DateTime, nullable=False)
    status = db.Column(
        db.Enum(
            *AppointmentStatus.ALL,
            name="appointment_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default=AppointmentStatus.PENDING,
    )
    cancellation_reason = db.Column(db.String(500))
    notes = db.Column(db.Text)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    charge_override_cents = db.Column(db.Integer)
    confirmation_token = db.Column(db.String(64), unique=True, index=True)
    reminder_24h_sent = db.Column(db.Boolean, nullable=False, default=False)
    reminder_2h_sent = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=local_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=local_now, onupdate=local_now)

    salon = db.relationship("Salon")
    staff = db.relationship("Staff")
    client = db.relationship("Client")
    line_items = db.relationship(
        "AppointmentService",
        back_populates="appointment",
        order_by="AppointmentService.sequence",
        cascade="all, delete-orphan",
    )
    slots = db.relationship(
        "AppointmentSlot",
        back_populates="appointment",
        cascade="all, delete-orphan",
    )

    @property
    def service_id(self) -> int | None:
        """Single-service view for callers that expect one service per appointment."""
        if len(self.line_items) == 1:
            return self.line_items[0].service_id
        return None

    @property
    def services(self) -> list["AppointmentService"]:
        return list(self.line_items)

    @property
    def amount_due_cents(self) -> int:
        if self.charge_override_cents is not None:
            return self.charge_override_cents
        return self.price_cents

    @property
    def is_terminal(self) -> bool:
        return self.status in AppointmentStatus.TERMINAL

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.appointment_id,
            "salon_id": self.salon_id,
            "staff_id": self.staff_id,
            "client_id": self.client_id,
            "service_id": self.service_id,
            "services": [item.to_dict() for item in self.line_items],
            "starts_at": _iso(self.starts_at),
            "ends_at": _iso(self.ends_at),
            "status": self.status,
            "cancellation_reason": self.cancellation_reason,
            "notes": self.notes,
            "price_cents": self.price_cents,
            "charge_override_cents": self.charge_override_cents,
            "reminder_24h_sent": bool(self.reminder_24h_sent),
            "reminder_2h_sent": bool(self.reminder_2h_sent),
        }


class AppointmentService(db.Model):
    """Ordered service line item of an appointment."""

    __tablename__ = "appointment_services"
    __table_args__ = (
        db.UniqueConstraint("appointment_id", "sequence", name="uq_line_item_sequence"),
    )

    line_item_id = db.Column(db.Integer, primary_key=True)
    appointment_id = db.Column(
        db.Integer, db.ForeignKey("appointments.appointment_id"), nullable=False, index=True
    )
    sequence = db.Column(db.Integer, nullable=False)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=False)
    prep_minutes = db.Column(db.Integer, nullable=False, default=0)
    price_cents = db.Column(db.Integer, nullable=False, default=0)

    appointment = db.relationship("Appointment", back_populates="line_items")
    service = db.relationship("Service")

    def to_dict(self) -> dict[str, object]:
        return {
            "sequence": self.sequence,
            "service_id": self.service_id,
            "duration_minutes": self.duration_minutes,
            "prep_minutes": self.prep_minutes,
            "price_cents": self.price_cents,
        }


class AppointmentSlot(db.Model):
    """Grid cell of a professional's calendar held by an occupying appointment."""

    __tablename__ = "appointment_slots"
    __table_args__ = (db.UniqueConstraint("staff_id", "slot_start", name="uq_slot_staff_start"),)

    slot_id = db.Column(db.Integer, primary_key=True)
    appointment_id = db.Column(
        db.Integer, db.ForeignKey("appointments.appointment_id"), nullable=False, index=True
    )
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=False)
    slot_start = db.Column(db.DateTime, nullable=False)

    appointment = db.relationship("Appointment", back_populates="slots")


class OutboundMessage(db.Model):
    """A notification handed to the delivery channel (reminders, cancellations, social posts)."""

    __tablename__ = "outbound_messages"
    __table_args__ = (
        db.UniqueConstraint("appointment_id", "kind", "scheduled_for", name="uq_message_appointment_kind"),
        db.Index("ix_message_status_created", "status", "created_at"),
    )

    message_id = db.Column(db.Integer, primary_key=True)
    salon_id = db.Column(db.Integer, db.ForeignKey("salons.salon_id"), nullable=False)
    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.appointment_id"))
    kind = db.Column(
        db.Enum(*MessageKind.ALL, name="message_kind", native_enum=False, validate_strings=True),
        nullable=False,
    )
    channel = db.Column(db.String(30), nullable=False, default="whatsapp")
    target = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=False)
    status = db.Column(
        db.Enum(*MessageStatus.ALL, name="message_status", native_enum=False, validate_strings=True),
        nullable=False,
        default=MessageStatus.QUEUED,
    )
    attempts = db.Column(db.Integer, nullable=False, default=0)
    provider_message_id = db.Column(db.String(255))
    error_message = db.Column(db.Text)
    scheduled_for = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=local_now)
    last_attempt_at = db.Column(db.DateTime)
    exhausted = db.Column(db.Boolean, nullable=False, default=False)

    appointment = db.relationship("Appointment")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.message_id,
            "salon_id": self.salon_id,
            "appointment_id": self.appointment_id,
            "kind": self.kind,
            "channel": self.channel,
            "target": self.target,
            "status": self.status,
            "attempts": self.attempts,
            "provider_message_id": self.provider_message_id,
            "error_message": self.error_message,
            "scheduled_for": _iso(self.scheduled_for),
            "created_at": _iso(self.created_at),
            "last_attempt_at": _iso(self.last_attempt_at),
            "exhausted": bool(self.exhausted),
        }


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    audit_id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(50), nullable=False)
    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.Integer)
    before_state = db.Column(db.JSON)
    after_state = db.Column(db.JSON)
    success = db.Column(db.Boolean, nullable=False, default=True)
    error_message = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=local_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.audit_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "before": self.before_state,
            "after": self.after_state,
            "success": bool(self.success),
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
        }
