"""Audit trail for booking and lifecycle operations.

``audited`` wraps an operation at the place it is exposed and records the
entity state before and after the call. Failing to write the audit row is
logged and never fails the wrapped operation.
"""
from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from .extensions import db
from .models import Appointment, AuditLog

logger = logging.getLogger(__name__)


def appointment_state(appointment_id: int, *args: Any, **kwargs: Any) -> dict[str, object] | None:
    appointment = db.session.get(Appointment, appointment_id)
    return appointment.to_dict() if appointment else None


def appointment_state_by_token(token: str, *args: Any, **kwargs: Any) -> dict[str, object] | None:
    appointment = db.session.execute(
        db.select(Appointment).where(Appointment.confirmation_token == token)
    ).scalar_one_or_none()
    return appointment.to_dict() if appointment else None


def record_audit(
    action: str,
    entity_type: str,
    entity_id: int | None,
    before: dict | None,
    after: dict | None,
    success: bool,
    error: str | None = None,
) -> None:
    try:
        db.session.add(
            AuditLog(
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                before_state=before,
                after_state=after,
                success=success,
                error_message=error,
            )
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to write audit log for %s %s %s", action, entity_type, entity_id)


def _entity_id(state: dict | None, args: tuple) -> int | None:
    if state and state.get("id") is not None:
        return state["id"]
    if args and isinstance(args[0], int):
        return args[0]
    return None


def audited(action: str, entity_type: str, before: Callable[..., dict | None] | None = None):
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            before_state = before(*args, **kwargs) if before is not None else None
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                db.session.rollback()
                record_audit(
                    action,
                    entity_type,
                    _entity_id(before_state, args),
                    before_state,
                    None,
                    success=False,
                    error=getattr(exc, "message", None) or str(exc),
                )
                raise
            after_state = result.to_dict() if hasattr(result, "to_dict") else None
            record_audit(
                action,
                entity_type,
                _entity_id(after_state, args) or _entity_id(before_state, args),
                before_state,
                after_state,
                success=True,
            )
            return result

        return wrapper

    return decorator
