from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from shiftcheck.models import AuditActorType, AuditLog

logger = logging.getLogger("shiftcheck.audit")


class AuditAction(str, enum.Enum):
    LOGIN_SUCCEEDED = "LOGIN_SUCCEEDED"
    LOGIN_FAILED = "LOGIN_FAILED"
    ATTENDANCE_CHECKIN = "ATTENDANCE_CHECKIN"
    ATTENDANCE_CHECKOUT = "ATTENDANCE_CHECKOUT"
    SHIFT_CREATED = "SHIFT_CREATED"
    SHIFT_UPDATED = "SHIFT_UPDATED"
    SHIFT_DELETED = "SHIFT_DELETED"
    SHIFT_QR_ISSUED = "SHIFT_QR_ISSUED"
    LOCATION_CREATED = "LOCATION_CREATED"
    LOCATION_UPDATED = "LOCATION_UPDATED"
    LOCATION_DEACTIVATED = "LOCATION_DEACTIVATED"


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def record_audit(
    db: Session,
    request: Request,
    *,
    actor_id: str,
    action: AuditAction,
    success: bool = True,
    entity_type: str | None = None,
    entity_id: int | str | None = None,
    details: dict[str, Any] | None = None,
    actor_type: AuditActorType = AuditActorType.USER,
) -> AuditLog | None:
    """Append an audit row for ``action`` in its own commit.

    Callers invoke this only after their business transaction committed, so a
    failed audit write is logged and dropped instead of surfacing to the
    client. Returns the stored row, or ``None`` when the write failed.
    """
    request_id = getattr(request.state, "request_id", None)
    audit = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        action=action.value,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        success=success,
        details=details or {},
    )
    db.add(audit)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={"request_id": request_id, "action": action.value, "actor_id": actor_id},
        )
        return None

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action.value,
            "actor_id": actor_id,
            "entity_type": entity_type,
            "entity_id": audit.entity_id,
            "success": success,
        },
    )
    return audit
