from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from timeclock.models import AuditActorType, AuditLog, ClockEventKind, UserProfile

logger = logging.getLogger("timeclock.audit")

SYSTEM_ACTOR_AUTO_CLOCK_OUT = "auto_clock_out"


class AuditAction(str, enum.Enum):
    TIME_CLOCK_CLOCK_IN = "TIME_CLOCK_CLOCK_IN"
    TIME_CLOCK_CLOCK_OUT = "TIME_CLOCK_CLOCK_OUT"
    TIME_CLOCK_BREAK_START = "TIME_CLOCK_BREAK_START"
    TIME_CLOCK_BREAK_END = "TIME_CLOCK_BREAK_END"
    AUTO_CLOCK_OUT = "AUTO_CLOCK_OUT"
    TIME_ENTRY_MANUAL_CREATED = "TIME_ENTRY_MANUAL_CREATED"
    TIME_ENTRY_UPDATED = "TIME_ENTRY_UPDATED"
    TIME_ENTRY_BULK_STATUS = "TIME_ENTRY_BULK_STATUS"
    TIMESHEET_GENERATED = "TIMESHEET_GENERATED"
    TIMESHEET_RECALCULATED = "TIMESHEET_RECALCULATED"
    TIMESHEET_SUBMITTED = "TIMESHEET_SUBMITTED"
    TIMESHEET_APPROVED = "TIMESHEET_APPROVED"
    TIMESHEET_REJECTED = "TIMESHEET_REJECTED"
    TIMESHEET_DELETED = "TIMESHEET_DELETED"
    TIME_CLOCK_SETTINGS_UPDATED = "TIME_CLOCK_SETTINGS_UPDATED"

    @classmethod
    def for_clock_kind(cls, kind: ClockEventKind) -> "AuditAction":
        return cls(f"TIME_CLOCK_{kind.value}")


@dataclass(frozen=True)
class RequestMeta:
    ip: str | None = None
    user_agent: str | None = None
    request_id: str | None = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestMeta":
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            ip: str | None = forwarded_for.split(",")[0].strip()
        elif request.client:
            ip = request.client.host
        else:
            ip = None
        return cls(
            ip=ip,
            user_agent=request.headers.get("user-agent"),
            request_id=getattr(request.state, "request_id", None),
        )


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: AuditAction,
    organization_id: int | None,
    entity_type: str,
    entity_id: int | str | None,
    details: dict[str, Any] | None = None,
    success: bool = True,
    meta: RequestMeta | None = None,
) -> AuditLog | None:
    """Persist one audit row after the audited change has been committed.

    The write is best effort: a failure is rolled back and logged, and the
    caller's response is unaffected.
    """
    meta = meta or RequestMeta()
    entry = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        organization_id=organization_id,
        actor_type=actor_type,
        actor_id=actor_id,
        action=action.value,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        ip=meta.ip,
        user_agent=meta.user_agent,
        success=success,
        details=details or {},
    )
    summary = {
        "request_id": meta.request_id,
        "organization_id": organization_id,
        "action": action.value,
        "actor_type": actor_type.value,
        "actor_id": actor_id,
        "entity_type": entity_type,
        "entity_id": entry.entity_id,
    }
    db.add(entry)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("audit_log_write_failed", extra=summary)
        return None

    logger.info("audit_event", extra={**summary, "success": success})
    return entry


def audit_user_action(
    db: Session,
    request: Request,
    *,
    actor: UserProfile,
    action: AuditAction,
    entity_type: str,
    entity_id: int | None,
    details: dict[str, Any] | None = None,
) -> AuditLog | None:
    return log_audit(
        db,
        actor_type=AuditActorType.USER,
        actor_id=str(actor.id),
        action=action,
        organization_id=actor.organization_id,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
        meta=RequestMeta.from_request(request),
    )


def audit_system_action(
    db: Session,
    *,
    system_actor: str,
    action: AuditAction,
    organization_id: int,
    entity_type: str,
    entity_id: int | None,
    details: dict[str, Any] | None = None,
) -> AuditLog | None:
    return log_audit(
        db,
        actor_type=AuditActorType.SYSTEM,
        actor_id=system_actor,
        action=action,
        organization_id=organization_id,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
    )
