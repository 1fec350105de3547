from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from timeclock.audit import SYSTEM_ACTOR_AUTO_CLOCK_OUT, AuditAction, audit_system_action
from timeclock.db import SessionLocal
from timeclock.errors import ApiError, InvalidTransition
from timeclock.logging_utils import log_context
from timeclock.models import (
    ClockEvent,
    ClockEventHead,
    ClockEventKind,
    ClockEventSource,
    Organization,
    UserProfile,
)
from timeclock.services.clock_events import (
    ClockEventCandidate,
    append_clock_event,
    latest_event_at_or_before,
    session_clock_in,
)
from timeclock.services.local_time import normalize_ts, resolve_timezone
from timeclock.services.time_clock_settings import (
    AutoClockOutPolicy,
    TimeClockSettings,
    resolve_auto_clock_out_policy,
    resolve_time_clock_settings,
)

logger = logging.getLogger("timeclock.auto_clock_out")

OPEN_KINDS = frozenset({ClockEventKind.CLOCK_IN, ClockEventKind.BREAK_START, ClockEventKind.BREAK_END})


@dataclass
class SweepSummary:
    processed: int = 0
    clocked_out: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "clocked_out": self.clocked_out,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class OpenSession:
    user: UserProfile
    clock_in: ClockEvent
    latest: ClockEvent


def next_occurrence_on_or_after(reference_utc: datetime, at_time: time, tz: ZoneInfo) -> datetime:
    """First instant at ``at_time`` local wall-clock on or after ``reference_utc``."""
    reference_local = normalize_ts(reference_utc).astimezone(tz)
    candidate = datetime.combine(reference_local.date(), at_time.replace(tzinfo=None), tzinfo=tz)
    if candidate < reference_local:
        candidate = datetime.combine(
            reference_local.date() + timedelta(days=1),
            at_time.replace(tzinfo=None),
            tzinfo=tz,
        )
    return normalize_ts(candidate)


def resolve_deadline(
    clock_in_ts_utc: datetime,
    policy: AutoClockOutPolicy,
    tz: ZoneInfo,
) -> tuple[datetime, str]:
    if policy.at_time is not None:
        deadline = next_occurrence_on_or_after(clock_in_ts_utc, policy.at_time, tz)
        return deadline, f"[AUTO] Scheduled auto clock-out at {policy.at_time.strftime('%H:%M')}"
    deadline = normalize_ts(clock_in_ts_utc) + timedelta(hours=policy.after_hours)
    return deadline, f"[AUTO] Exceeded {policy.after_hours:g} hour threshold"


def find_open_sessions(db: Session, *, organization_id: int, now_utc: datetime) -> list[OpenSession]:
    heads = db.scalars(
        select(ClockEventHead)
        .where(ClockEventHead.organization_id == organization_id)
        .order_by(ClockEventHead.user_id.asc())
    ).all()
    sessions: list[OpenSession] = []
    for head in heads:
        latest = latest_event_at_or_before(
            db,
            organization_id=organization_id,
            user_id=head.user_id,
            reference_ts_utc=now_utc,
        )
        if latest is None or latest.kind not in OPEN_KINDS:
            continue
        clock_in = session_clock_in(
            db,
            organization_id=organization_id,
            user_id=head.user_id,
            reference_ts_utc=normalize_ts(latest.ts_utc),
        )
        user = db.get(UserProfile, head.user_id)
        if clock_in is None or user is None:
            continue
        sessions.append(OpenSession(user=user, clock_in=clock_in, latest=latest))
    return sessions


def _close_session(
    db: Session,
    *,
    session: OpenSession,
    note: str,
    now_utc: datetime,
) -> ClockEvent:
    user = session.user
    if session.latest.kind == ClockEventKind.BREAK_START:
        try:
            append_clock_event(
                db,
                ClockEventCandidate(
                    organization_id=user.organization_id,
                    user_id=user.id,
                    kind=ClockEventKind.BREAK_END,
                    ts_utc=now_utc,
                    source=ClockEventSource.SYSTEM,
                    notes=note,
                    enforce_geofence=False,
                ),
            )
        except InvalidTransition:
            # The break ended after the scan; a session that is still open gets the clock-out alone.
            logger.info(
                "auto_clock_out_break_already_ended",
                extra={"organization_id": user.organization_id, "user_id": user.id},
            )
    return append_clock_event(
        db,
        ClockEventCandidate(
            organization_id=user.organization_id,
            user_id=user.id,
            kind=ClockEventKind.CLOCK_OUT,
            ts_utc=now_utc,
            source=ClockEventSource.SYSTEM,
            notes=note,
            enforce_geofence=False,
        ),
    )


def _sweep_organization(
    db: Session,
    *,
    organization: Organization,
    settings: TimeClockSettings,
    now_utc: datetime,
    summary: SweepSummary,
) -> None:
    tz = resolve_timezone(organization.timezone)
    for session in find_open_sessions(db, organization_id=organization.id, now_utc=now_utc):
        summary.processed += 1
        user = session.user
        policy = resolve_auto_clock_out_policy(user, settings)
        if not policy.enabled:
            continue

        deadline, note = resolve_deadline(session.clock_in.ts_utc, policy, tz)
        if now_utc < deadline:
            continue

        try:
            event = _close_session(db, session=session, note=note, now_utc=now_utc)
        except InvalidTransition:
            # The user closed the session between the scan and the append.
            logger.info(
                "auto_clock_out_skipped",
                extra={"organization_id": organization.id, "user_id": user.id, "reason": "session_already_closed"},
            )
            continue
        except ApiError as exc:
            summary.errors.append(
                {"organization_id": organization.id, "user_id": user.id, "code": exc.code, "error": exc.message}
            )
            continue
        except Exception as exc:
            db.rollback()
            logger.exception(
                "auto_clock_out_user_failed",
                extra={"organization_id": organization.id, "user_id": user.id},
            )
            summary.errors.append(
                {"organization_id": organization.id, "user_id": user.id, "code": "INTERNAL_ERROR", "error": str(exc)}
            )
            continue

        summary.clocked_out += 1
        audit_system_action(
            db,
            system_actor=SYSTEM_ACTOR_AUTO_CLOCK_OUT,
            action=AuditAction.AUTO_CLOCK_OUT,
            organization_id=organization.id,
            entity_type="clock_event",
            entity_id=event.id,
            details={
                "user_id": user.id,
                "clock_in_event_id": session.clock_in.id,
                "deadline_utc": deadline.isoformat(),
                "policy_source": policy.source,
                "note": note,
            },
        )


def run_auto_clock_out_sweep(now_utc: datetime, db: Session | None = None) -> SweepSummary:
    """Close every open session whose resolved deadline has passed.

    Each synthetic event goes through ``append_clock_event``, so a second run
    finds nothing left to close.
    """
    if db is None:
        with SessionLocal() as managed_db:
            return run_auto_clock_out_sweep(now_utc, db=managed_db)

    reference_utc = normalize_ts(now_utc)
    summary = SweepSummary()
    organizations = db.scalars(select(Organization).order_by(Organization.id.asc())).all()
    for organization in organizations:
        settings = resolve_time_clock_settings(organization)
        if not settings.auto_clock_out_enabled:
            continue
        try:
            with log_context(organization_id=organization.id):
                _sweep_organization(
                    db,
                    organization=organization,
                    settings=settings,
                    now_utc=reference_utc,
                    summary=summary,
                )
        except Exception as exc:
            db.rollback()
            logger.exception("auto_clock_out_organization_failed", extra={"organization_id": organization.id})
            summary.errors.append(
                {"organization_id": organization.id, "user_id": None, "code": "INTERNAL_ERROR", "error": str(exc)}
            )

    logger.info(
        "auto_clock_out_sweep_complete",
        extra={
            "processed": summary.processed,
            "clocked_out": summary.clocked_out,
            "error_count": len(summary.errors),
        },
    )
    return summary
