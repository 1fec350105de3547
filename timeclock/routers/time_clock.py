from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from timeclock.db import get_db
from timeclock.models import ClockEvent, UserProfile
from timeclock.audit import AuditAction, audit_user_action
from timeclock.schemas import (
    AttendanceStatusRead,
    ClockActionRequest,
    ClockActionResponse,
    ClockEventRead,
    ClockInRequest,
    SweepSummaryRead,
)
from timeclock.security import get_current_actor, require_cron_secret
from timeclock.services.auto_clock_out import run_auto_clock_out_sweep
from timeclock.services.clock_events import clock_in, clock_out, end_break, get_status_snapshot, start_break
from timeclock.services.overtime import evaluate_overtime_after_clock_out

router = APIRouter(prefix="/api/time-clock", tags=["time-clock"])


def _respond(db: Session, request: Request, *, actor: UserProfile, event: ClockEvent) -> ClockActionResponse:
    request.state.event_id = event.id
    audit_user_action(
        db,
        request,
        actor=actor,
        action=AuditAction.for_clock_kind(event.kind),
        entity_type="clock_event",
        entity_id=event.id,
        details={
            "location_id": event.location_id,
            "shift_id": event.shift_id,
            "is_inside_geofence": event.is_inside_geofence,
        },
    )
    return ClockActionResponse(event=ClockEventRead.model_validate(event))


@router.post("/clock-in", response_model=ClockActionResponse)
def clock_in_endpoint(
    payload: ClockInRequest,
    request: Request,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> ClockActionResponse:
    event = clock_in(
        db,
        actor=actor,
        location_id=payload.location_id,
        shift_id=payload.shift_id,
        lat=payload.lat,
        lng=payload.lng,
        notes=payload.notes,
    )
    return _respond(db, request, actor=actor, event=event)


@router.post("/clock-out", response_model=ClockActionResponse)
def clock_out_endpoint(
    payload: ClockActionRequest,
    request: Request,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> ClockActionResponse:
    event = clock_out(db, actor=actor, lat=payload.lat, lng=payload.lng, notes=payload.notes)
    response = _respond(db, request, actor=actor, event=event)
    evaluate_overtime_after_clock_out(db, actor=actor, clock_out_event=event)
    return response


@router.post("/break-start", response_model=ClockActionResponse)
def break_start_endpoint(
    payload: ClockActionRequest,
    request: Request,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> ClockActionResponse:
    event = start_break(db, actor=actor, lat=payload.lat, lng=payload.lng, notes=payload.notes)
    return _respond(db, request, actor=actor, event=event)


@router.post("/break-end", response_model=ClockActionResponse)
def break_end_endpoint(
    payload: ClockActionRequest,
    request: Request,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> ClockActionResponse:
    event = end_break(db, actor=actor, lat=payload.lat, lng=payload.lng, notes=payload.notes)
    return _respond(db, request, actor=actor, event=event)


@router.get("/status", response_model=AttendanceStatusRead)
def status_endpoint(
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> AttendanceStatusRead:
    snapshot = get_status_snapshot(db, actor=actor)
    return AttendanceStatusRead(
        status=snapshot.status.value,
        last_event=ClockEventRead.model_validate(snapshot.last_event) if snapshot.last_event is not None else None,
        entries=[ClockEventRead.model_validate(item) for item in snapshot.entries],
        total_worked_minutes=snapshot.total_worked_minutes,
        total_break_minutes=snapshot.total_break_minutes,
    )


@router.post(
    "/auto-clock-out",
    response_model=SweepSummaryRead,
    dependencies=[Depends(require_cron_secret)],
)
def auto_clock_out_endpoint(db: Session = Depends(get_db)) -> SweepSummaryRead:
    summary = run_auto_clock_out_sweep(datetime.now(timezone.utc), db=db)
    return SweepSummaryRead(**summary.to_dict())
