from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from timeclock.db import get_db
from timeclock.models import Timesheet, TimesheetStatus, UserProfile
from timeclock.audit import AuditAction, audit_user_action
from timeclock.schemas import (
    TimesheetCalculations,
    TimesheetGenerateRequest,
    TimesheetRead,
    TimesheetReviewRequest,
    TimesheetWithCalculations,
)
from timeclock.security import get_current_actor
from timeclock.services.period_aggregator import PeriodTotals
from timeclock.services.timesheets import (
    approve_timesheet,
    delete_timesheet,
    generate_timesheet,
    get_timesheet,
    list_timesheets,
    recalculate_timesheet,
    reject_timesheet,
    submit_timesheet,
)

router = APIRouter(prefix="/api/timesheets", tags=["timesheets"])


def _with_calculations(timesheet: Timesheet, totals: PeriodTotals) -> TimesheetWithCalculations:
    return TimesheetWithCalculations(
        timesheet=TimesheetRead.model_validate(timesheet),
        calculations=TimesheetCalculations(**totals.calculations()),
        days=[day.to_dict() for day in totals.days],
    )


def _audit(
    db: Session,
    request: Request,
    *,
    actor: UserProfile,
    action: AuditAction,
    timesheet: Timesheet,
) -> None:
    audit_user_action(
        db,
        request,
        actor=actor,
        action=action,
        entity_type="timesheet",
        entity_id=timesheet.id,
        details={"user_id": timesheet.user_id, "status": timesheet.status.value},
    )


@router.post("/generate", response_model=TimesheetWithCalculations, status_code=status.HTTP_201_CREATED)
def generate_endpoint(
    payload: TimesheetGenerateRequest,
    request: Request,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> TimesheetWithCalculations:
    timesheet, totals = generate_timesheet(
        db,
        actor=actor,
        period_start=payload.period_start,
        period_end=payload.period_end,
        user_id=payload.user_id,
    )
    _audit(db, request, actor=actor, action=AuditAction.TIMESHEET_GENERATED, timesheet=timesheet)
    return _with_calculations(timesheet, totals)


@router.get("", response_model=list[TimesheetRead])
def list_endpoint(
    timesheet_status: TimesheetStatus | None = Query(default=None, alias="status"),
    user_id: int | None = Query(default=None, ge=1),
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> list[TimesheetRead]:
    rows = list_timesheets(db, actor=actor, status=timesheet_status, user_id=user_id)
    return [TimesheetRead.model_validate(item) for item in rows]


@router.get("/{timesheet_id}", response_model=TimesheetRead)
def read_endpoint(
    timesheet_id: int,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> TimesheetRead:
    return TimesheetRead.model_validate(get_timesheet(db, actor=actor, timesheet_id=timesheet_id))


@router.post("/{timesheet_id}/recalculate", response_model=TimesheetWithCalculations)
def recalculate_endpoint(
    timesheet_id: int,
    request: Request,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> TimesheetWithCalculations:
    timesheet, totals = recalculate_timesheet(db, actor=actor, timesheet_id=timesheet_id)
    _audit(db, request, actor=actor, action=AuditAction.TIMESHEET_RECALCULATED, timesheet=timesheet)
    return _with_calculations(timesheet, totals)


@router.put("/{timesheet_id}/submit", response_model=TimesheetRead)
def submit_endpoint(
    timesheet_id: int,
    request: Request,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> TimesheetRead:
    timesheet = submit_timesheet(db, actor=actor, timesheet_id=timesheet_id)
    _audit(db, request, actor=actor, action=AuditAction.TIMESHEET_SUBMITTED, timesheet=timesheet)
    return TimesheetRead.model_validate(timesheet)


@router.put("/{timesheet_id}/approve", response_model=TimesheetRead)
def approve_endpoint(
    timesheet_id: int,
    request: Request,
    payload: TimesheetReviewRequest | None = None,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> TimesheetRead:
    timesheet = approve_timesheet(
        db,
        actor=actor,
        timesheet_id=timesheet_id,
        review_comment=payload.review_comment if payload is not None else None,
    )
    _audit(db, request, actor=actor, action=AuditAction.TIMESHEET_APPROVED, timesheet=timesheet)
    return TimesheetRead.model_validate(timesheet)


@router.put("/{timesheet_id}/reject", response_model=TimesheetRead)
def reject_endpoint(
    timesheet_id: int,
    payload: TimesheetReviewRequest,
    request: Request,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> TimesheetRead:
    timesheet = reject_timesheet(
        db,
        actor=actor,
        timesheet_id=timesheet_id,
        review_comment=payload.review_comment,
    )
    _audit(db, request, actor=actor, action=AuditAction.TIMESHEET_REJECTED, timesheet=timesheet)
    return TimesheetRead.model_validate(timesheet)


@router.delete("/{timesheet_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_endpoint(
    timesheet_id: int,
    request: Request,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> Response:
    delete_timesheet(db, actor=actor, timesheet_id=timesheet_id)
    audit_user_action(
        db,
        request,
        actor=actor,
        action=AuditAction.TIMESHEET_DELETED,
        entity_type="timesheet",
        entity_id=timesheet_id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
