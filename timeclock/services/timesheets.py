from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from timeclock.errors import AlreadyExists, ApiError, InvalidStateForAction, PersistenceFailure
from timeclock.models import Timesheet, TimesheetStatus, UserProfile
from timeclock.services.clock_events import load_events_between, resolve_target_user
from timeclock.services.local_time import normalize_ts, period_bounds_utc, resolve_timezone
from timeclock.services.notifications import (
    TYPE_TIMESHEET_APPROVED,
    TYPE_TIMESHEET_REJECTED,
    TYPE_TIMESHEET_SUBMITTED,
    NotificationDraft,
    list_privileged_users,
    raise_notification_intents,
    timesheet_pending_approval_draft,
    timesheet_status_draft,
)
from timeclock.services.period_aggregator import PeriodTotals, aggregate_period
from timeclock.services.time_clock_settings import resolve_time_clock_settings

logger = logging.getLogger("timeclock.timesheets")

RECALCULABLE_STATUSES = frozenset({TimesheetStatus.DRAFT, TimesheetStatus.REJECTED})
SUBMITTABLE_STATUSES = frozenset({TimesheetStatus.DRAFT, TimesheetStatus.REJECTED})


def compute_period_totals(
    db: Session,
    *,
    user: UserProfile,
    period_start: date,
    period_end: date,
    now_utc: datetime | None = None,
) -> PeriodTotals:
    settings = resolve_time_clock_settings(user.organization)
    tz = resolve_timezone(user.organization.timezone)
    start_utc, end_utc = period_bounds_utc(period_start, period_end, tz)
    events = load_events_between(
        db,
        organization_id=user.organization_id,
        user_id=user.id,
        start_utc=start_utc,
        end_utc=end_utc,
    )
    return aggregate_period(
        events,
        tz=tz,
        period_start=period_start,
        period_end=period_end,
        overtime_threshold_hours=settings.overtime_threshold_hours,
        as_of_utc=normalize_ts(now_utc),
    )


def _apply_totals(timesheet: Timesheet, totals: PeriodTotals) -> None:
    timesheet.total_hours = totals.total_hours
    timesheet.break_hours = totals.break_hours
    timesheet.overtime_hours = totals.overtime_hours


def _find_timesheet(
    db: Session,
    *,
    organization_id: int,
    user_id: int,
    period_start: date,
    period_end: date,
) -> Timesheet | None:
    return db.scalar(
        select(Timesheet).where(
            Timesheet.organization_id == organization_id,
            Timesheet.user_id == user_id,
            Timesheet.period_start == period_start,
            Timesheet.period_end == period_end,
        )
    )


def _already_exists(timesheet_id: int | None) -> AlreadyExists:
    return AlreadyExists(
        "A timesheet already exists for this period.",
        details={"timesheet_id": timesheet_id} if timesheet_id is not None else None,
    )


def _commit(db: Session, *, action: str, timesheet_id: int | None) -> None:
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"{action}_failed", extra={"timesheet_id": timesheet_id})
        raise PersistenceFailure() from None


def generate_timesheet(
    db: Session,
    *,
    actor: UserProfile,
    period_start: date,
    period_end: date,
    user_id: int | None = None,
    now_utc: datetime | None = None,
) -> tuple[Timesheet, PeriodTotals]:
    if period_end < period_start:
        raise ApiError(
            status_code=422,
            code="INVALID_PERIOD",
            message="period_end must not be before period_start.",
        )
    target = resolve_target_user(db, actor=actor, user_id=user_id)

    existing = _find_timesheet(
        db,
        organization_id=target.organization_id,
        user_id=target.id,
        period_start=period_start,
        period_end=period_end,
    )
    if existing is not None:
        raise _already_exists(existing.id)

    totals = compute_period_totals(
        db,
        user=target,
        period_start=period_start,
        period_end=period_end,
        now_utc=now_utc,
    )
    timesheet = Timesheet(
        organization_id=target.organization_id,
        user_id=target.id,
        period_start=period_start,
        period_end=period_end,
        status=TimesheetStatus.DRAFT,
    )
    _apply_totals(timesheet, totals)
    db.add(timesheet)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race against a concurrent generation for the same period.
        db.rollback()
        raise _already_exists(None) from None
    except SQLAlchemyError:
        db.rollback()
        logger.exception("timesheet_generate_failed", extra={"user_id": target.id})
        raise PersistenceFailure() from None

    db.refresh(timesheet)
    logger.info(
        "timesheet_generated",
        extra={
            "organization_id": timesheet.organization_id,
            "user_id": timesheet.user_id,
            "timesheet_id": timesheet.id,
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
            "entries_processed": totals.entries_processed,
        },
    )
    return timesheet, totals


def get_timesheet(db: Session, *, actor: UserProfile, timesheet_id: int) -> Timesheet:
    timesheet = db.get(Timesheet, timesheet_id)
    if timesheet is None or timesheet.organization_id != actor.organization_id:
        raise ApiError(status_code=404, code="TIMESHEET_NOT_FOUND", message="Timesheet not found.")
    if timesheet.user_id != actor.id and not actor.is_privileged:
        raise ApiError(status_code=404, code="TIMESHEET_NOT_FOUND", message="Timesheet not found.")
    return timesheet


def list_timesheets(
    db: Session,
    *,
    actor: UserProfile,
    status: TimesheetStatus | None = None,
    user_id: int | None = None,
) -> list[Timesheet]:
    stmt = select(Timesheet).where(Timesheet.organization_id == actor.organization_id)
    if actor.is_privileged:
        if user_id is not None:
            stmt = stmt.where(Timesheet.user_id == user_id)
    else:
        if user_id is not None and user_id != actor.id:
            raise ApiError(
                status_code=403,
                code="FORBIDDEN",
                message="You can only view your own timesheets.",
            )
        stmt = stmt.where(Timesheet.user_id == actor.id)
    if status is not None:
        stmt = stmt.where(Timesheet.status == status)
    return list(
        db.scalars(stmt.order_by(Timesheet.period_start.desc(), Timesheet.id.desc())).all()
    )


def recalculate_timesheet(
    db: Session,
    *,
    actor: UserProfile,
    timesheet_id: int,
    now_utc: datetime | None = None,
) -> tuple[Timesheet, PeriodTotals]:
    timesheet = get_timesheet(db, actor=actor, timesheet_id=timesheet_id)
    if timesheet.status not in RECALCULABLE_STATUSES:
        raise InvalidStateForAction(
            f"Cannot recalculate a {timesheet.status.value.lower()} timesheet.",
            details={"status": timesheet.status.value},
        )
    totals = compute_period_totals(
        db,
        user=timesheet.user,
        period_start=timesheet.period_start,
        period_end=timesheet.period_end,
        now_utc=now_utc,
    )
    _apply_totals(timesheet, totals)
    _commit(db, action="timesheet_recalculate", timesheet_id=timesheet.id)
    return timesheet, totals


def submit_timesheet(
    db: Session,
    *,
    actor: UserProfile,
    timesheet_id: int,
    now_utc: datetime | None = None,
) -> Timesheet:
    timesheet = get_timesheet(db, actor=actor, timesheet_id=timesheet_id)
    if timesheet.user_id != actor.id:
        raise ApiError(
            status_code=403,
            code="FORBIDDEN",
            message="Only the timesheet owner can submit it.",
        )
    if timesheet.status not in SUBMITTABLE_STATUSES:
        raise InvalidStateForAction(
            f"Cannot submit a {timesheet.status.value.lower()} timesheet.",
            details={"status": timesheet.status.value},
        )
    if timesheet.total_hours is None:
        raise InvalidStateForAction("Timesheet totals have not been calculated.")

    timesheet.status = TimesheetStatus.SUBMITTED
    timesheet.submitted_at = normalize_ts(now_utc)
    timesheet.reviewed_by = None
    timesheet.reviewed_at = None
    timesheet.review_comment = None
    _commit(db, action="timesheet_submit", timesheet_id=timesheet.id)

    drafts: list[NotificationDraft] = [
        timesheet_status_draft(
            organization_id=timesheet.organization_id,
            user_id=timesheet.user_id,
            notification_type=TYPE_TIMESHEET_SUBMITTED,
            timesheet_id=timesheet.id,
            period_start=timesheet.period_start,
            period_end=timesheet.period_end,
        )
    ]
    drafts.extend(_pending_approval_drafts(db, timesheet=timesheet, employee=actor))
    raise_notification_intents(db, drafts)
    return timesheet


def _pending_approval_drafts(
    db: Session,
    *,
    timesheet: Timesheet,
    employee: UserProfile,
) -> list[NotificationDraft]:
    # The submit is already committed; a failed lookup only drops the reviewer alerts.
    organization_id = timesheet.organization_id
    timesheet_id = timesheet.id
    try:
        reviewers = list_privileged_users(
            db,
            organization_id=organization_id,
            exclude_user_id=timesheet.user_id,
        )
        return [
            timesheet_pending_approval_draft(
                organization_id=organization_id,
                admin_user_id=reviewer.id,
                employee_name=employee.display_name,
                timesheet_id=timesheet_id,
                period_start=timesheet.period_start,
                period_end=timesheet.period_end,
            )
            for reviewer in reviewers
        ]
    except Exception:
        db.rollback()
        logger.exception(
            "timesheet_reviewer_lookup_failed",
            extra={"organization_id": organization_id, "timesheet_id": timesheet_id},
        )
        return []


def _review(
    db: Session,
    *,
    actor: UserProfile,
    timesheet_id: int,
    decision: TimesheetStatus,
    review_comment: str | None,
    now_utc: datetime | None,
) -> Timesheet:
    if not actor.is_privileged:
        raise ApiError(
            status_code=403,
            code="FORBIDDEN",
            message="Only managers and administrators can review timesheets.",
        )
    timesheet = get_timesheet(db, actor=actor, timesheet_id=timesheet_id)
    if timesheet.status != TimesheetStatus.SUBMITTED:
        raise InvalidStateForAction(
            f"Only submitted timesheets can be reviewed; this one is {timesheet.status.value.lower()}.",
            details={"status": timesheet.status.value},
        )

    comment = (review_comment or "").strip() or None
    if decision == TimesheetStatus.REJECTED and comment is None:
        raise InvalidStateForAction("A review comment is required to reject a timesheet.")

    timesheet.status = decision
    timesheet.reviewed_by = actor.id
    timesheet.reviewed_at = normalize_ts(now_utc)
    timesheet.review_comment = comment
    _commit(db, action=f"timesheet_{decision.value.lower()}", timesheet_id=timesheet.id)

    notification_type = TYPE_TIMESHEET_APPROVED if decision == TimesheetStatus.APPROVED else TYPE_TIMESHEET_REJECTED
    raise_notification_intents(
        db,
        [
            timesheet_status_draft(
                organization_id=timesheet.organization_id,
                user_id=timesheet.user_id,
                notification_type=notification_type,
                timesheet_id=timesheet.id,
                period_start=timesheet.period_start,
                period_end=timesheet.period_end,
                reviewer_name=actor.display_name,
                comment=comment,
            )
        ],
    )
    return timesheet


def approve_timesheet(
    db: Session,
    *,
    actor: UserProfile,
    timesheet_id: int,
    review_comment: str | None = None,
    now_utc: datetime | None = None,
) -> Timesheet:
    return _review(
        db,
        actor=actor,
        timesheet_id=timesheet_id,
        decision=TimesheetStatus.APPROVED,
        review_comment=review_comment,
        now_utc=now_utc,
    )


def reject_timesheet(
    db: Session,
    *,
    actor: UserProfile,
    timesheet_id: int,
    review_comment: str | None,
    now_utc: datetime | None = None,
) -> Timesheet:
    return _review(
        db,
        actor=actor,
        timesheet_id=timesheet_id,
        decision=TimesheetStatus.REJECTED,
        review_comment=review_comment,
        now_utc=now_utc,
    )


def delete_timesheet(db: Session, *, actor: UserProfile, timesheet_id: int) -> None:
    timesheet = get_timesheet(db, actor=actor, timesheet_id=timesheet_id)
    if timesheet.user_id != actor.id:
        raise ApiError(
            status_code=403,
            code="FORBIDDEN",
            message="Only the timesheet owner can delete it.",
        )
    if timesheet.status != TimesheetStatus.DRAFT:
        raise InvalidStateForAction(
            "Only draft timesheets can be deleted.",
            details={"status": timesheet.status.value},
        )
    db.delete(timesheet)
    _commit(db, action="timesheet_delete", timesheet_id=timesheet_id)
