from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from timeclock.models import PRIVILEGED_ROLES, NotificationIntent, UserProfile

logger = logging.getLogger("timeclock.notifications")

TYPE_OVERTIME_ALERT = "overtime_alert"
TYPE_TIMESHEET_SUBMITTED = "timesheet_submitted"
TYPE_TIMESHEET_PENDING_APPROVAL = "timesheet_pending_approval"
TYPE_TIMESHEET_APPROVED = "timesheet_approved"
TYPE_TIMESHEET_REJECTED = "timesheet_rejected"


@dataclass(frozen=True)
class NotificationDraft:
    organization_id: int
    user_id: int
    notification_type: str
    title: str
    body: str
    payload: dict[str, Any] = field(default_factory=dict)


def format_period(period_start: date, period_end: date) -> str:
    return f"{period_start.strftime('%b')} {period_start.day}, {period_start.year} - " \
        f"{period_end.strftime('%b')} {period_end.day}, {period_end.year}"


def list_privileged_users(
    db: Session,
    *,
    organization_id: int,
    exclude_user_id: int | None = None,
) -> list[UserProfile]:
    stmt = (
        select(UserProfile)
        .where(
            UserProfile.organization_id == organization_id,
            UserProfile.is_active.is_(True),
            UserProfile.role.in_(list(PRIVILEGED_ROLES)),
        )
        .order_by(UserProfile.id.asc())
    )
    if exclude_user_id is not None:
        stmt = stmt.where(UserProfile.id != exclude_user_id)
    return list(db.scalars(stmt).all())


def raise_notification_intents(db: Session, drafts: list[NotificationDraft]) -> list[NotificationIntent]:
    """Record notification intents in their own transaction.

    Callers commit their attendance change first; a failure here is logged and
    dropped so it can never undo or fail that change.
    """
    if not drafts:
        return []

    intents = [
        NotificationIntent(
            organization_id=draft.organization_id,
            user_id=draft.user_id,
            notification_type=draft.notification_type,
            title=draft.title,
            body=draft.body,
            payload=dict(draft.payload),
            status="PENDING",
        )
        for draft in drafts
    ]
    try:
        db.add_all(intents)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "notification_intent_write_failed",
            extra={
                "notification_types": sorted({draft.notification_type for draft in drafts}),
                "recipient_count": len(drafts),
            },
        )
        return []

    logger.info(
        "notification_intents_raised",
        extra={
            "notification_types": sorted({draft.notification_type for draft in drafts}),
            "recipient_count": len(intents),
        },
    )
    return intents


def timesheet_status_draft(
    *,
    organization_id: int,
    user_id: int,
    notification_type: str,
    timesheet_id: int,
    period_start: date,
    period_end: date,
    reviewer_name: str | None = None,
    comment: str | None = None,
) -> NotificationDraft:
    period = format_period(period_start, period_end)
    if notification_type == TYPE_TIMESHEET_SUBMITTED:
        title = "Timesheet Submitted"
        body = f"Your timesheet for {period} has been submitted for approval."
    elif notification_type == TYPE_TIMESHEET_APPROVED:
        title = "Timesheet Approved"
        body = (
            f"Your timesheet for {period} has been approved by {reviewer_name}."
            if reviewer_name
            else f"Your timesheet for {period} has been approved."
        )
        if comment:
            body += f" Comment: {comment}"
    elif notification_type == TYPE_TIMESHEET_REJECTED:
        title = "Timesheet Rejected"
        body = (
            f"Your timesheet for {period} has been rejected by {reviewer_name}."
            if reviewer_name
            else f"Your timesheet for {period} has been rejected."
        )
        if comment:
            body += f" Reason: {comment}"
    else:
        raise ValueError(f"Unsupported timesheet notification type: {notification_type}")

    return NotificationDraft(
        organization_id=organization_id,
        user_id=user_id,
        notification_type=notification_type,
        title=title,
        body=body,
        payload={
            "timesheet_id": timesheet_id,
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
            "reviewer_name": reviewer_name,
            "comment": comment,
        },
    )


def timesheet_pending_approval_draft(
    *,
    organization_id: int,
    admin_user_id: int,
    employee_name: str,
    timesheet_id: int,
    period_start: date,
    period_end: date,
) -> NotificationDraft:
    period = format_period(period_start, period_end)
    return NotificationDraft(
        organization_id=organization_id,
        user_id=admin_user_id,
        notification_type=TYPE_TIMESHEET_PENDING_APPROVAL,
        title="Timesheet Pending Approval",
        body=f"{employee_name} has submitted a timesheet for {period} that requires your approval.",
        payload={
            "timesheet_id": timesheet_id,
            "employee_name": employee_name,
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
        },
    )
