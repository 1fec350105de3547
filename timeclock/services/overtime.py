from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from timeclock.models import ClockEvent, NotificationIntent, UserProfile
from timeclock.services.clock_events import load_events_between
from timeclock.services.local_time import local_day, local_day_bounds_utc, normalize_ts, resolve_timezone
from timeclock.services.notifications import (
    TYPE_OVERTIME_ALERT,
    NotificationDraft,
    list_privileged_users,
    raise_notification_intents,
)
from timeclock.services.period_aggregator import DayTotals, aggregate_day, round_to
from timeclock.services.time_clock_settings import resolve_time_clock_settings

logger = logging.getLogger("timeclock.overtime")


@dataclass(frozen=True)
class OvertimeEvaluation:
    day_totals: DayTotals
    threshold_hours: float
    notified_user_ids: list[int]

    @property
    def exceeded(self) -> bool:
        return self.day_totals.worked_hours > self.threshold_hours


def _overtime_drafts(
    *,
    employee: UserProfile,
    recipients: list[UserProfile],
    totals: DayTotals,
) -> list[NotificationDraft]:
    overtime_hours = round_to(totals.overtime_hours, 1)
    payload = {
        "employee_id": employee.id,
        "employee_name": employee.display_name,
        "total_hours": round_to(totals.worked_hours, 1),
        "overtime_hours": overtime_hours,
        "date": totals.day.isoformat(),
    }
    return [
        NotificationDraft(
            organization_id=employee.organization_id,
            user_id=recipient.id,
            notification_type=TYPE_OVERTIME_ALERT,
            title="Overtime Alert",
            body=f"{employee.display_name} has worked {overtime_hours:g} hours of overtime today.",
            payload=payload,
        )
        for recipient in recipients
    ]


def evaluate_overtime_after_clock_out(
    db: Session,
    *,
    actor: UserProfile,
    clock_out_event: ClockEvent,
) -> OvertimeEvaluation | None:
    """Re-aggregate the clock-out's local day and alert reviewers on overtime.

    Runs after the clock-out has been committed; any failure is logged and
    reported as ``None`` so the clock-out itself always stands.
    """
    try:
        organization = actor.organization
        settings = resolve_time_clock_settings(organization)
        tz = resolve_timezone(organization.timezone)
        clock_out_ts = normalize_ts(clock_out_event.ts_utc)
        day = local_day(clock_out_ts, tz)
        day_start_utc, day_end_utc = local_day_bounds_utc(day, tz)
        events = load_events_between(
            db,
            organization_id=actor.organization_id,
            user_id=actor.id,
            start_utc=day_start_utc,
            end_utc=day_end_utc,
        )
        totals = aggregate_day(
            day,
            events,
            tz=tz,
            overtime_threshold_hours=settings.overtime_threshold_hours,
        )
        evaluation = OvertimeEvaluation(
            day_totals=totals,
            threshold_hours=settings.overtime_threshold_hours,
            notified_user_ids=[],
        )
        if not evaluation.exceeded or not settings.notify_on_overtime:
            return evaluation

        recipients = list_privileged_users(
            db,
            organization_id=actor.organization_id,
            exclude_user_id=actor.id,
        )
        intents: list[NotificationIntent] = raise_notification_intents(
            db,
            _overtime_drafts(employee=actor, recipients=recipients, totals=totals),
        )
        logger.info(
            "overtime_detected",
            extra={
                "organization_id": actor.organization_id,
                "user_id": actor.id,
                "date": day.isoformat(),
                "worked_hours": round_to(totals.worked_hours, 2),
                "overtime_hours": round_to(totals.overtime_hours, 2),
                "recipient_count": len(intents),
            },
        )
        return OvertimeEvaluation(
            day_totals=totals,
            threshold_hours=settings.overtime_threshold_hours,
            notified_user_ids=[intent.user_id for intent in intents],
        )
    except Exception:
        db.rollback()
        logger.exception(
            "overtime_evaluation_failed",
            extra={"organization_id": actor.organization_id, "user_id": actor.id, "event_id": clock_out_event.id},
        )
        return None
