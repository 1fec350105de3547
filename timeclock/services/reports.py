from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from timeclock.errors import ApiError
from timeclock.models import UserProfile
from timeclock.services.period_aggregator import PeriodTotals, round_to
from timeclock.services.timesheets import compute_period_totals
from timeclock.settings import get_settings


@dataclass(frozen=True)
class UserWorkHours:
    user: UserProfile
    totals: PeriodTotals

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user.id,
            "display_name": self.user.display_name,
            **self.totals.calculations(),
            "days": [day.to_dict() for day in self.totals.days],
        }


@dataclass(frozen=True)
class WorkHoursReport:
    period_start: date
    period_end: date
    rows: list[UserWorkHours]

    def to_dict(self) -> dict[str, Any]:
        return {
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "users": [row.to_dict() for row in self.rows],
            "total_hours": round_to(sum(row.totals.total_hours for row in self.rows), 2),
            "overtime_hours": round_to(sum(row.totals.overtime_hours for row in self.rows), 2),
        }


def build_work_hours_report(
    db: Session,
    *,
    actor: UserProfile,
    start_date: date,
    end_date: date,
    user_id: int | None = None,
    now_utc: datetime | None = None,
) -> WorkHoursReport:
    if not actor.is_privileged:
        raise ApiError(
            status_code=403,
            code="FORBIDDEN",
            message="Only managers and administrators can view work-hour reports.",
        )
    if end_date < start_date:
        raise ApiError(status_code=422, code="INVALID_DATE_RANGE", message="end_date must not be before start_date.")
    max_days = get_settings().report_max_days
    if (end_date - start_date).days + 1 > max_days:
        raise ApiError(
            status_code=422,
            code="DATE_RANGE_TOO_LARGE",
            message=f"Reports cover at most {max_days} days.",
            details={"max_days": max_days},
        )

    stmt = select(UserProfile).where(
        UserProfile.organization_id == actor.organization_id,
        UserProfile.is_active.is_(True),
    )
    if user_id is not None:
        stmt = stmt.where(UserProfile.id == user_id)
    users = db.scalars(stmt.order_by(UserProfile.display_name.asc(), UserProfile.id.asc())).all()

    rows = [
        UserWorkHours(
            user=user,
            totals=compute_period_totals(
                db,
                user=user,
                period_start=start_date,
                period_end=end_date,
                now_utc=now_utc,
            ),
        )
        for user in users
    ]
    return WorkHoursReport(period_start=start_date, period_end=end_date, rows=rows)
