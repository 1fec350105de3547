from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence
from zoneinfo import ZoneInfo

from timeclock.services.attendance_state import ClockEventLike, replay_day
from timeclock.services.local_time import local_day, local_day_bounds_utc, normalize_ts


@dataclass(frozen=True)
class DayTotals:
    day: date
    worked_minutes: float
    break_minutes: float
    overtime_hours: float
    entries: int
    incomplete: bool

    @property
    def worked_hours(self) -> float:
        return self.worked_minutes / 60.0

    def to_dict(self) -> dict[str, object]:
        return {
            "date": self.day.isoformat(),
            "worked_minutes": round_to(self.worked_minutes, 2),
            "break_minutes": round_to(self.break_minutes, 2),
            "worked_hours": round_to(self.worked_hours, 2),
            "overtime_hours": round_to(self.overtime_hours, 2),
            "entries": self.entries,
            "incomplete": self.incomplete,
        }


@dataclass(frozen=True)
class PeriodTotals:
    period_start: date
    period_end: date
    entries_processed: int
    total_hours: float
    break_hours: float
    overtime_hours: float
    days: list[DayTotals] = field(default_factory=list)

    def calculations(self) -> dict[str, float | int]:
        return {
            "entries_processed": self.entries_processed,
            "total_hours": self.total_hours,
            "break_hours": self.break_hours,
            "overtime_hours": self.overtime_hours,
        }


def round_to(value: float, places: int) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def daily_overtime_hours(worked_minutes: float, overtime_threshold_hours: float) -> float:
    return max(0.0, worked_minutes / 60.0 - max(0.0, overtime_threshold_hours))


def aggregate_day(
    day: date,
    events: Sequence[ClockEventLike],
    *,
    tz: ZoneInfo,
    overtime_threshold_hours: float,
    as_of_utc: datetime | None = None,
) -> DayTotals:
    close_at: datetime | None = None
    if as_of_utc is not None and local_day(as_of_utc, tz) == day:
        # Only the day still in progress may extend an open segment, never past midnight.
        _, day_end_utc = local_day_bounds_utc(day, tz)
        close_at = min(normalize_ts(as_of_utc), day_end_utc)

    replay = replay_day(events, close_open_at=close_at)
    worked_minutes = replay.worked_minutes
    return DayTotals(
        day=day,
        worked_minutes=worked_minutes,
        break_minutes=replay.break_minutes,
        overtime_hours=daily_overtime_hours(worked_minutes, overtime_threshold_hours),
        entries=replay.event_count,
        incomplete=replay.has_open_segment and close_at is None,
    )


def aggregate_period(
    events: Sequence[ClockEventLike],
    *,
    tz: ZoneInfo,
    period_start: date,
    period_end: date,
    overtime_threshold_hours: float,
    as_of_utc: datetime | None = None,
) -> PeriodTotals:
    """Roll a user's events into per-day and period totals.

    Overtime is a per-day quantity summed over the period. Totals are
    rounded to two decimals once, after summation.
    """
    by_day: dict[date, list[ClockEventLike]] = defaultdict(list)
    entries_processed = 0
    for event in events:
        event_day = local_day(event.ts_utc, tz)
        if event_day < period_start or event_day > period_end:
            continue
        by_day[event_day].append(event)
        entries_processed += 1

    days: list[DayTotals] = []
    worked_minutes = 0.0
    break_minutes = 0.0
    overtime_hours = 0.0
    for day in sorted(by_day):
        totals = aggregate_day(
            day,
            by_day[day],
            tz=tz,
            overtime_threshold_hours=overtime_threshold_hours,
            as_of_utc=as_of_utc,
        )
        days.append(totals)
        worked_minutes += totals.worked_minutes
        break_minutes += totals.break_minutes
        overtime_hours += totals.overtime_hours

    return PeriodTotals(
        period_start=period_start,
        period_end=period_end,
        entries_processed=entries_processed,
        total_hours=round_to(worked_minutes / 60.0, 2),
        break_hours=round_to(break_minutes / 60.0, 2),
        overtime_hours=round_to(overtime_hours, 2),
        days=days,
    )

