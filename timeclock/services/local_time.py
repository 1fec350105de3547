from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from timeclock.settings import get_settings

logger = logging.getLogger("timeclock.local_time")


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


@lru_cache
def resolve_timezone(name: str | None) -> ZoneInfo:
    raw_name = (name or "").strip() or (get_settings().default_timezone or "").strip() or "UTC"
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_timezone_fallback", extra={"timezone": raw_name})
        return ZoneInfo("UTC")


def local_day(ts_utc: datetime, tz: ZoneInfo) -> date:
    return normalize_ts(ts_utc).astimezone(tz).date()


def local_day_bounds_utc(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    local_start = datetime.combine(day, time.min, tzinfo=tz)
    local_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)


def period_bounds_utc(period_start: date, period_end: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    start_utc, _ = local_day_bounds_utc(period_start, tz)
    _, end_utc = local_day_bounds_utc(period_end, tz)
    return start_utc, end_utc
