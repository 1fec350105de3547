from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Protocol, Sequence

from timeclock.models import ClockEventKind
from timeclock.services.local_time import normalize_ts


class AttendanceStatus(str, enum.Enum):
    NOT_CLOCKED_IN = "NOT_CLOCKED_IN"
    CLOCKED_IN = "CLOCKED_IN"
    ON_BREAK = "ON_BREAK"


class ClockEventLike(Protocol):
    kind: ClockEventKind
    ts_utc: datetime


STATUS_AFTER_KIND: dict[ClockEventKind, AttendanceStatus] = {
    ClockEventKind.CLOCK_IN: AttendanceStatus.CLOCKED_IN,
    ClockEventKind.BREAK_START: AttendanceStatus.ON_BREAK,
    ClockEventKind.BREAK_END: AttendanceStatus.CLOCKED_IN,
    ClockEventKind.CLOCK_OUT: AttendanceStatus.NOT_CLOCKED_IN,
}

# previous kind (None = empty log) -> kinds that may follow it
ALLOWED_TRANSITIONS: dict[ClockEventKind | None, frozenset[ClockEventKind]] = {
    None: frozenset({ClockEventKind.CLOCK_IN}),
    ClockEventKind.CLOCK_OUT: frozenset({ClockEventKind.CLOCK_IN}),
    ClockEventKind.CLOCK_IN: frozenset({ClockEventKind.BREAK_START, ClockEventKind.CLOCK_OUT}),
    ClockEventKind.BREAK_END: frozenset({ClockEventKind.BREAK_START, ClockEventKind.CLOCK_OUT}),
    ClockEventKind.BREAK_START: frozenset({ClockEventKind.BREAK_END}),
}


def status_after(kind: ClockEventKind | None) -> AttendanceStatus:
    if kind is None:
        return AttendanceStatus.NOT_CLOCKED_IN
    return STATUS_AFTER_KIND[kind]


def is_legal_transition(previous: ClockEventKind | None, candidate: ClockEventKind) -> bool:
    return candidate in ALLOWED_TRANSITIONS[previous]


def sort_events(events: Iterable[ClockEventLike]) -> list[ClockEventLike]:
    return sorted(events, key=lambda item: normalize_ts(item.ts_utc))


@dataclass
class DayReplay:
    worked_seconds: float = 0.0
    break_seconds: float = 0.0
    open_work_start: datetime | None = None
    open_break_start: datetime | None = None
    event_count: int = 0

    @property
    def has_open_segment(self) -> bool:
        return self.open_work_start is not None or self.open_break_start is not None

    @property
    def worked_minutes(self) -> float:
        return max(0.0, self.worked_seconds) / 60.0

    @property
    def break_minutes(self) -> float:
        return max(0.0, self.break_seconds) / 60.0


def replay_day(
    events: Sequence[ClockEventLike],
    *,
    close_open_at: datetime | None = None,
) -> DayReplay:
    """Close work and break segments from stored events.

    A work segment runs from CLOCK_IN/BREAK_END to the next BREAK_START/CLOCK_OUT,
    a break segment from BREAK_START to BREAK_END. Segments still open after the
    last event only count when ``close_open_at`` is given.
    """
    replay = DayReplay()
    for event in sort_events(events):
        ts = normalize_ts(event.ts_utc)
        replay.event_count += 1
        if event.kind == ClockEventKind.CLOCK_IN:
            replay.open_work_start = ts
            replay.open_break_start = None
        elif event.kind == ClockEventKind.BREAK_START:
            if replay.open_work_start is not None:
                replay.worked_seconds += (ts - replay.open_work_start).total_seconds()
            replay.open_work_start = None
            replay.open_break_start = ts
        elif event.kind == ClockEventKind.BREAK_END:
            if replay.open_break_start is not None:
                replay.break_seconds += (ts - replay.open_break_start).total_seconds()
            replay.open_break_start = None
            replay.open_work_start = ts
        elif event.kind == ClockEventKind.CLOCK_OUT:
            if replay.open_work_start is not None:
                replay.worked_seconds += (ts - replay.open_work_start).total_seconds()
            replay.open_work_start = None
            replay.open_break_start = None

    if close_open_at is not None:
        boundary = normalize_ts(close_open_at)
        if replay.open_work_start is not None and boundary > replay.open_work_start:
            replay.worked_seconds += (boundary - replay.open_work_start).total_seconds()
        if replay.open_break_start is not None and boundary > replay.open_break_start:
            replay.break_seconds += (boundary - replay.open_break_start).total_seconds()

    return replay


@dataclass(frozen=True)
class AttendanceSnapshot:
    status: AttendanceStatus
    last_event: ClockEventLike | None
    entries: list[ClockEventLike] = field(default_factory=list)
    worked_minutes: float = 0.0
    break_minutes: float = 0.0

    @property
    def total_worked_minutes(self) -> int:
        return int(round(self.worked_minutes))

    @property
    def total_break_minutes(self) -> int:
        return int(round(self.break_minutes))


def build_snapshot(
    day_events: Sequence[ClockEventLike],
    *,
    now_utc: datetime,
    latest_event: ClockEventLike | None = None,
) -> AttendanceSnapshot:
    """Derive the current status and today's running totals.

    ``latest_event`` is the user's most recent event regardless of day; it
    decides the status so a session opened before midnight still reads as open.
    """
    entries = sort_events(day_events)
    last_event = latest_event if latest_event is not None else (entries[-1] if entries else None)
    status = status_after(last_event.kind if last_event is not None else None)

    close_at = now_utc if status != AttendanceStatus.NOT_CLOCKED_IN else None
    replay = replay_day(entries, close_open_at=close_at)
    return AttendanceSnapshot(
        status=status,
        last_event=last_event,
        entries=entries,
        worked_minutes=replay.worked_minutes,
        break_minutes=replay.break_minutes,
    )
