from __future__ import annotations

import unittest
from itertools import product

from support import FakeEvent, utc

from timeclock.models import ClockEventKind
from timeclock.services.attendance_state import (
    AttendanceStatus,
    build_snapshot,
    is_legal_transition,
    replay_day,
    status_after,
)

IN = ClockEventKind.CLOCK_IN
OUT = ClockEventKind.CLOCK_OUT
BREAK = ClockEventKind.BREAK_START
RESUME = ClockEventKind.BREAK_END


class TransitionTableTests(unittest.TestCase):
    def test_only_listed_pairs_are_legal(self) -> None:
        legal = {
            (None, IN),
            (OUT, IN),
            (IN, BREAK),
            (RESUME, BREAK),
            (BREAK, RESUME),
            (IN, OUT),
            (RESUME, OUT),
        }
        for previous, candidate in product([None, *ClockEventKind], list(ClockEventKind)):
            with self.subTest(previous=previous, candidate=candidate):
                self.assertEqual(is_legal_transition(previous, candidate), (previous, candidate) in legal)

    def test_status_follows_last_kind(self) -> None:
        self.assertEqual(status_after(None), AttendanceStatus.NOT_CLOCKED_IN)
        self.assertEqual(status_after(IN), AttendanceStatus.CLOCKED_IN)
        self.assertEqual(status_after(BREAK), AttendanceStatus.ON_BREAK)
        self.assertEqual(status_after(RESUME), AttendanceStatus.CLOCKED_IN)
        self.assertEqual(status_after(OUT), AttendanceStatus.NOT_CLOCKED_IN)


class ReplayTests(unittest.TestCase):
    def test_closed_day_splits_work_and_break(self) -> None:
        replay = replay_day(
            [
                FakeEvent(OUT, utc(2026, 3, 2, 17)),
                FakeEvent(IN, utc(2026, 3, 2, 9)),
                FakeEvent(RESUME, utc(2026, 3, 2, 12, 30)),
                FakeEvent(BREAK, utc(2026, 3, 2, 12)),
            ]
        )
        self.assertEqual(replay.worked_minutes, 450.0)
        self.assertEqual(replay.break_minutes, 30.0)
        self.assertFalse(replay.has_open_segment)

    def test_open_segment_ignored_without_boundary(self) -> None:
        replay = replay_day([FakeEvent(IN, utc(2026, 3, 2, 9))])
        self.assertEqual(replay.worked_minutes, 0.0)
        self.assertTrue(replay.has_open_segment)


class SnapshotTests(unittest.TestCase):
    def test_no_events_is_not_clocked_in(self) -> None:
        snapshot = build_snapshot([], now_utc=utc(2026, 3, 2, 10))
        self.assertEqual(snapshot.status, AttendanceStatus.NOT_CLOCKED_IN)
        self.assertIsNone(snapshot.last_event)
        self.assertEqual(snapshot.total_worked_minutes, 0)

    def test_open_session_extrapolates_to_now(self) -> None:
        snapshot = build_snapshot([FakeEvent(IN, utc(2026, 3, 2, 9))], now_utc=utc(2026, 3, 2, 10, 15))
        self.assertEqual(snapshot.status, AttendanceStatus.CLOCKED_IN)
        self.assertEqual(snapshot.total_worked_minutes, 75)
        self.assertEqual(snapshot.total_break_minutes, 0)

    def test_open_break_extrapolates_break_minutes(self) -> None:
        snapshot = build_snapshot(
            [FakeEvent(IN, utc(2026, 3, 2, 9)), FakeEvent(BREAK, utc(2026, 3, 2, 11))],
            now_utc=utc(2026, 3, 2, 11, 20),
        )
        self.assertEqual(snapshot.status, AttendanceStatus.ON_BREAK)
        self.assertEqual(snapshot.total_worked_minutes, 120)
        self.assertEqual(snapshot.total_break_minutes, 20)

    def test_closed_session_does_not_grow(self) -> None:
        events = [FakeEvent(IN, utc(2026, 3, 2, 9)), FakeEvent(OUT, utc(2026, 3, 2, 10))]
        snapshot = build_snapshot(events, now_utc=utc(2026, 3, 2, 20))
        self.assertEqual(snapshot.status, AttendanceStatus.NOT_CLOCKED_IN)
        self.assertEqual(snapshot.total_worked_minutes, 60)

    def test_session_opened_yesterday_reads_as_open(self) -> None:
        overnight = FakeEvent(IN, utc(2026, 3, 1, 22))
        snapshot = build_snapshot([], now_utc=utc(2026, 3, 2, 1), latest_event=overnight)
        self.assertEqual(snapshot.status, AttendanceStatus.CLOCKED_IN)
        self.assertIs(snapshot.last_event, overnight)
        self.assertEqual(snapshot.entries, [])

    def test_final_status_matches_last_applied_kind(self) -> None:
        sequence = [IN, BREAK, RESUME, BREAK, RESUME, OUT, IN]
        events = [FakeEvent(kind, utc(2026, 3, 2, 8 + index)) for index, kind in enumerate(sequence)]
        for cut in range(1, len(events) + 1):
            with self.subTest(cut=cut):
                snapshot = build_snapshot(events[:cut], now_utc=utc(2026, 3, 2, 23))
                self.assertEqual(snapshot.status, status_after(sequence[cut - 1]))


if __name__ == "__main__":
    unittest.main()
