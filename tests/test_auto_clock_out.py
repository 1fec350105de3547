from __future__ import annotations

import unittest
from datetime import time
from unittest.mock import patch
from zoneinfo import ZoneInfo

from sqlalchemy import select

from support import as_utc, make_org, make_session, make_user, record_day, utc

from timeclock.errors import PersistenceFailure
from timeclock.models import AuditLog, ClockEvent, ClockEventKind, ClockEventSource
from timeclock.services.auto_clock_out import (
    find_open_sessions,
    next_occurrence_on_or_after,
    run_auto_clock_out_sweep,
)

IN = ClockEventKind.CLOCK_IN
OUT = ClockEventKind.CLOCK_OUT
BREAK = ClockEventKind.BREAK_START
RESUME = ClockEventKind.BREAK_END


class NextOccurrenceTests(unittest.TestCase):
    def test_same_day_when_time_is_still_ahead(self) -> None:
        self.assertEqual(
            next_occurrence_on_or_after(utc(2026, 3, 2, 8), time(18, 0), ZoneInfo("UTC")),
            utc(2026, 3, 2, 18),
        )

    def test_rolls_to_next_day_when_time_has_passed(self) -> None:
        self.assertEqual(
            next_occurrence_on_or_after(utc(2026, 3, 2, 20), time(18, 0), ZoneInfo("UTC")),
            utc(2026, 3, 3, 18),
        )

    def test_uses_local_wall_clock(self) -> None:
        # 09:00 in Tokyo; 18:00 JST is 09:00 UTC.
        self.assertEqual(
            next_occurrence_on_or_after(utc(2026, 3, 2, 0), time(18, 0), ZoneInfo("Asia/Tokyo")),
            utc(2026, 3, 2, 9),
        )


class AutoClockOutSweepTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.org = make_org(self.db, auto_clock_out_enabled=True, auto_clock_out_hours=12)
        self.employee = make_user(self.db, self.org, name="Ana")

    def tearDown(self) -> None:
        self.db.close()

    def _events(self, user_id: int) -> list[ClockEvent]:
        return list(
            self.db.scalars(
                select(ClockEvent).where(ClockEvent.user_id == user_id).order_by(ClockEvent.sequence.asc())
            ).all()
        )

    def test_session_over_threshold_is_closed_once(self) -> None:
        record_day(self.db, self.employee, (IN, utc(2026, 3, 2, 8)))

        first = run_auto_clock_out_sweep(utc(2026, 3, 2, 21), db=self.db)
        second = run_auto_clock_out_sweep(utc(2026, 3, 2, 21, 5), db=self.db)

        self.assertEqual(first.to_dict(), {"processed": 1, "clocked_out": 1, "errors": []})
        self.assertEqual(second.to_dict(), {"processed": 0, "clocked_out": 0, "errors": []})
        events = self._events(self.employee.id)
        self.assertEqual([event.kind for event in events], [IN, OUT])
        closing = events[-1]
        self.assertEqual(closing.source, ClockEventSource.SYSTEM)
        self.assertEqual(closing.notes, "[AUTO] Exceeded 12 hour threshold")
        self.assertEqual(as_utc(closing.ts_utc), utc(2026, 3, 2, 21))

        audit = self.db.scalar(select(AuditLog).where(AuditLog.action == "AUTO_CLOCK_OUT"))
        self.assertIsNotNone(audit)
        self.assertEqual(audit.actor_id, "auto_clock_out")
        self.assertEqual(audit.details["user_id"], self.employee.id)

    def test_session_under_threshold_is_left_open(self) -> None:
        record_day(self.db, self.employee, (IN, utc(2026, 3, 2, 8)))

        summary = run_auto_clock_out_sweep(utc(2026, 3, 2, 19, 59), db=self.db)

        self.assertEqual(summary.processed, 1)
        self.assertEqual(summary.clocked_out, 0)
        self.assertEqual(len(self._events(self.employee.id)), 1)

    def test_closed_sessions_are_not_processed(self) -> None:
        record_day(self.db, self.employee, (IN, utc(2026, 3, 2, 8)), (OUT, utc(2026, 3, 2, 16)))
        summary = run_auto_clock_out_sweep(utc(2026, 3, 3, 12), db=self.db)
        self.assertEqual(summary.processed, 0)

    def test_open_break_is_ended_before_clock_out(self) -> None:
        record_day(self.db, self.employee, (IN, utc(2026, 3, 2, 8)), (BREAK, utc(2026, 3, 2, 12)))

        summary = run_auto_clock_out_sweep(utc(2026, 3, 2, 21), db=self.db)

        self.assertEqual(summary.clocked_out, 1)
        events = self._events(self.employee.id)
        self.assertEqual([event.kind for event in events], [IN, BREAK, RESUME, OUT])
        self.assertEqual([event.sequence for event in events], [1, 2, 3, 4])
        self.assertTrue(all(event.source == ClockEventSource.SYSTEM for event in events[2:]))
        self.assertEqual({as_utc(event.ts_utc) for event in events[2:]}, {utc(2026, 3, 2, 21)})

    def test_break_ended_after_scan_still_gets_clocked_out(self) -> None:
        record_day(self.db, self.employee, (IN, utc(2026, 3, 2, 8)), (BREAK, utc(2026, 3, 2, 12)))
        scanned = find_open_sessions(self.db, organization_id=self.org.id, now_utc=utc(2026, 3, 2, 21))
        record_day(self.db, self.employee, (RESUME, utc(2026, 3, 2, 20, 30)))

        with patch("timeclock.services.auto_clock_out.find_open_sessions", return_value=scanned):
            summary = run_auto_clock_out_sweep(utc(2026, 3, 2, 21), db=self.db)

        self.assertEqual(summary.to_dict(), {"processed": 1, "clocked_out": 1, "errors": []})
        events = self._events(self.employee.id)
        self.assertEqual([event.kind for event in events], [IN, BREAK, RESUME, OUT])
        self.assertEqual(events[2].source, ClockEventSource.DEVICE)
        self.assertEqual(events[3].source, ClockEventSource.SYSTEM)

    def test_session_closed_after_scan_is_skipped(self) -> None:
        record_day(self.db, self.employee, (IN, utc(2026, 3, 2, 8)), (BREAK, utc(2026, 3, 2, 12)))
        scanned = find_open_sessions(self.db, organization_id=self.org.id, now_utc=utc(2026, 3, 2, 21))
        record_day(self.db, self.employee, (RESUME, utc(2026, 3, 2, 20, 30)), (OUT, utc(2026, 3, 2, 20, 45)))

        with patch("timeclock.services.auto_clock_out.find_open_sessions", return_value=scanned):
            summary = run_auto_clock_out_sweep(utc(2026, 3, 2, 21), db=self.db)

        self.assertEqual(summary.to_dict(), {"processed": 1, "clocked_out": 0, "errors": []})
        self.assertEqual([event.kind for event in self._events(self.employee.id)], [IN, BREAK, RESUME, OUT])

    def test_user_opt_out_is_skipped(self) -> None:
        opted_out = make_user(self.db, self.org, name="Raj", auto_clock_out_enabled=False)
        record_day(self.db, opted_out, (IN, utc(2026, 3, 2, 8)))

        summary = run_auto_clock_out_sweep(utc(2026, 3, 3, 8), db=self.db)

        self.assertEqual(summary.processed, 1)
        self.assertEqual(summary.clocked_out, 0)
        self.assertEqual([event.kind for event in self._events(opted_out.id)], [IN])

    def test_user_scheduled_time_overrides_hour_threshold(self) -> None:
        scheduled = make_user(self.db, self.org, name="Lee", auto_clock_out_time=time(18, 0))
        record_day(self.db, scheduled, (IN, utc(2026, 3, 2, 8)))

        early = run_auto_clock_out_sweep(utc(2026, 3, 2, 17, 59), db=self.db)
        late = run_auto_clock_out_sweep(utc(2026, 3, 2, 18, 30), db=self.db)

        self.assertEqual(early.clocked_out, 0)
        self.assertEqual(late.clocked_out, 1)
        closing = self._events(scheduled.id)[-1]
        self.assertEqual(closing.notes, "[AUTO] Scheduled auto clock-out at 18:00")
        self.assertEqual(as_utc(closing.ts_utc), utc(2026, 3, 2, 18, 30))

    def test_scheduled_time_follows_organization_timezone(self) -> None:
        tokyo = make_org(self.db, name="Tokyo", tz="Asia/Tokyo", auto_clock_out_enabled=True)
        worker = make_user(self.db, tokyo, name="Yui", auto_clock_out_time=time(18, 0))
        record_day(self.db, worker, (IN, utc(2026, 3, 2, 0)))

        summary = run_auto_clock_out_sweep(utc(2026, 3, 2, 9, 1), db=self.db)

        self.assertEqual(summary.clocked_out, 1)
        self.assertEqual(self._events(worker.id)[-1].kind, OUT)

    def test_disabled_organization_is_skipped(self) -> None:
        quiet = make_org(self.db, name="Quiet")
        worker = make_user(self.db, quiet, name="Bo", auto_clock_out_time=time(18, 0))
        record_day(self.db, worker, (IN, utc(2026, 3, 2, 8)))

        summary = run_auto_clock_out_sweep(utc(2026, 3, 3, 8), db=self.db)

        self.assertEqual(summary.processed, 0)
        self.assertEqual([event.kind for event in self._events(worker.id)], [IN])

    def test_store_failure_is_collected_and_sweep_continues(self) -> None:
        second = make_user(self.db, self.org, name="Raj")
        record_day(self.db, self.employee, (IN, utc(2026, 3, 2, 8)))
        record_day(self.db, second, (IN, utc(2026, 3, 2, 8)))

        with patch(
            "timeclock.services.auto_clock_out.append_clock_event",
            side_effect=PersistenceFailure(),
        ):
            summary = run_auto_clock_out_sweep(utc(2026, 3, 2, 21), db=self.db)

        self.assertEqual(summary.processed, 2)
        self.assertEqual(summary.clocked_out, 0)
        self.assertEqual([error["code"] for error in summary.errors], ["PERSISTENCE_FAILURE"] * 2)
        self.assertEqual({error["user_id"] for error in summary.errors}, {self.employee.id, second.id})


if __name__ == "__main__":
    unittest.main()
