from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from support import make_org, make_session, make_user, record_day, utc

from timeclock.models import ClockEventKind, NotificationIntent, UserRole
from timeclock.services.notifications import TYPE_OVERTIME_ALERT
from timeclock.services.overtime import evaluate_overtime_after_clock_out

IN = ClockEventKind.CLOCK_IN
OUT = ClockEventKind.CLOCK_OUT
BREAK = ClockEventKind.BREAK_START
RESUME = ClockEventKind.BREAK_END


class OvertimeEvaluationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.org = make_org(self.db, overtime_threshold_hours=8)
        self.employee = make_user(self.db, self.org, name="Ana")
        self.manager = make_user(self.db, self.org, name="Mia", role=UserRole.MANAGER)
        self.admin = make_user(self.db, self.org, name="Sam", role=UserRole.ADMIN)
        make_user(self.db, self.org, name="Gone", role=UserRole.ADMIN, is_active=False)

    def tearDown(self) -> None:
        self.db.close()

    def _intents(self) -> list[NotificationIntent]:
        return list(self.db.scalars(select(NotificationIntent).order_by(NotificationIntent.user_id.asc())).all())

    def test_overtime_alerts_active_reviewers(self) -> None:
        events = record_day(
            self.db,
            self.employee,
            (IN, utc(2026, 3, 2, 8)),
            (BREAK, utc(2026, 3, 2, 12)),
            (RESUME, utc(2026, 3, 2, 12, 30)),
            (OUT, utc(2026, 3, 2, 19)),
        )

        evaluation = evaluate_overtime_after_clock_out(self.db, actor=self.employee, clock_out_event=events[-1])

        self.assertIsNotNone(evaluation)
        self.assertTrue(evaluation.exceeded)
        self.assertEqual(evaluation.day_totals.worked_minutes, 630)
        self.assertEqual(sorted(evaluation.notified_user_ids), [self.manager.id, self.admin.id])
        intents = self._intents()
        self.assertEqual({intent.notification_type for intent in intents}, {TYPE_OVERTIME_ALERT})
        self.assertEqual(intents[0].title, "Overtime Alert")
        self.assertEqual(intents[0].body, "Ana has worked 2.5 hours of overtime today.")
        self.assertEqual(
            intents[0].payload,
            {
                "employee_id": self.employee.id,
                "employee_name": "Ana",
                "total_hours": 10.5,
                "overtime_hours": 2.5,
                "date": "2026-03-02",
            },
        )

    def test_reviewer_working_overtime_is_not_alerted_about_themselves(self) -> None:
        events = record_day(self.db, self.manager, (IN, utc(2026, 3, 2, 8)), (OUT, utc(2026, 3, 2, 18)))

        evaluation = evaluate_overtime_after_clock_out(self.db, actor=self.manager, clock_out_event=events[-1])

        self.assertEqual(evaluation.notified_user_ids, [self.admin.id])

    def test_exactly_at_threshold_is_not_overtime(self) -> None:
        events = record_day(self.db, self.employee, (IN, utc(2026, 3, 2, 9)), (OUT, utc(2026, 3, 2, 17)))

        evaluation = evaluate_overtime_after_clock_out(self.db, actor=self.employee, clock_out_event=events[-1])

        self.assertFalse(evaluation.exceeded)
        self.assertEqual(evaluation.notified_user_ids, [])
        self.assertEqual(self._intents(), [])

    def test_alerts_can_be_switched_off(self) -> None:
        self.org.time_clock_settings = {"overtime_threshold_hours": 8, "notify_on_overtime": False}
        self.db.commit()
        events = record_day(self.db, self.employee, (IN, utc(2026, 3, 2, 6)), (OUT, utc(2026, 3, 2, 18)))

        evaluation = evaluate_overtime_after_clock_out(self.db, actor=self.employee, clock_out_event=events[-1])

        self.assertTrue(evaluation.exceeded)
        self.assertEqual(evaluation.notified_user_ids, [])
        self.assertEqual(self._intents(), [])

    def test_failed_notification_write_is_logged_not_raised(self) -> None:
        events = record_day(self.db, self.employee, (IN, utc(2026, 3, 2, 6)), (OUT, utc(2026, 3, 2, 18)))

        with patch.object(
            self.db,
            "commit",
            side_effect=OperationalError("INSERT", {}, Exception("database is locked")),
        ):
            with self.assertLogs("timeclock.notifications", level="ERROR") as logs:
                evaluation = evaluate_overtime_after_clock_out(
                    self.db,
                    actor=self.employee,
                    clock_out_event=events[-1],
                )

        self.assertTrue(evaluation.exceeded)
        self.assertEqual(evaluation.notified_user_ids, [])
        self.assertIn("notification_intent_write_failed", logs.output[0])
        self.assertEqual(self._intents(), [])

    def test_evaluation_fault_returns_none(self) -> None:
        events = record_day(self.db, self.employee, (IN, utc(2026, 3, 2, 6)), (OUT, utc(2026, 3, 2, 18)))

        with patch(
            "timeclock.services.overtime.load_events_between",
            side_effect=RuntimeError("boom"),
        ):
            with self.assertLogs("timeclock.overtime", level="ERROR"):
                result = evaluate_overtime_after_clock_out(
                    self.db,
                    actor=self.employee,
                    clock_out_event=events[-1],
                )

        self.assertIsNone(result)


if __name__ == "__main__":
    unittest.main()
