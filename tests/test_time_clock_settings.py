from __future__ import annotations

import unittest
from datetime import time

from support import make_org, make_session, make_user

from timeclock.errors import ApiError
from timeclock.models import Organization, UserProfile, UserRole
from timeclock.services.time_clock_settings import (
    TimeClockSettings,
    TimeClockSettingsUpdate,
    resolve_allow_time_edit,
    resolve_auto_clock_out_policy,
    resolve_time_clock_settings,
    update_time_clock_settings,
)


class ResolveSettingsTests(unittest.TestCase):
    def test_missing_document_uses_built_in_defaults(self) -> None:
        settings = resolve_time_clock_settings(Organization(id=1, name="Acme", time_clock_settings={}))

        self.assertFalse(settings.require_shift_for_clock_in)
        self.assertEqual(settings.allow_early_clock_in_minutes, 30)
        self.assertEqual(settings.allow_late_clock_in_minutes, 60)
        self.assertFalse(settings.auto_clock_out_enabled)
        self.assertEqual(settings.auto_clock_out_hours, 12)
        self.assertTrue(settings.allow_manual_time_entry)
        self.assertTrue(settings.require_notes_for_manual_entry)
        self.assertEqual(settings.overtime_threshold_hours, 8)
        self.assertTrue(settings.notify_on_overtime)

    def test_partial_document_is_merged_over_defaults(self) -> None:
        organization = Organization(
            id=1,
            name="Acme",
            time_clock_settings={"overtime_threshold_hours": 10, "unknown_key": "ignored"},
        )
        settings = resolve_time_clock_settings(organization)
        self.assertEqual(settings.overtime_threshold_hours, 10)
        self.assertEqual(settings.auto_clock_out_hours, 12)

    def test_malformed_document_falls_back_without_raising(self) -> None:
        organization = Organization(id=1, name="Acme", time_clock_settings={"auto_clock_out_hours": "soon"})
        with self.assertLogs("timeclock.settings", level="WARNING") as captured:
            settings = resolve_time_clock_settings(organization)
        self.assertEqual(settings, TimeClockSettings())
        self.assertIn("time_clock_settings_defaulted", captured.output[0])

    def test_no_organization_uses_defaults(self) -> None:
        self.assertEqual(resolve_time_clock_settings(None), TimeClockSettings())


class OverrideResolutionTests(unittest.TestCase):
    def _user(self, **overrides) -> UserProfile:  # type: ignore[no-untyped-def]
        values = {"id": 5, "organization_id": 1, "display_name": "Ana", "role": UserRole.EMPLOYEE}
        values.update(overrides)
        return UserProfile(**values)

    def test_user_time_wins_over_organization_hours(self) -> None:
        policy = resolve_auto_clock_out_policy(
            self._user(auto_clock_out_time=time(18, 0)),
            TimeClockSettings(auto_clock_out_enabled=True, auto_clock_out_hours=10),
        )
        self.assertTrue(policy.enabled)
        self.assertEqual(policy.at_time, time(18, 0))
        self.assertEqual(policy.source, "user")

    def test_user_disable_wins_over_organization(self) -> None:
        policy = resolve_auto_clock_out_policy(
            self._user(auto_clock_out_enabled=False, auto_clock_out_time=time(18, 0)),
            TimeClockSettings(auto_clock_out_enabled=True),
        )
        self.assertFalse(policy.enabled)

    def test_organization_default_applies_without_override(self) -> None:
        policy = resolve_auto_clock_out_policy(self._user(), TimeClockSettings(auto_clock_out_enabled=True))
        self.assertTrue(policy.enabled)
        self.assertIsNone(policy.at_time)
        self.assertEqual(policy.after_hours, 12)
        self.assertEqual(policy.source, "organization")

    def test_allow_time_edit_three_tiers(self) -> None:
        self.assertFalse(resolve_allow_time_edit(self._user(allow_time_edit=False), TimeClockSettings()))
        self.assertTrue(
            resolve_allow_time_edit(self._user(allow_time_edit=True), TimeClockSettings(allow_manual_time_entry=False))
        )
        self.assertFalse(resolve_allow_time_edit(self._user(), TimeClockSettings(allow_manual_time_entry=False)))
        self.assertTrue(resolve_allow_time_edit(self._user(), TimeClockSettings()))


class UpdateSettingsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.org = make_org(self.db, overtime_threshold_hours=9)

    def tearDown(self) -> None:
        self.db.close()

    def test_admin_update_persists_full_document(self) -> None:
        admin = make_user(self.db, self.org, name="Admin", role=UserRole.ADMIN)
        resolved = update_time_clock_settings(
            self.db,
            actor=admin,
            organization=self.org,
            payload=TimeClockSettingsUpdate(auto_clock_out_enabled=True),
        )

        self.assertTrue(resolved.auto_clock_out_enabled)
        self.assertEqual(resolved.overtime_threshold_hours, 9)
        self.db.expire_all()
        stored = self.db.get(Organization, self.org.id)
        self.assertTrue(stored.time_clock_settings["auto_clock_out_enabled"])

    def test_manager_cannot_update(self) -> None:
        manager = make_user(self.db, self.org, name="Manager", role=UserRole.MANAGER)
        with self.assertRaises(ApiError) as exc:
            update_time_clock_settings(
                self.db,
                actor=manager,
                organization=self.org,
                payload=TimeClockSettingsUpdate(notify_on_overtime=False),
            )
        self.assertEqual(exc.exception.status_code, 403)


if __name__ == "__main__":
    unittest.main()
