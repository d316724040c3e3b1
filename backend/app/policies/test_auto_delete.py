import unittest
from datetime import datetime, timedelta

from app.core.errors import MissingCustomDays, ScheduleConflict, ValidationFailed
from app.models.identity import AutoDeletePreset
from app.policies import auto_delete

NOW = datetime(2030, 1, 1, 12, 0)


class TestEffectiveDays(unittest.TestCase):

    def test_disabled_is_zero(self):
        self.assertEqual(auto_delete.effective_days(False, AutoDeletePreset.ONE_WEEK), 0)

    def test_presets(self):
        self.assertEqual(auto_delete.effective_days(True, AutoDeletePreset.ONE_DAY), 1)
        self.assertEqual(auto_delete.effective_days(True, AutoDeletePreset.ONE_WEEK), 7)
        self.assertEqual(auto_delete.effective_days(True, AutoDeletePreset.ONE_MONTH), 30)

    def test_custom_requires_days(self):
        with self.assertRaises(MissingCustomDays):
            auto_delete.effective_days(True, AutoDeletePreset.CUSTOM)
        self.assertEqual(auto_delete.effective_days(True, AutoDeletePreset.CUSTOM, 12), 12)

    def test_custom_out_of_range(self):
        with self.assertRaises(ValidationFailed):
            auto_delete.effective_days(True, AutoDeletePreset.CUSTOM, 400)

    def test_enabled_without_preset(self):
        with self.assertRaises(ValidationFailed):
            auto_delete.effective_days(True, None)


class TestCheckSchedule(unittest.TestCase):

    def test_week_against_three_day_expiry_conflicts(self):
        expires_at = NOW + timedelta(days=3)
        with self.assertRaises(ScheduleConflict) as ctx:
            auto_delete.check_schedule(7, expires_at, NOW)
        self.assertEqual(ctx.exception.auto_delete_at, NOW + timedelta(days=7))
        self.assertEqual(ctx.exception.expires_at, expires_at)
        self.assertIn("auto_delete_at", ctx.exception.to_dict()["context"])

    def test_no_expiry(self):
        check = auto_delete.check_schedule(7, None, NOW)
        self.assertEqual(check.auto_delete_at, NOW + timedelta(days=7))
        self.assertIsNone(check.warning)

    def test_tight_margin_warns(self):
        check = auto_delete.check_schedule(1, NOW + timedelta(days=1, hours=12), NOW)
        self.assertIsNotNone(check.warning)

    def test_wide_margin_is_quiet(self):
        check = auto_delete.check_schedule(1, NOW + timedelta(days=10), NOW)
        self.assertIsNone(check.warning)

    def test_disabled_never_conflicts(self):
        check = auto_delete.check_schedule(0, NOW + timedelta(hours=1), NOW)
        self.assertIsNone(check.auto_delete_at)

    def test_expiry_in_past_rejected(self):
        with self.assertRaises(ValidationFailed):
            auto_delete.validate_expiry(NOW - timedelta(seconds=1), NOW)


class TestDescribe(unittest.TestCase):

    def test_descriptions(self):
        self.assertEqual(
            auto_delete.describe(False, None, 0), "Messages are kept until deleted manually"
        )
        self.assertEqual(
            auto_delete.describe(True, AutoDeletePreset.ONE_WEEK, 7),
            "Messages auto-delete after 1 week",
        )
        self.assertEqual(
            auto_delete.describe(True, AutoDeletePreset.CUSTOM, 1),
            "Messages auto-delete after 1 day",
        )
        self.assertEqual(
            auto_delete.describe(True, AutoDeletePreset.CUSTOM, 3),
            "Messages auto-delete after 3 days",
        )


if __name__ == "__main__":
    unittest.main()
