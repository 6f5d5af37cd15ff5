"""Tests for reset due-dates and the downgrade decision table."""

import unittest
from datetime import datetime, timedelta, timezone

from avchat import reset_policy


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class ResetDueTests(unittest.TestCase):
    def test_missing_last_reset_is_due(self):
        self.assertTrue(reset_policy.is_reset_due(None, 30, NOW))

    def test_unparseable_last_reset_is_due(self):
        self.assertTrue(reset_policy.is_reset_due("not-a-date", 30, NOW))

    def test_day_floor_comparison(self):
        almost = (NOW - timedelta(days=30) + timedelta(seconds=1)).isoformat()
        exactly = (NOW - timedelta(days=30)).isoformat()
        self.assertFalse(reset_policy.is_reset_due(almost, 30, NOW))
        self.assertTrue(reset_policy.is_reset_due(exactly, 30, NOW))

    def test_days_since_accepts_zulu_suffix(self):
        self.assertEqual(reset_policy.days_since("2026-03-05T12:00:00.000Z", NOW), 10)
        self.assertIsNone(reset_policy.days_since(None, NOW))

    def test_offsets_outside_utc_range_are_treated_as_absent(self):
        for stored in ("0001-01-01T00:00:00+05:00", "9999-12-31T23:00:00-05:00"):
            with self.subTest(stored=stored):
                self.assertIsNone(reset_policy.days_since(stored, NOW))
                self.assertTrue(reset_policy.is_reset_due(stored, 30, NOW))


class DowngradeDecisionTests(unittest.TestCase):
    def _decide(self, status, cancel_at_end, billing_date, tier="premium"):
        return reset_policy.decide_downgrade(status, cancel_at_end, billing_date, tier, NOW)

    def test_immediate_cancellation(self):
        decision = self._decide("cancelled", False, None)
        self.assertEqual(decision, (True, "immediate cancellation"))

    def test_cancel_at_end_past_billing_date(self):
        yesterday = (NOW - timedelta(days=1)).isoformat()
        decision = self._decide("cancelled", True, yesterday)
        self.assertEqual(decision, (True, "cancelled, past billing date"))

    def test_cancel_at_end_within_paid_period_keeps_tier(self):
        tomorrow = (NOW + timedelta(days=1)).isoformat()
        self.assertFalse(self._decide("cancelled", True, tomorrow).should_downgrade)

    def test_billing_date_equal_to_now_keeps_tier(self):
        self.assertFalse(self._decide("cancelled", True, NOW.isoformat()).should_downgrade)

    def test_cancel_at_end_without_billing_date(self):
        decision = self._decide("cancelled", True, None)
        self.assertEqual(decision, (True, "cancelled with no billing date on record"))

    def test_cancel_at_end_with_out_of_range_billing_date(self):
        decision = self._decide("cancelled", True, "9999-12-31T23:00:00-05:00")
        self.assertEqual(decision, (True, "cancelled with no billing date on record"))

    def test_expired_paid_tier(self):
        decision = self._decide("expired", None, None)
        self.assertEqual(decision, (True, "subscription already expired"))

    def test_missing_status_on_paid_tier(self):
        decision = self._decide(None, None, None, tier="admin")
        self.assertEqual(decision, (True, "no subscription status on record"))

    def test_free_tier_without_status_is_untouched(self):
        self.assertFalse(self._decide(None, None, None, tier="free").should_downgrade)
        self.assertFalse(self._decide("expired", None, None, tier="free").should_downgrade)

    def test_active_subscription_keeps_tier(self):
        self.assertFalse(self._decide("active", False, None).should_downgrade)

    def test_only_future_cancel_at_end_survives_cancelled_states(self):
        future = (NOW + timedelta(days=3)).isoformat()
        past = (NOW - timedelta(days=3)).isoformat()
        for cancel_at_end in (True, False, None, "yes"):
            for billing_date in (future, past, None, "garbage"):
                with self.subTest(cancel_at_end=cancel_at_end, billing_date=billing_date):
                    decision = self._decide("cancelled", cancel_at_end, billing_date)
                    survives = cancel_at_end is True and billing_date == future
                    self.assertEqual(decision.should_downgrade, not survives)

    def test_status_is_normalized(self):
        self.assertTrue(self._decide(" Cancelled ", False, None).should_downgrade)


if __name__ == "__main__":
    unittest.main()
