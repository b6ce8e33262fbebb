# ===============================================================================
# BILLING CLOCK TESTS
# ===============================================================================

from datetime import datetime, timedelta
from types import SimpleNamespace

from django.test import SimpleTestCase

from apps.billing import clock


def utc(value: str) -> datetime:
    return datetime.fromisoformat(f"{value}T00:00:00+00:00")


class PeriodBoundsTestCase(SimpleTestCase):
    """Test period arithmetic"""

    def test_monthly_period_keeps_day_of_month(self) -> None:
        """Test a monthly period ends on the same day next month"""
        start, end = clock.next_period_bounds(utc("2026-04-17"), "monthly", 1)
        self.assertEqual(start, utc("2026-04-17"))
        self.assertEqual(end, utc("2026-05-17"))

    def test_month_end_anchor_clamps_and_recovers(self) -> None:
        """Test an anchor of 31 clamps to February and returns to the 31st"""
        _, feb_end = clock.next_period_bounds(utc("2026-01-31"), "monthly", 1, anchor_day=31)
        self.assertEqual(feb_end, utc("2026-02-28"))
        _, mar_end = clock.next_period_bounds(feb_end, "monthly", 1, anchor_day=31)
        self.assertEqual(mar_end, utc("2026-03-31"))

    def test_fixed_intervals(self) -> None:
        """Test daily and weekly periods are plain durations"""
        _, weekly_end = clock.next_period_bounds(utc("2026-04-01"), "weekly", 2)
        self.assertEqual(weekly_end, utc("2026-04-15"))
        _, daily_end = clock.next_period_bounds(utc("2026-04-01"), "daily", 3)
        self.assertEqual(daily_end, utc("2026-04-04"))

    def test_quarterly_and_yearly(self) -> None:
        _, quarter_end = clock.next_period_bounds(utc("2026-01-15"), "quarterly", 1)
        self.assertEqual(quarter_end, utc("2026-04-15"))
        _, year_end = clock.next_period_bounds(utc("2028-02-29"), "yearly", 1)
        self.assertEqual(year_end, utc("2029-02-28"))

    def test_invalid_interval_rejected(self) -> None:
        with self.assertRaises(ValueError):
            clock.interval_delta("fortnightly", 1)
        with self.assertRaises(ValueError):
            clock.interval_delta("monthly", 0)

    def test_rollover_starts_at_previous_end(self) -> None:
        """Test a renewal period starts exactly where the previous one ended"""
        subscription = SimpleNamespace(
            current_period_end=utc("2026-02-28"),
            billing_anchor_day=31,
            plan=SimpleNamespace(interval="monthly", interval_count=1),
        )
        start, end = clock.rollover_bounds(subscription)
        self.assertEqual(start, utc("2026-02-28"))
        self.assertEqual(end, utc("2026-03-31"))


class DeadlinePredicateTestCase(SimpleTestCase):
    """Test deadline predicates are inclusive of the boundary"""

    def setUp(self) -> None:
        self.deadline = utc("2026-04-15")
        self.subscription = SimpleNamespace(
            status="trial",
            trial_end=self.deadline,
            current_period_end=self.deadline,
            grace_period_ends_at=self.deadline,
            next_retry_at=self.deadline,
        )

    def test_expired_exactly_at_deadline(self) -> None:
        self.assertTrue(clock.is_trial_expired(self.subscription, self.deadline))
        self.assertTrue(clock.is_period_expired(self.subscription, self.deadline))
        self.assertTrue(clock.is_grace_expired(self.subscription, self.deadline))
        self.assertTrue(clock.is_retry_due(self.subscription, self.deadline))

    def test_not_expired_before_deadline(self) -> None:
        earlier = self.deadline - timedelta(seconds=1)
        self.assertFalse(clock.is_trial_expired(self.subscription, earlier))
        self.assertFalse(clock.is_period_expired(self.subscription, earlier))
        self.assertFalse(clock.is_grace_expired(self.subscription, earlier))

    def test_missing_deadline_is_never_expired(self) -> None:
        empty = SimpleNamespace(trial_end=None, grace_period_ends_at=None, next_retry_at=None)
        self.assertFalse(clock.is_trial_expired(empty, self.deadline))
        self.assertFalse(clock.is_grace_expired(empty, self.deadline))
        self.assertFalse(clock.is_retry_due(empty, self.deadline))

    def test_days_until(self) -> None:
        now = utc("2026-04-10")
        self.assertEqual(clock.days_until(self.deadline, now), 5)
        self.assertEqual(clock.days_until(utc("2026-04-01"), now), 0)
        self.assertIsNone(clock.days_until(None, now))

    def test_grace_deadline(self) -> None:
        self.assertEqual(clock.grace_deadline(utc("2026-04-15"), 7), utc("2026-04-22"))
