"""
Billing clock and period calculator.

Pure functions over a subscription snapshot and an explicit "now". Nothing
here reads the database or the wall clock, so every lifecycle rule can be
driven by a synthetic time in tests.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, ClassVar

from dateutil.relativedelta import relativedelta
from django.utils.translation import gettext_lazy as _

# ===============================================================================
# INTERVALS
# ===============================================================================

INTERVAL_DAILY = "daily"
INTERVAL_WEEKLY = "weekly"
INTERVAL_MONTHLY = "monthly"
INTERVAL_QUARTERLY = "quarterly"
INTERVAL_YEARLY = "yearly"


class BillingInterval:
    """Interval vocabulary shared by plans and the clock."""

    CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (INTERVAL_DAILY, _("Daily")),
        (INTERVAL_WEEKLY, _("Weekly")),
        (INTERVAL_MONTHLY, _("Monthly")),
        (INTERVAL_QUARTERLY, _("Quarterly")),
        (INTERVAL_YEARLY, _("Yearly")),
    )

    # Calendar intervals keep the anchor day-of-month; fixed ones are plain durations
    MONTHS: ClassVar[dict[str, int]] = {
        INTERVAL_MONTHLY: 1,
        INTERVAL_QUARTERLY: 3,
        INTERVAL_YEARLY: 12,
    }
    DAYS: ClassVar[dict[str, int]] = {
        INTERVAL_DAILY: 1,
        INTERVAL_WEEKLY: 7,
    }

    @classmethod
    def values(cls) -> frozenset[str]:
        return frozenset(value for value, _label in cls.CHOICES)


def interval_delta(interval: str, interval_count: int, anchor_day: int | None = None) -> relativedelta:
    """Length of one billing period as a relativedelta."""
    if interval_count < 1:
        raise ValueError(f"interval_count must be >= 1, got {interval_count}")

    if interval in BillingInterval.MONTHS:
        months = BillingInterval.MONTHS[interval] * interval_count
        # day=anchor re-targets the original day-of-month; relativedelta clamps to month end
        return relativedelta(months=months, day=anchor_day) if anchor_day else relativedelta(months=months)

    if interval in BillingInterval.DAYS:
        return relativedelta(days=BillingInterval.DAYS[interval] * interval_count)

    raise ValueError(f"Unknown billing interval: {interval}")


def next_period_bounds(
    start: datetime, interval: str, interval_count: int, anchor_day: int | None = None
) -> tuple[datetime, datetime]:
    """
    Compute [start, end) of the period beginning at `start`.

    Monthly-based intervals preserve `anchor_day` (defaults to the start's day)
    with end-of-month clamping: an anchor of 31 yields Jan 31 -> Feb 28 -> Mar 31.
    """
    anchor = anchor_day or start.day
    if interval in BillingInterval.MONTHS:
        end = start + interval_delta(interval, interval_count, anchor)
    else:
        end = start + interval_delta(interval, interval_count)
    return start, end


def rollover_bounds(subscription: Any) -> tuple[datetime, datetime]:
    """Next period after the current one: starts exactly at current_period_end."""
    plan = subscription.plan
    return next_period_bounds(
        subscription.current_period_end,
        plan.interval,
        plan.interval_count,
        getattr(subscription, "billing_anchor_day", None),
    )


# ===============================================================================
# PREDICATES
# ===============================================================================


def is_trial_expired(subscription: Any, now: datetime) -> bool:
    trial_end = getattr(subscription, "trial_end", None)
    return trial_end is not None and trial_end <= now


def is_period_expired(subscription: Any, now: datetime) -> bool:
    period_end = getattr(subscription, "current_period_end", None)
    return period_end is not None and period_end <= now


def is_grace_expired(subscription: Any, now: datetime) -> bool:
    grace_end = getattr(subscription, "grace_period_ends_at", None)
    return grace_end is not None and grace_end <= now


def is_retry_due(subscription: Any, now: datetime) -> bool:
    retry_at = getattr(subscription, "next_retry_at", None)
    return retry_at is not None and retry_at <= now


def grace_deadline(now: datetime, grace_days: int) -> datetime:
    return now + timedelta(days=grace_days)


def next_deadline(subscription: Any) -> datetime | None:
    """The clock deadline the lifecycle will act on next, by status."""
    status = subscription.status
    if status == "trial":
        return subscription.trial_end
    if status == "active":
        return subscription.current_period_end
    if status == "past_due":
        candidates = [d for d in (subscription.next_retry_at, subscription.grace_period_ends_at) if d is not None]
        return min(candidates) if candidates else None
    if status == "grace_period":
        return subscription.grace_period_ends_at
    return None


def days_until(deadline: datetime | None, now: datetime) -> int | None:
    """Whole days until a deadline, never negative. None when there is no deadline."""
    if deadline is None:
        return None
    return max(0, (deadline - now).days)
