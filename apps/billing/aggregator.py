"""
Subscription aggregator.

Read-only statistics derived on every call from the subscription table,
the transition log and the payment ledger. No counter is stored anywhere,
so the figures cannot drift from the authoritative rows.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, TypedDict

from django.db.models import Count, Exists, OuterRef, Q, Subquery, Sum
from django.utils import timezone

from apps.organizations.models import Organization

from .clock import INTERVAL_DAILY, INTERVAL_MONTHLY, INTERVAL_QUARTERLY, INTERVAL_WEEKLY, INTERVAL_YEARLY
from .config import get_activity_max_limit, get_default_currency, get_expiry_warning_days
from .models import PaymentRecord, Subscription, SubscriptionTransition
from .sweeper import expiring_soon_query

logger = logging.getLogger(__name__)

# Rolling window used for "monthly" figures and growth comparisons
REVENUE_WINDOW_DAYS = 30

ANALYTICS_PERIODS: dict[str, int] = {
    "week": 7,
    "month": 30,
    "quarter": 90,
    "year": 365,
}

# Periods of each interval per month, for MRR normalisation
_MONTHLY_FACTOR: dict[str, Decimal] = {
    INTERVAL_DAILY: Decimal(30),
    INTERVAL_WEEKLY: Decimal(52) / Decimal(12),
    INTERVAL_MONTHLY: Decimal(1),
    INTERVAL_QUARTERLY: Decimal(1) / Decimal(3),
    INTERVAL_YEARLY: Decimal(1) / Decimal(12),
}

# ===============================================================================
# RESULT TYPES
# ===============================================================================


class StatusCounts(TypedDict):
    total: int
    trial: int
    active: int
    past_due: int
    grace_period: int
    cancelled: int
    expired: int
    expiring_soon: int
    expiring_in_7_days: int
    expiring_in_30_days: int
    pending_renewals: int


class DashboardStats(TypedDict):
    total_organizations: int
    active_subscriptions: int
    trial_subscriptions: int
    past_due_subscriptions: int
    grace_period_subscriptions: int
    cancelled_subscriptions: int
    expired_subscriptions: int
    expiring_soon: int
    currency: str
    monthly_revenue: int
    total_revenue: int
    organization_growth_rate: float
    subscription_growth_rate: float
    revenue_growth_rate: float


class TabCounts(TypedDict):
    active_subscriptions: int
    trial_subscriptions: int
    past_due_subscriptions: int
    grace_period_subscriptions: int
    cancelled_subscriptions: int
    expired_subscriptions: int
    pending_renewals: int


class ActivityEntry(TypedDict):
    id: str
    type: str
    description: str
    organization_id: str
    organization_name: str
    timestamp: datetime
    metadata: dict[str, Any]


def growth_rate(current: int | Decimal, previous: int | Decimal) -> float:
    """Percentage change; 100.0 when growing from zero, 0.0 when both are zero."""
    if not previous:
        return 100.0 if current else 0.0
    rate = (Decimal(current) - Decimal(previous)) / Decimal(previous) * 100
    return float(rate.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class SubscriptionAggregator:
    """Dashboard, tab, activity and analytics read models."""

    # ===========================================================================
    # STATUS SNAPSHOT (shared by dashboard_stats and tab_counts)
    # ===========================================================================

    @staticmethod
    def status_counts(now: datetime | None = None) -> StatusCounts:
        """All per-status counts in a single aggregate query."""
        now = now or timezone.now()
        warning_days = get_expiry_warning_days()
        counts = Subscription.objects.aggregate(
            total=Count("pk"),
            trial=Count("pk", filter=Q(status=Subscription.STATUS_TRIAL)),
            active=Count("pk", filter=Q(status=Subscription.STATUS_ACTIVE)),
            past_due=Count("pk", filter=Q(status=Subscription.STATUS_PAST_DUE)),
            grace_period=Count("pk", filter=Q(status=Subscription.STATUS_GRACE_PERIOD)),
            cancelled=Count("pk", filter=Q(status=Subscription.STATUS_CANCELLED)),
            expired=Count("pk", filter=Q(status=Subscription.STATUS_EXPIRED)),
            expiring_soon=Count("pk", filter=expiring_soon_query(now, warning_days)),
            expiring_in_7_days=Count("pk", filter=expiring_soon_query(now, 7)),
            expiring_in_30_days=Count("pk", filter=expiring_soon_query(now, 30)),
            pending_renewals=Count(
                "pk",
                filter=Q(
                    status=Subscription.STATUS_ACTIVE,
                    cancel_at_period_end=False,
                    current_period_end__lte=now + timedelta(days=warning_days),
                ),
            ),
        )
        return StatusCounts(**counts)  # type: ignore[typeddict-item]

    @classmethod
    def tab_counts(cls, now: datetime | None = None, counts: StatusCounts | None = None) -> TabCounts:
        counts = counts or cls.status_counts(now)
        return TabCounts(
            active_subscriptions=counts["active"],
            trial_subscriptions=counts["trial"],
            past_due_subscriptions=counts["past_due"],
            grace_period_subscriptions=counts["grace_period"],
            cancelled_subscriptions=counts["cancelled"],
            expired_subscriptions=counts["expired"],
            pending_renewals=counts["pending_renewals"],
        )

    # ===========================================================================
    # REVENUE
    # ===========================================================================

    @staticmethod
    def net_revenue(
        since: datetime | None = None,
        until: datetime | None = None,
        currency: str | None = None,
        subscription_id: Any = None,
    ) -> int:
        """SUCCESS minus REFUNDED amounts recorded inside [since, until)."""
        records = PaymentRecord.objects.filter(currency=(currency or get_default_currency()))
        if since is not None:
            records = records.filter(created_at__gte=since)
        if until is not None:
            records = records.filter(created_at__lt=until)
        if subscription_id is not None:
            records = records.filter(subscription_id=subscription_id)
        sums = records.aggregate(
            paid=Sum("amount_cents", filter=Q(outcome=PaymentRecord.OUTCOME_SUCCESS)),
            refunded=Sum("amount_cents", filter=Q(outcome=PaymentRecord.OUTCOME_REFUNDED)),
        )
        return (sums["paid"] or 0) - (sums["refunded"] or 0)

    # ===========================================================================
    # DASHBOARD
    # ===========================================================================

    @classmethod
    def dashboard_stats(cls, now: datetime | None = None, counts: StatusCounts | None = None) -> DashboardStats:
        now = now or timezone.now()
        counts = counts or cls.status_counts(now)
        currency = get_default_currency()

        window = timedelta(days=REVENUE_WINDOW_DAYS)
        current_start, previous_start = now - window, now - 2 * window

        monthly_revenue = cls.net_revenue(current_start, now, currency)
        previous_revenue = cls.net_revenue(previous_start, current_start, currency)

        organizations = Organization.objects.aggregate(
            total=Count("pk"),
            current=Count("pk", filter=Q(created_at__gte=current_start, created_at__lt=now)),
            previous=Count("pk", filter=Q(created_at__gte=previous_start, created_at__lt=current_start)),
        )
        subscriptions = Subscription.objects.aggregate(
            current=Count("pk", filter=Q(created_at__gte=current_start, created_at__lt=now)),
            previous=Count("pk", filter=Q(created_at__gte=previous_start, created_at__lt=current_start)),
        )

        return DashboardStats(
            total_organizations=organizations["total"],
            active_subscriptions=counts["active"],
            trial_subscriptions=counts["trial"],
            past_due_subscriptions=counts["past_due"],
            grace_period_subscriptions=counts["grace_period"],
            cancelled_subscriptions=counts["cancelled"],
            expired_subscriptions=counts["expired"],
            expiring_soon=counts["expiring_soon"],
            currency=currency,
            monthly_revenue=monthly_revenue,
            total_revenue=cls.net_revenue(None, None, currency),
            organization_growth_rate=growth_rate(organizations["current"], organizations["previous"]),
            subscription_growth_rate=growth_rate(subscriptions["current"], subscriptions["previous"]),
            revenue_growth_rate=growth_rate(monthly_revenue, previous_revenue),
        )

    @classmethod
    def overview(cls, now: datetime | None = None) -> tuple[DashboardStats, TabCounts]:
        """Dashboard stats and tab counts built from one status snapshot."""
        now = now or timezone.now()
        counts = cls.status_counts(now)
        return cls.dashboard_stats(now, counts), cls.tab_counts(now, counts)

    # ===========================================================================
    # ACTIVITY FEED
    # ===========================================================================

    @staticmethod
    def recent_activity(limit: int = 20) -> list[ActivityEntry]:
        """
        Newest-first lifecycle activity, bounded by `limit`.

        Transitions and payments that did not cause a transition are merged;
        a payment that triggered a transition appears through that transition.
        """
        limit = max(1, min(int(limit), get_activity_max_limit()))

        transitions = SubscriptionTransition.objects.select_related("organization", "payment").order_by(
            "-created_at", "-id"
        )[:limit]
        payments = (
            PaymentRecord.objects.select_related("subscription__organization")
            .filter(transitions__isnull=True)
            .order_by("-created_at", "-id")[:limit]
        )

        entries: list[ActivityEntry] = []
        for transition in transitions:
            metadata: dict[str, Any] = {
                "subscription_id": str(transition.subscription_id),
                "from_status": transition.from_status,
                "to_status": transition.to_status,
                "version": transition.version,
            }
            if transition.payment_id:
                metadata["payment_reference"] = transition.payment.provider_reference
                metadata["amount_cents"] = transition.payment.amount_cents
            entries.append(
                ActivityEntry(
                    id=f"transition:{transition.pk}",
                    type=transition.activity_type,
                    description=transition.reason or transition.get_activity_type_display(),
                    organization_id=str(transition.organization_id),
                    organization_name=transition.organization.name,
                    timestamp=transition.created_at,
                    metadata=metadata,
                )
            )

        for payment in payments:
            organization = payment.subscription.organization
            entries.append(
                ActivityEntry(
                    id=f"payment:{payment.pk}",
                    type=f"payment_{payment.outcome}",
                    description=(
                        f"{payment.get_outcome_display()} payment of {payment.amount_cents} {payment.currency}"
                    ),
                    organization_id=str(organization.pk),
                    organization_name=organization.name,
                    timestamp=payment.created_at,
                    metadata={
                        "subscription_id": str(payment.subscription_id),
                        "payment_reference": payment.provider_reference,
                        "amount_cents": payment.amount_cents,
                    },
                )
            )

        entries.sort(key=lambda entry: entry["timestamp"], reverse=True)
        return entries[:limit]

    # ===========================================================================
    # LIFECYCLE / ORGANIZATION STATS
    # ===========================================================================

    @classmethod
    def lifecycle_stats(cls, now: datetime | None = None) -> dict[str, int]:
        counts = cls.status_counts(now)
        return {
            "total": counts["total"],
            "active": counts["active"],
            "trial": counts["trial"],
            "past_due": counts["past_due"],
            "grace_period": counts["grace_period"],
            "cancelled": counts["cancelled"],
            "expired": counts["expired"],
            "expiring_in_7_days": counts["expiring_in_7_days"],
            "expiring_in_30_days": counts["expiring_in_30_days"],
        }

    @staticmethod
    def organization_stats() -> dict[str, int]:
        """
        Organizations bucketed by access: suspended wins, then the live
        subscription's state, then whether they ever subscribed.
        """
        live_status = Subscription.objects.filter(
            organization=OuterRef("pk"), status__in=Subscription.LIVE_STATUSES
        ).values("status")[:1]
        ever_subscribed = Subscription.objects.filter(organization=OuterRef("pk"))

        enabled = ~Q(status=Organization.STATUS_SUSPENDED)
        stats = Organization.objects.annotate(
            live_status=Subquery(live_status),
            ever_subscribed=Exists(ever_subscribed),
        ).aggregate(
            total=Count("pk"),
            suspended=Count("pk", filter=Q(status=Organization.STATUS_SUSPENDED)),
            trial=Count("pk", filter=enabled & Q(live_status=Subscription.STATUS_TRIAL)),
            active=Count(
                "pk",
                filter=enabled
                & Q(
                    live_status__in=[
                        Subscription.STATUS_ACTIVE,
                        Subscription.STATUS_PAST_DUE,
                        Subscription.STATUS_GRACE_PERIOD,
                    ]
                ),
            ),
            cancelled=Count("pk", filter=enabled & Q(live_status__isnull=True, ever_subscribed=True)),
            inactive=Count("pk", filter=enabled & Q(live_status__isnull=True, ever_subscribed=False)),
        )
        return stats

    # ===========================================================================
    # ANALYTICS
    # ===========================================================================

    @staticmethod
    def monthly_recurring_revenue(currency: str | None = None) -> int:
        """Paying live subscriptions normalised to one month, in minor units."""
        rows = (
            Subscription.objects.filter(
                status__in=[
                    Subscription.STATUS_ACTIVE,
                    Subscription.STATUS_PAST_DUE,
                    Subscription.STATUS_GRACE_PERIOD,
                ],
                plan__currency=(currency or get_default_currency()),
            )
            .values("plan__amount_cents", "plan__interval", "plan__interval_count")
            .annotate(n=Count("pk"))
        )
        total = Decimal(0)
        for row in rows:
            factor = _MONTHLY_FACTOR.get(row["plan__interval"], Decimal(1)) / Decimal(row["plan__interval_count"])
            total += Decimal(row["plan__amount_cents"]) * factor * row["n"]
        return int(total.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    @classmethod
    def analytics(cls, period: str = "month", now: datetime | None = None, subscription_id: Any = None) -> dict[str, Any]:
        """
        Revenue and churn for the trailing `period` compared to the one before.

        `subscription_id` narrows the revenue figures to one subscription.
        """
        if period not in ANALYTICS_PERIODS:
            raise ValueError(f"Unknown analytics period: {period}")

        now = now or timezone.now()
        currency = get_default_currency()
        window = timedelta(days=ANALYTICS_PERIODS[period])
        start, previous_start = now - window, now - 2 * window

        total_revenue = cls.net_revenue(start, now, currency, subscription_id)
        previous_revenue = cls.net_revenue(previous_start, start, currency, subscription_id)

        new_subscriptions = Subscription.objects.filter(created_at__gte=start, created_at__lt=now).count()
        churned = SubscriptionTransition.objects.filter(
            created_at__gte=start,
            created_at__lt=now,
            to_status__in=Subscription.TERMINAL_STATUSES,
        ).count()
        live_now = Subscription.objects.filter(status__in=Subscription.LIVE_STATUSES).count()
        live_at_start = max(live_now + churned - new_subscriptions, 0)
        churn_fraction = Decimal(churned) / Decimal(live_at_start) if live_at_start else Decimal(0)

        paying = Subscription.objects.filter(
            status__in=[Subscription.STATUS_ACTIVE, Subscription.STATUS_PAST_DUE, Subscription.STATUS_GRACE_PERIOD]
        ).count()
        arpu = int(Decimal(total_revenue) / paying) if paying else 0
        lifetime_value = int(Decimal(arpu) / churn_fraction) if churn_fraction else None

        return {
            "period": period,
            "currency": currency,
            "total_revenue": total_revenue,
            "monthly_recurring_revenue": cls.monthly_recurring_revenue(currency),
            "churn_rate": float((churn_fraction * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)),
            "new_subscriptions": new_subscriptions,
            "cancelled_subscriptions": churned,
            "revenue_growth": growth_rate(total_revenue, previous_revenue),
            "average_revenue_per_user": arpu,
            "customer_lifetime_value": lifetime_value,
        }
