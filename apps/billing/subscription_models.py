"""
Subscription models
Authoritative per-organization billing state plus its transition log.

Lifecycle:
- trial → active → past_due → grace_period → cancelled
- active → cancelled (administrative) / expired (cancel at period end)
- past_due / grace_period → active (successful payment)

Rows are mutated only through SubscriptionStateMachine, which bumps
`version` with a compare-and-swap update on every transition.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, ClassVar

from django.db import models
from django.db.models import Q
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

logger = logging.getLogger(__name__)


class Subscription(models.Model):
    """
    One organization's subscription to one plan.

    At most one subscription per organization may be live (trial, active,
    past_due, grace_period); terminal rows are retained for audit and stats.
    """

    STATUS_TRIAL = "trial"
    STATUS_ACTIVE = "active"
    STATUS_PAST_DUE = "past_due"
    STATUS_GRACE_PERIOD = "grace_period"
    STATUS_CANCELLED = "cancelled"
    STATUS_EXPIRED = "expired"

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (STATUS_TRIAL, _("Trial")),
        (STATUS_ACTIVE, _("Active")),
        (STATUS_PAST_DUE, _("Past Due")),
        (STATUS_GRACE_PERIOD, _("Grace Period")),
        (STATUS_CANCELLED, _("Cancelled")),
        (STATUS_EXPIRED, _("Expired")),
    )

    LIVE_STATUSES: ClassVar[tuple[str, ...]] = (
        STATUS_TRIAL,
        STATUS_ACTIVE,
        STATUS_PAST_DUE,
        STATUS_GRACE_PERIOD,
    )
    TERMINAL_STATUSES: ClassVar[tuple[str, ...]] = (STATUS_CANCELLED, STATUS_EXPIRED)

    CANCELLATION_REASON_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("admin_request", _("Administrative Request")),
        ("customer_request", _("Customer Request")),
        ("non_payment", _("Non-Payment")),
        ("retry_budget_exhausted", _("Payment Retries Exhausted")),
        ("plan_change", _("Plan Change")),
        ("other", _("Other")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    organization = models.ForeignKey(
        "organizations.Organization",
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )
    plan = models.ForeignKey(
        "billing.Plan",
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, db_index=True)

    # Billing period tracking
    current_period_start = models.DateTimeField()
    current_period_end = models.DateTimeField()
    next_billing_date = models.DateTimeField(null=True, blank=True, db_index=True)
    billing_anchor_day = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        help_text=_("Day of month that calendar intervals renew on"),
    )

    trial_start = models.DateTimeField(null=True, blank=True)
    trial_end = models.DateTimeField(null=True, blank=True)

    # Payment / dunning tracking
    last_payment_date = models.DateTimeField(null=True, blank=True)
    failed_payment_count = models.PositiveIntegerField(
        default=0,
        help_text=_("Consecutive failed payment attempts"),
    )
    next_retry_at = models.DateTimeField(null=True, blank=True)
    grace_period_ends_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text=_("Deadline of the current dunning stage"),
    )

    # Cancellation
    cancel_at_period_end = models.BooleanField(default=False)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=50, choices=CANCELLATION_REASON_CHOICES, blank=True)
    cancellation_note = models.TextField(blank=True)
    ended_at = models.DateTimeField(null=True, blank=True)

    # Provider references
    authorization_code = models.CharField(
        max_length=255,
        blank=True,
        help_text=_("Saved payment method used for renewals"),
    )

    metadata = models.JSONField(default=dict, blank=True)

    # Optimistic concurrency token
    version = models.PositiveBigIntegerField(default=1)

    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "subscriptions"
        verbose_name = _("Subscription")
        verbose_name_plural = _("Subscriptions")
        ordering = ("-created_at",)
        indexes = (
            models.Index(fields=["organization", "status"], name="sub_org_status_idx"),
            models.Index(fields=["status", "current_period_end"], name="sub_status_period_end_idx"),
            models.Index(fields=["status", "grace_period_ends_at"], name="sub_status_grace_end_idx"),
            models.Index(fields=["status", "next_retry_at"], name="sub_status_retry_idx"),
        )
        constraints: ClassVar[list[Any]] = [
            models.UniqueConstraint(
                fields=["organization"],
                condition=Q(status__in=["trial", "active", "past_due", "grace_period"]),
                name="one_live_subscription_per_organization",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.organization_id} / {self.plan_id} ({self.status})"

    # =========================================================================
    # STATUS PROPERTIES
    # =========================================================================

    @property
    def is_live(self) -> bool:
        return self.status in self.LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def is_in_grace_period(self) -> bool:
        return self.status == self.STATUS_GRACE_PERIOD

    @property
    def amount_cents(self) -> int:
        return self.plan.amount_cents

    @property
    def currency(self) -> str:
        return self.plan.currency


class SubscriptionTransition(models.Model):
    """
    Append-only transition log, one row per subscription version.

    The activity feed is projected from these rows plus payment records.
    """

    ACTIVITY_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("subscription_created", _("Subscription Created")),
        ("trial_converted", _("Trial Converted")),
        ("renewed", _("Renewed")),
        ("payment_failed", _("Payment Failed")),
        ("payment_recovered", _("Payment Recovered")),
        ("grace_period_started", _("Grace Period Started")),
        ("retry_budget_exhausted", _("Payment Retries Exhausted")),
        ("cancelled", _("Cancelled")),
        ("expired", _("Expired")),
    )

    subscription = models.ForeignKey(Subscription, on_delete=models.PROTECT, related_name="transitions")
    organization = models.ForeignKey(
        "organizations.Organization",
        on_delete=models.PROTECT,
        related_name="subscription_transitions",
    )
    from_status = models.CharField(max_length=20, blank=True)
    to_status = models.CharField(max_length=20)
    activity_type = models.CharField(max_length=40, choices=ACTIVITY_CHOICES)
    reason = models.TextField(blank=True)
    version = models.PositiveBigIntegerField(help_text=_("Subscription version this transition produced"))
    payment = models.ForeignKey(
        "billing.PaymentRecord",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transitions",
    )
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        db_table = "subscription_transitions"
        ordering = ("-created_at", "-id")
        constraints: ClassVar[list[Any]] = [
            models.UniqueConstraint(fields=["subscription", "version"], name="one_transition_per_version"),
        ]

    def __str__(self) -> str:
        return f"{self.subscription_id} v{self.version}: {self.from_status or '-'} -> {self.to_status}"
