"""
Plan models
Billing templates. A plan referenced by a live subscription is never edited
in place: changes produce a new version that supersedes it.
"""

from __future__ import annotations

import uuid
from typing import Any, ClassVar

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils.translation import gettext_lazy as _

from . import config
from .clock import INTERVAL_MONTHLY, BillingInterval


class Plan(models.Model):
    """Recurring price, interval and dunning policy for subscriptions."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    plan_code = models.CharField(
        max_length=100,
        blank=True,
        db_index=True,
        help_text=_("Provider plan code, shared by every version of the plan"),
    )

    # Pricing
    amount_cents = models.BigIntegerField(
        validators=[MinValueValidator(0)],
        help_text=_("Price per period in minor units"),
    )
    currency = models.CharField(max_length=3, help_text=_("ISO 4217 currency code"))

    # Period
    interval = models.CharField(
        max_length=20,
        choices=BillingInterval.CHOICES,
        default=INTERVAL_MONTHLY,
    )
    interval_count = models.PositiveIntegerField(
        default=1,
        validators=[MinValueValidator(1)],
        help_text=_("Number of intervals per billing period"),
    )
    trial_period_days = models.PositiveIntegerField(default=0)

    # Dunning policy (null = platform default from settings)
    grace_period_days = models.PositiveIntegerField(null=True, blank=True)
    retry_base_delay_hours = models.PositiveIntegerField(null=True, blank=True, validators=[MinValueValidator(1)])
    retry_max_delay_hours = models.PositiveIntegerField(null=True, blank=True, validators=[MinValueValidator(1)])
    max_retry_attempts = models.PositiveIntegerField(null=True, blank=True, validators=[MinValueValidator(1)])

    features = models.JSONField(default=list, blank=True)
    is_active = models.BooleanField(default=True, db_index=True)

    # Versioning
    version = models.PositiveIntegerField(default=1)
    supersedes = models.OneToOneField(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="superseded_by",
        help_text=_("Previous version of this plan"),
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_plans"
        verbose_name = _("Plan")
        verbose_name_plural = _("Plans")
        ordering = ("amount_cents", "name")
        constraints: ClassVar[list[Any]] = [
            models.CheckConstraint(condition=Q(interval_count__gte=1), name="plan_interval_count_positive"),
            models.CheckConstraint(condition=Q(amount_cents__gte=0), name="plan_amount_non_negative"),
        ]

    def __str__(self) -> str:
        return f"{self.name} v{self.version} ({self.amount_cents} {self.currency}/{self.interval})"

    def clean(self) -> None:
        super().clean()
        if self.interval not in BillingInterval.values():
            raise ValidationError({"interval": _("Unknown billing interval")})
        if self.interval_count is None or self.interval_count < 1:
            raise ValidationError({"interval_count": _("Interval count must be at least 1")})
        if self.amount_cents is None or self.amount_cents < 0:
            raise ValidationError({"amount_cents": _("Amount cannot be negative")})
        if not self.currency or len(self.currency) != 3:  # noqa: PLR2004
            raise ValidationError({"currency": _("Currency must be a 3-letter ISO code")})
        if (
            self.retry_base_delay_hours
            and self.retry_max_delay_hours
            and self.retry_max_delay_hours < self.retry_base_delay_hours
        ):
            raise ValidationError({"retry_max_delay_hours": _("Maximum retry delay is below the base delay")})

    # =========================================================================
    # EFFECTIVE DUNNING POLICY
    # =========================================================================

    @property
    def effective_grace_period_days(self) -> int:
        if self.grace_period_days is not None:
            return self.grace_period_days
        return config.get_grace_period_days()

    @property
    def effective_retry_base_delay_hours(self) -> int:
        return self.retry_base_delay_hours or config.get_retry_base_delay_hours()

    @property
    def effective_retry_max_delay_hours(self) -> int:
        return self.retry_max_delay_hours or config.get_retry_max_delay_hours()

    @property
    def effective_max_retry_attempts(self) -> int:
        return self.max_retry_attempts or config.get_max_retry_attempts()
