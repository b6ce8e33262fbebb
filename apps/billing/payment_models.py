"""
Payment models
Append-only payment ledger plus the in-flight charge attempts that feed it.
"""

from __future__ import annotations

import uuid
from typing import Any, ClassVar

from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone
from django.utils.translation import gettext_lazy as _


class PaymentRecord(models.Model):
    """
    One ledger entry. Never updated or deleted once written.

    A refund is a new REFUNDED row pointing at the settled original.
    `provider_reference` is the idempotency key for provider callbacks.
    """

    OUTCOME_SUCCESS = "success"
    OUTCOME_FAILED = "failed"
    OUTCOME_REFUNDED = "refunded"

    OUTCOME_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (OUTCOME_SUCCESS, _("Success")),
        (OUTCOME_FAILED, _("Failed")),
        (OUTCOME_REFUNDED, _("Refunded")),
    )

    PURPOSE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("trial_conversion", _("Trial Conversion")),
        ("renewal", _("Renewal")),
        ("retry", _("Dunning Retry")),
        ("manual", _("Manual Payment")),
        ("refund", _("Refund")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.PROTECT,
        related_name="payments",
    )
    amount_cents = models.BigIntegerField(validators=[MinValueValidator(0)])
    currency = models.CharField(max_length=3)
    outcome = models.CharField(max_length=20, choices=OUTCOME_CHOICES, db_index=True)
    purpose = models.CharField(max_length=30, choices=PURPOSE_CHOICES, default="manual")
    provider_reference = models.CharField(max_length=255, unique=True)
    provider_transaction_id = models.CharField(max_length=255, blank=True)
    failure_reason = models.TextField(blank=True)
    refund_of = models.OneToOneField(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="refund",
    )

    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = "billing_payment_records"
        verbose_name = _("Payment Record")
        verbose_name_plural = _("Payment Records")
        ordering = ("created_at", "id")
        indexes = (
            models.Index(fields=["subscription", "created_at"], name="payment_sub_created_idx"),
            models.Index(fields=["outcome", "created_at"], name="payment_outcome_created_idx"),
        )
        constraints: ClassVar[list[Any]] = [
            models.CheckConstraint(condition=Q(amount_cents__gte=0), name="payment_amount_non_negative"),
        ]

    def __str__(self) -> str:
        return f"{self.provider_reference}: {self.outcome} {self.amount_cents} {self.currency}"

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self._state.adding:
            raise ValueError("Payment records are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args: Any, **kwargs: Any) -> Any:
        raise ValueError("Payment records are append-only")

    @property
    def occurred_at(self) -> Any:
        return self.paid_at or self.failed_at or self.refunded_at or self.created_at


class ChargeAttempt(models.Model):
    """
    A charge sent (or about to be sent) to the provider.

    While pending, the outcome is unknown and nothing is in the ledger. The
    attempt is resolved by the ingestion that writes its PaymentRecord, or by
    reconciliation after a timeout.
    """

    STATUS_PENDING = "pending"
    STATUS_RESOLVED = "resolved"
    STATUS_ABANDONED = "abandoned"

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (STATUS_PENDING, _("Pending")),
        (STATUS_RESOLVED, _("Resolved")),
        (STATUS_ABANDONED, _("Abandoned")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.PROTECT,
        related_name="charge_attempts",
    )
    provider_reference = models.CharField(max_length=255, unique=True)
    purpose = models.CharField(max_length=30, choices=PaymentRecord.PURPOSE_CHOICES)
    amount_cents = models.BigIntegerField(validators=[MinValueValidator(0)])
    currency = models.CharField(max_length=3)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING, db_index=True)
    payment = models.OneToOneField(
        PaymentRecord,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="charge_attempt",
    )
    last_error = models.TextField(blank=True)
    check_count = models.PositiveIntegerField(default=0)
    next_check_at = models.DateTimeField(null=True, blank=True, db_index=True)
    created_at = models.DateTimeField(default=timezone.now)
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "billing_charge_attempts"
        ordering = ("created_at",)

    def __str__(self) -> str:
        return f"{self.provider_reference} ({self.status})"

    @property
    def is_pending(self) -> bool:
        return self.status == self.STATUS_PENDING
