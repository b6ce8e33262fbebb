"""
Payment ledger.

Append-only record of payment outcomes per subscription. Appending never
moves a subscription: callers hand the appended record to the state machine
inside the same transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import datetime
from typing import Any

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import Sum
from django.utils import timezone

from .exceptions import DuplicateEvent
from .models import PaymentRecord

logger = logging.getLogger(__name__)

HISTORY_CHUNK_SIZE = 200


class PaymentLedger:
    """Ledger operations over PaymentRecord."""

    @staticmethod
    def record_payment(  # noqa: PLR0913
        subscription_id: Any,
        amount_cents: int,
        currency: str,
        outcome: str,
        provider_reference: str,
        reason: str = "",
        *,
        purpose: str = "manual",
        occurred_at: datetime | None = None,
        refund_of: PaymentRecord | None = None,
        provider_transaction_id: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> PaymentRecord:
        """
        Append one payment outcome.

        Raises:
            DuplicateEvent: provider_reference is already recorded; `.existing` holds that record
            ValidationError: malformed amount, currency, outcome or reference
        """
        if outcome not in dict(PaymentRecord.OUTCOME_CHOICES):
            raise ValidationError(f"Unknown payment outcome: {outcome}")
        if not provider_reference:
            raise ValidationError("Provider reference is required")
        if amount_cents is None or amount_cents < 0:
            raise ValidationError("Payment amount cannot be negative")
        if not currency or len(currency) != 3:  # noqa: PLR2004
            raise ValidationError("Currency must be a 3-letter ISO code")

        existing = PaymentRecord.objects.filter(provider_reference=provider_reference).first()
        if existing is not None:
            raise DuplicateEvent(existing)

        when = occurred_at or timezone.now()
        fields: dict[str, Any] = {
            "subscription_id": subscription_id,
            "amount_cents": amount_cents,
            "currency": currency.upper(),
            "outcome": outcome,
            "purpose": purpose,
            "provider_reference": provider_reference,
            "provider_transaction_id": provider_transaction_id,
            "failure_reason": reason if outcome == PaymentRecord.OUTCOME_FAILED else "",
            "refund_of": refund_of,
            "created_at": when,
            "metadata": metadata or {},
        }
        if outcome == PaymentRecord.OUTCOME_SUCCESS:
            fields["paid_at"] = when
        elif outcome == PaymentRecord.OUTCOME_FAILED:
            fields["failed_at"] = when
        else:
            fields["refunded_at"] = when
            if reason:
                fields["metadata"] = {**fields["metadata"], "refund_reason": reason}

        try:
            # Savepoint: a concurrent insert of the same reference must not poison the caller's transaction
            with transaction.atomic():
                record = PaymentRecord.objects.create(**fields)
        except IntegrityError:
            existing = PaymentRecord.objects.filter(provider_reference=provider_reference).first()
            if existing is None:
                raise
            raise DuplicateEvent(existing) from None

        logger.info(
            f"📒 [Ledger] {outcome} {amount_cents} {record.currency} for subscription {subscription_id} "
            f"(ref {provider_reference})"
        )
        return record

    @staticmethod
    def history(subscription_id: Any) -> Iterator[PaymentRecord]:
        """
        Time-ordered records for a subscription, fetched lazily in chunks.

        Each call starts a fresh query, so the sequence can be restarted.
        """
        return (
            PaymentRecord.objects.filter(subscription_id=subscription_id)
            .order_by("created_at", "id")
            .iterator(chunk_size=HISTORY_CHUNK_SIZE)
        )

    @staticmethod
    def sum_by_outcome(
        subscription_id: Any,
        outcome: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> int:
        """Total amount in minor units for one outcome, optionally inside [since, until)."""
        records = PaymentRecord.objects.filter(subscription_id=subscription_id, outcome=outcome)
        if since is not None:
            records = records.filter(created_at__gte=since)
        if until is not None:
            records = records.filter(created_at__lt=until)
        return records.aggregate(total=Sum("amount_cents"))["total"] or 0

    @staticmethod
    def has_settled_payment(subscription_id: Any) -> bool:
        """True when a successful payment exists that has not been refunded."""
        return PaymentRecord.objects.filter(
            subscription_id=subscription_id,
            outcome=PaymentRecord.OUTCOME_SUCCESS,
            refund__isnull=True,
        ).exists()

    @staticmethod
    def latest_failure(subscription_id: Any) -> PaymentRecord | None:
        return (
            PaymentRecord.objects.filter(subscription_id=subscription_id, outcome=PaymentRecord.OUTCOME_FAILED)
            .order_by("-created_at", "-id")
            .first()
        )
