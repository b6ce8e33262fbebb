"""
Charge coordination between the lifecycle and the payment gateway.

A ChargeAttempt row is claimed before the provider is called, keyed by the
same reference the provider sees as its idempotency key. A second caller
with the same reference finds the claim and backs off, which collapses
overlapping sweeps and duplicate manual retries into one provider call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from django.db import IntegrityError, transaction

from .config import get_reconcile_after_minutes
from .gateways.base import (
    CHARGE_FAILED,
    CHARGE_NOT_FOUND,
    CHARGE_SUCCEEDED,
    BasePaymentGateway,
    PaymentGatewayFactory,
)
from .models import ChargeAttempt, PaymentRecord, Subscription

logger = logging.getLogger(__name__)

# Charge outcomes as seen by the lifecycle
OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_PENDING = "pending"  # sent, outcome unknown; left for reconciliation
OUTCOME_IN_FLIGHT = "in_flight"  # someone else holds the claim
OUTCOME_ALREADY_RESOLVED = "already_resolved"  # the reference is already in the ledger


@dataclass(frozen=True)
class ChargeOutcome:
    status: str
    reference: str
    amount_cents: int = 0
    currency: str = ""
    failure_reason: str = ""
    provider_transaction_id: str = ""
    payment: PaymentRecord | None = None

    @property
    def is_final(self) -> bool:
        return self.status in (OUTCOME_SUCCEEDED, OUTCOME_FAILED)

    @property
    def payment_outcome(self) -> str:
        return PaymentRecord.OUTCOME_SUCCESS if self.status == OUTCOME_SUCCEEDED else PaymentRecord.OUTCOME_FAILED


@dataclass(frozen=True)
class ReconciledCharge:
    attempt: ChargeAttempt
    outcome: ChargeOutcome


class ChargeCoordinator:
    """Claims, sends and reconciles provider charges."""

    def __init__(self, gateway: BasePaymentGateway | None = None) -> None:
        self._gateway = gateway

    @property
    def gateway(self) -> BasePaymentGateway:
        if self._gateway is None:
            self._gateway = PaymentGatewayFactory.get_default_gateway()
        return self._gateway

    # ---------------------------------------------------------------------------
    # Claiming
    # ---------------------------------------------------------------------------

    def _claim(
        self, subscription: Subscription, reference: str, purpose: str, amount_cents: int, now: datetime
    ) -> tuple[ChargeAttempt | None, ChargeOutcome | None]:
        """Return (attempt, None) when we own the claim, else (None, outcome-to-report)."""
        next_check_at = now + timedelta(minutes=get_reconcile_after_minutes())
        try:
            with transaction.atomic():
                attempt = ChargeAttempt.objects.create(
                    subscription=subscription,
                    provider_reference=reference,
                    purpose=purpose,
                    amount_cents=amount_cents,
                    currency=subscription.plan.currency,
                    created_at=now,
                    next_check_at=next_check_at,
                )
            return attempt, None
        except IntegrityError:
            pass

        existing = ChargeAttempt.objects.select_related("payment").get(provider_reference=reference)
        if existing.status == ChargeAttempt.STATUS_RESOLVED:
            return None, ChargeOutcome(status=OUTCOME_ALREADY_RESOLVED, reference=reference, payment=existing.payment)

        if existing.status == ChargeAttempt.STATUS_ABANDONED:
            # The provider never saw it; re-claim only if nobody else already did
            revived = ChargeAttempt.objects.filter(
                pk=existing.pk, status=ChargeAttempt.STATUS_ABANDONED
            ).update(status=ChargeAttempt.STATUS_PENDING, next_check_at=next_check_at, last_error="")
            if revived:
                existing.refresh_from_db()
                return existing, None

        logger.info(f"⏳ [Charges] {reference} already in flight, skipping")
        return None, ChargeOutcome(status=OUTCOME_IN_FLIGHT, reference=reference)

    # ---------------------------------------------------------------------------
    # Charging
    # ---------------------------------------------------------------------------

    def charge(
        self,
        subscription: Subscription,
        reference: str,
        purpose: str,
        now: datetime,
        amount_cents: int | None = None,
    ) -> ChargeOutcome:
        """Charge the subscription's saved payment method once per reference."""
        amount = subscription.plan.amount_cents if amount_cents is None else amount_cents
        attempt, early = self._claim(subscription, reference, purpose, amount, now)
        if attempt is None:
            return early  # type: ignore[return-value]

        try:
            result = self.gateway.charge(
                reference=reference,
                amount_cents=amount,
                currency=subscription.plan.currency,
                customer_code=subscription.organization.customer_code,
                authorization_code=subscription.authorization_code,
                metadata={"subscription_id": str(subscription.id), "purpose": purpose},
            )
        except Exception as e:
            # Outcome unknown: leave the claim pending for reconciliation
            logger.exception(f"🔥 [Charges] Gateway raised while charging {reference}: {e}")
            ChargeAttempt.objects.filter(pk=attempt.pk).update(last_error=str(e)[:1000])
            return ChargeOutcome(status=OUTCOME_PENDING, reference=reference, amount_cents=amount)

        return self._to_outcome(attempt, result, amount)

    def _to_outcome(self, attempt: ChargeAttempt, result: Any, amount_cents: int) -> ChargeOutcome:
        if result["status"] == CHARGE_SUCCEEDED:
            return ChargeOutcome(
                status=OUTCOME_SUCCEEDED,
                reference=attempt.provider_reference,
                amount_cents=amount_cents,
                currency=attempt.currency,
                provider_transaction_id=result["provider_id"],
            )
        if result["status"] == CHARGE_FAILED:
            return ChargeOutcome(
                status=OUTCOME_FAILED,
                reference=attempt.provider_reference,
                amount_cents=amount_cents,
                currency=attempt.currency,
                failure_reason=result["error"] or "Payment declined",
                provider_transaction_id=result["provider_id"],
            )

        logger.warning(f"⚠️ [Charges] Outcome of {attempt.provider_reference} unknown: {result['error']}")
        ChargeAttempt.objects.filter(pk=attempt.pk).update(last_error=(result["error"] or "")[:1000])
        return ChargeOutcome(status=OUTCOME_PENDING, reference=attempt.provider_reference, amount_cents=amount_cents)

    # ---------------------------------------------------------------------------
    # Reconciliation
    # ---------------------------------------------------------------------------

    def reconcile(self, now: datetime, limit: int = 100) -> list[ReconciledCharge]:
        """
        Ask the provider about pending attempts whose check time has come.

        Returns the attempts that reached a final outcome; the caller ingests
        them. References the provider never saw are abandoned so the lifecycle
        may charge them again.
        """
        due = list(
            ChargeAttempt.objects.select_related("subscription__plan")
            .filter(status=ChargeAttempt.STATUS_PENDING, next_check_at__lte=now)
            .order_by("next_check_at")[:limit]
        )
        resolved: list[ReconciledCharge] = []
        for attempt in due:
            result = self.gateway.lookup_charge(attempt.provider_reference)
            if result["status"] == CHARGE_NOT_FOUND:
                ChargeAttempt.objects.filter(pk=attempt.pk, status=ChargeAttempt.STATUS_PENDING).update(
                    status=ChargeAttempt.STATUS_ABANDONED, check_count=attempt.check_count + 1
                )
                logger.info(f"🧹 [Charges] {attempt.provider_reference} unknown to provider, abandoned")
                continue

            outcome = self._to_outcome(attempt, result, attempt.amount_cents)
            if outcome.is_final:
                resolved.append(ReconciledCharge(attempt=attempt, outcome=outcome))
            else:
                backoff = timedelta(minutes=get_reconcile_after_minutes() * (attempt.check_count + 2))
                ChargeAttempt.objects.filter(pk=attempt.pk).update(
                    check_count=attempt.check_count + 1, next_check_at=now + backoff
                )
        return resolved

    @staticmethod
    def resolve(reference: str, payment: PaymentRecord, now: datetime) -> None:
        """Mark the attempt for `reference` resolved by `payment` (no-op when there is none)."""
        ChargeAttempt.objects.filter(provider_reference=reference).exclude(
            status=ChargeAttempt.STATUS_RESOLVED
        ).update(status=ChargeAttempt.STATUS_RESOLVED, payment=payment, resolved_at=now)
