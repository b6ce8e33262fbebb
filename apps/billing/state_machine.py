"""
Subscription state machine.

The single serialization point for subscription status. Every change goes
through `transition()`, a compare-and-swap on the row's `version`: if another
writer advanced the subscription first, the update matches no row and
TransitionConflict is raised instead of applying a stale transition.

Inputs are either ledger events (`ingest_payment`/`apply_payment`) or clock
deadlines (`evaluate`, used by the sweeper). Both end in `transition()`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import F

from apps.common.validators import log_security_event

from . import clock
from .charging import (
    OUTCOME_ALREADY_RESOLVED,
    OUTCOME_IN_FLIGHT,
    OUTCOME_PENDING,
    ChargeCoordinator,
)
from .config import get_max_transition_retries
from .exceptions import DuplicateEvent, LifecycleInvariantViolation, TransitionConflict
from .ledger import PaymentLedger
from .models import PaymentRecord, Subscription, SubscriptionTransition
from .signals import subscription_status_changed

logger = logging.getLogger(__name__)

TRIAL = Subscription.STATUS_TRIAL
ACTIVE = Subscription.STATUS_ACTIVE
PAST_DUE = Subscription.STATUS_PAST_DUE
GRACE_PERIOD = Subscription.STATUS_GRACE_PERIOD
CANCELLED = Subscription.STATUS_CANCELLED
EXPIRED = Subscription.STATUS_EXPIRED

# Legal edges. Self-edges record dunning progress and renewals.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    TRIAL: frozenset({ACTIVE, PAST_DUE, CANCELLED, EXPIRED}),
    ACTIVE: frozenset({ACTIVE, PAST_DUE, CANCELLED, EXPIRED}),
    PAST_DUE: frozenset({ACTIVE, PAST_DUE, GRACE_PERIOD, CANCELLED}),
    GRACE_PERIOD: frozenset({ACTIVE, GRACE_PERIOD, CANCELLED}),
    CANCELLED: frozenset(),
    EXPIRED: frozenset(),
}

# Transitions worth a security/audit event
_AUDITED_STATES = frozenset({GRACE_PERIOD, CANCELLED, EXPIRED})


@dataclass(frozen=True)
class Evaluation:
    """What one evaluation did to one subscription."""

    subscription_id: Any
    from_status: str
    to_status: str | None = None
    activity: str = ""
    skipped: bool = False
    detail: str = ""

    @property
    def changed(self) -> bool:
        return self.to_status is not None


@dataclass(frozen=True)
class PaymentIngestion:
    """Result of appending a payment and applying it."""

    payment: PaymentRecord
    subscription: Subscription
    transition: SubscriptionTransition | None
    duplicate: bool = False


def load_subscription(subscription_id: Any) -> Subscription:
    return Subscription.objects.select_related("plan", "organization").get(pk=subscription_id)


class SubscriptionStateMachine:
    """Owns subscription status and the legal moves between states."""

    def __init__(self, charges: ChargeCoordinator | None = None) -> None:
        self.charges = charges or ChargeCoordinator()

    # ===========================================================================
    # TRANSITION PRIMITIVE
    # ===========================================================================

    def transition(  # noqa: PLR0913
        self,
        subscription: Subscription,
        to_status: str,
        *,
        activity: str,
        now: datetime,
        reason: str = "",
        changes: dict[str, Any] | None = None,
        payment: PaymentRecord | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SubscriptionTransition:
        """
        Apply one transition against the snapshot's version.

        Raises:
            TransitionConflict: the row moved past the snapshot's version
            LifecycleInvariantViolation: illegal edge or a second live subscription
        """
        from_status = subscription.status
        if to_status not in ALLOWED_TRANSITIONS.get(from_status, frozenset()):
            raise self._violation(subscription, f"Illegal transition {from_status} -> {to_status}")
        if to_status in Subscription.LIVE_STATUSES:
            self._assert_single_live(subscription)

        changes = dict(changes or {})
        expected_version = subscription.version

        with transaction.atomic():
            updated = Subscription.objects.filter(pk=subscription.pk, version=expected_version).update(
                status=to_status,
                version=F("version") + 1,
                updated_at=now,
                **changes,
            )
            if not updated:
                raise TransitionConflict(subscription.pk, expected_version)

            for field, value in changes.items():
                setattr(subscription, field, value)
            subscription.status = to_status
            subscription.version = expected_version + 1
            subscription.updated_at = now

            entry = SubscriptionTransition.objects.create(
                subscription=subscription,
                organization_id=subscription.organization_id,
                from_status=from_status,
                to_status=to_status,
                activity_type=activity,
                reason=reason,
                version=subscription.version,
                payment=payment,
                metadata=metadata or {},
                created_at=now,
            )

            def _notify() -> None:
                subscription_status_changed.send(
                    sender=Subscription,
                    subscription=subscription,
                    from_status=from_status,
                    to_status=to_status,
                    activity_type=activity,
                    reason=reason,
                )

            transaction.on_commit(_notify)

        logger.info(
            f"🔄 [Lifecycle] Subscription {subscription.pk} {from_status} -> {to_status} "
            f"({activity}, v{subscription.version})"
        )
        if to_status in _AUDITED_STATES and to_status != from_status:
            log_security_event(
                event_type=f"subscription_{to_status}",
                details={
                    "subscription_id": str(subscription.pk),
                    "organization_id": str(subscription.organization_id),
                    "from_status": from_status,
                    "activity": activity,
                    "reason": reason,
                },
            )
        return entry

    def _assert_single_live(self, subscription: Subscription) -> None:
        others = (
            Subscription.objects.filter(
                organization_id=subscription.organization_id,
                status__in=Subscription.LIVE_STATUSES,
            )
            .exclude(pk=subscription.pk)
            .values_list("pk", flat=True)
        )
        if others:
            raise self._violation(
                subscription,
                f"Organization {subscription.organization_id} has another live subscription: {list(others)}",
            )

    @staticmethod
    def _violation(subscription: Subscription, message: str) -> LifecycleInvariantViolation:
        logger.critical(f"🛑 [Lifecycle] Invariant violation on subscription {subscription.pk}: {message}")
        log_security_event(
            event_type="billing_invariant_violation",
            details={"subscription_id": str(subscription.pk), "message": message},
        )
        return LifecycleInvariantViolation(message)

    def _update_flags(self, subscription: Subscription, now: datetime, **changes: Any) -> None:
        """Version-guarded field update that is not a status transition."""
        expected_version = subscription.version
        updated = Subscription.objects.filter(pk=subscription.pk, version=expected_version).update(
            version=F("version") + 1, updated_at=now, **changes
        )
        if not updated:
            raise TransitionConflict(subscription.pk, expected_version)
        for field, value in changes.items():
            setattr(subscription, field, value)
        subscription.version = expected_version + 1

    # ===========================================================================
    # PERIOD HELPERS
    # ===========================================================================

    @staticmethod
    def _fresh_period(subscription: Subscription, start: datetime) -> dict[str, Any]:
        plan = subscription.plan
        period_start, period_end = clock.next_period_bounds(start, plan.interval, plan.interval_count)
        return {
            "current_period_start": period_start,
            "current_period_end": period_end,
            "next_billing_date": period_end,
            "billing_anchor_day": period_start.day,
            "failed_payment_count": 0,
            "next_retry_at": None,
            "grace_period_ends_at": None,
        }

    @staticmethod
    def _rolled_period(subscription: Subscription) -> dict[str, Any]:
        period_start, period_end = clock.rollover_bounds(subscription)
        return {
            "current_period_start": period_start,
            "current_period_end": period_end,
            "next_billing_date": period_end,
            "failed_payment_count": 0,
            "next_retry_at": None,
            "grace_period_ends_at": None,
        }

    # ===========================================================================
    # LEDGER EVENTS
    # ===========================================================================

    def apply_payment(
        self, subscription: Subscription, payment: PaymentRecord, now: datetime
    ) -> SubscriptionTransition | None:
        """
        Apply an appended payment to the subscription. Must run in the
        transaction that appended it. Returns None when the payment does
        not move the subscription.
        """
        if subscription.is_terminal:
            logger.warning(
                f"⚠️ [Lifecycle] Payment {payment.provider_reference} for {subscription.status} "
                f"subscription {subscription.pk} recorded without transition"
            )
            return None

        if payment.outcome == PaymentRecord.OUTCOME_SUCCESS:
            return self._apply_success(subscription, payment, now)
        if payment.outcome == PaymentRecord.OUTCOME_FAILED:
            return self._apply_failure(subscription, payment, now)
        # Refunds are money movements only; access follows the next charge
        return None

    def _apply_success(
        self, subscription: Subscription, payment: PaymentRecord, now: datetime
    ) -> SubscriptionTransition | None:
        status = subscription.status
        paid = {"last_payment_date": payment.paid_at or now}

        if status == TRIAL:
            if not clock.is_trial_expired(subscription, now):
                return None  # settled in advance; converts when the trial ends
            return self.transition(
                subscription,
                ACTIVE,
                activity="trial_converted",
                now=now,
                changes={**self._fresh_period(subscription, subscription.trial_end), **paid},
                payment=payment,
            )

        if status == ACTIVE:
            if not clock.is_period_expired(subscription, now) or subscription.cancel_at_period_end:
                return None
            return self.transition(
                subscription,
                ACTIVE,
                activity="renewed",
                now=now,
                changes={**self._rolled_period(subscription), **paid},
                payment=payment,
            )

        # PAST_DUE / GRACE_PERIOD: recovered, fresh period from the payment
        return self.transition(
            subscription,
            ACTIVE,
            activity="payment_recovered",
            now=now,
            changes={**self._fresh_period(subscription, now), **paid},
            payment=payment,
        )

    def _apply_failure(
        self, subscription: Subscription, payment: PaymentRecord, now: datetime
    ) -> SubscriptionTransition | None:
        if subscription.status == TRIAL and not clock.is_trial_expired(subscription, now):
            return None
        if subscription.status == ACTIVE and not clock.is_period_expired(subscription, now):
            return None

        from .dunning import DunningManager  # noqa: PLC0415

        return DunningManager(machine=self).on_payment_failure(
            subscription, payment.failure_reason, now, payment=payment
        )

    def ingest_payment(  # noqa: PLR0913
        self,
        subscription_id: Any,
        amount_cents: int,
        currency: str,
        outcome: str,
        provider_reference: str,
        *,
        now: datetime,
        reason: str = "",
        purpose: str = "manual",
        provider_transaction_id: str = "",
        metadata: dict[str, Any] | None = None,
        refund_of: PaymentRecord | None = None,
    ) -> PaymentIngestion:
        """
        Append a payment and apply it in one transaction.

        A replayed reference returns the existing record without a transition.
        On a version race the append is rolled back and retried against a
        fresh read, so the payment is recorded exactly once either way.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                with transaction.atomic():
                    record = PaymentLedger.record_payment(
                        subscription_id,
                        amount_cents,
                        currency,
                        outcome,
                        provider_reference,
                        reason,
                        purpose=purpose,
                        occurred_at=now,
                        refund_of=refund_of,
                        provider_transaction_id=provider_transaction_id,
                        metadata=metadata,
                    )
                    ChargeCoordinator.resolve(provider_reference, record, now)
                    subscription = load_subscription(subscription_id)
                    entry = self.apply_payment(subscription, record, now)
                    return PaymentIngestion(payment=record, subscription=subscription, transition=entry)

            except DuplicateEvent as duplicate:
                logger.info(f"🔁 [Lifecycle] Duplicate payment event {provider_reference}, returning prior result")
                return PaymentIngestion(
                    payment=duplicate.existing,
                    subscription=load_subscription(duplicate.existing.subscription_id),
                    transition=None,
                    duplicate=True,
                )
            except TransitionConflict as conflict:
                if attempt >= get_max_transition_retries():
                    raise
                logger.info(f"🔁 [Lifecycle] {conflict} while applying {provider_reference} (attempt {attempt})")

    # ===========================================================================
    # CLOCK EVALUATION
    # ===========================================================================

    def evaluate(self, subscription_id: Any, now: datetime) -> Evaluation:
        """
        Advance one subscription whose clock deadline has passed.

        Applies at most one transition. Raises TransitionConflict when the
        subscription moved under us and LifecycleInvariantViolation on bad data.
        """
        subscription = load_subscription(subscription_id)
        status = subscription.status

        if subscription.is_terminal:
            return Evaluation(subscription.pk, status)

        if status == TRIAL:
            return self._evaluate_trial(subscription, now)
        if status == ACTIVE:
            return self._evaluate_active(subscription, now)
        if status == PAST_DUE:
            return self._evaluate_past_due(subscription, now)
        return self._evaluate_grace(subscription, now)

    def _done(self, subscription_id: Any, from_status: str, entry: SubscriptionTransition) -> Evaluation:
        return Evaluation(subscription_id, from_status, to_status=entry.to_status, activity=entry.activity_type)

    def _evaluate_trial(self, subscription: Subscription, now: datetime) -> Evaluation:
        if not clock.is_trial_expired(subscription, now):
            return Evaluation(subscription.pk, TRIAL)

        if subscription.cancel_at_period_end:
            entry = self.transition(
                subscription,
                EXPIRED,
                activity="expired",
                now=now,
                reason="Cancelled at end of trial",
                changes={"ended_at": subscription.trial_end, "next_billing_date": None},
            )
            return self._done(subscription.pk, TRIAL, entry)

        if subscription.plan.amount_cents == 0 or PaymentLedger.has_settled_payment(subscription.pk):
            entry = self.transition(
                subscription,
                ACTIVE,
                activity="trial_converted",
                now=now,
                changes=self._fresh_period(subscription, subscription.trial_end),
            )
            return self._done(subscription.pk, TRIAL, entry)

        reference = f"{subscription.pk}:trial:{int(subscription.trial_end.timestamp())}"
        return self.charge_and_apply(subscription, reference, "trial_conversion", now)

    def _evaluate_active(self, subscription: Subscription, now: datetime) -> Evaluation:
        if not clock.is_period_expired(subscription, now):
            return Evaluation(subscription.pk, ACTIVE)

        if subscription.cancel_at_period_end:
            entry = self.transition(
                subscription,
                EXPIRED,
                activity="expired",
                now=now,
                reason="Cancelled at period end",
                changes={"ended_at": subscription.current_period_end, "next_billing_date": None},
            )
            return self._done(subscription.pk, ACTIVE, entry)

        if subscription.plan.amount_cents == 0:
            entry = self.transition(
                subscription, ACTIVE, activity="renewed", now=now, changes=self._rolled_period(subscription)
            )
            return self._done(subscription.pk, ACTIVE, entry)

        reference = f"{subscription.pk}:renewal:{int(subscription.current_period_end.timestamp())}"
        return self.charge_and_apply(subscription, reference, "renewal", now)

    def _evaluate_past_due(self, subscription: Subscription, now: datetime) -> Evaluation:
        from .dunning import DunningManager  # noqa: PLC0415

        dunning = DunningManager(machine=self)
        retry: Evaluation | None = None
        if clock.is_retry_due(subscription, now) and dunning.has_budget(subscription):
            retry = self.charge_and_apply(subscription, dunning.retry_reference(subscription), "retry", now)
            if retry.changed:
                return retry
            # Pending, in flight or already settled: the grace deadline still applies
            subscription = load_subscription(subscription.pk)
            if subscription.status != PAST_DUE:
                return Evaluation(subscription.pk, PAST_DUE, skipped=retry.skipped, detail=retry.detail)

        if clock.is_grace_expired(subscription, now):
            entry = dunning.escalate(subscription, now, activity="grace_period_started", reason="Grace window elapsed")
            return self._done(subscription.pk, PAST_DUE, entry)

        return retry or Evaluation(subscription.pk, PAST_DUE)

    def _evaluate_grace(self, subscription: Subscription, now: datetime) -> Evaluation:
        if not clock.is_grace_expired(subscription, now):
            return Evaluation(subscription.pk, GRACE_PERIOD)

        entry = self.transition(
            subscription,
            CANCELLED,
            activity="cancelled",
            now=now,
            reason="Grace period elapsed without payment",
            changes={
                "cancelled_at": now,
                "ended_at": now,
                "cancellation_reason": "non_payment",
                "next_retry_at": None,
                "next_billing_date": None,
            },
        )
        return self._done(subscription.pk, GRACE_PERIOD, entry)

    def charge_and_apply(self, subscription: Subscription, reference: str, purpose: str, now: datetime) -> Evaluation:
        from_status = subscription.status
        outcome = self.charges.charge(subscription, reference, purpose, now)

        if outcome.status in (OUTCOME_PENDING, OUTCOME_IN_FLIGHT):
            return Evaluation(subscription.pk, from_status, skipped=True, detail=outcome.status)
        if outcome.status == OUTCOME_ALREADY_RESOLVED:
            return Evaluation(subscription.pk, from_status, detail=outcome.status)

        ingestion = self.ingest_payment(
            subscription.pk,
            outcome.amount_cents,
            outcome.currency,
            outcome.payment_outcome,
            reference,
            now=now,
            reason=outcome.failure_reason,
            purpose=purpose,
            provider_transaction_id=outcome.provider_transaction_id,
        )
        if ingestion.transition is None:
            return Evaluation(subscription.pk, from_status, detail="recorded")
        return self._done(subscription.pk, from_status, ingestion.transition)

    # ===========================================================================
    # ADMINISTRATIVE CANCELLATION
    # ===========================================================================

    def cancel(
        self,
        subscription_id: Any,
        now: datetime,
        *,
        reason: str = "admin_request",
        note: str = "",
        at_period_end: bool = False,
    ) -> Subscription:
        """
        Cancel from any non-terminal state, independent of the clock.

        Terminal subscriptions are returned unchanged. With `at_period_end`
        the subscription keeps access and ends as EXPIRED when its period
        (or trial) runs out.
        """
        if reason not in dict(Subscription.CANCELLATION_REASON_CHOICES):
            raise ValidationError(f"Unknown cancellation reason: {reason}")

        attempt = 0
        while True:
            attempt += 1
            subscription = load_subscription(subscription_id)
            if subscription.is_terminal:
                return subscription
            try:
                with transaction.atomic():
                    if at_period_end:
                        if subscription.status not in (TRIAL, ACTIVE):
                            raise ValidationError(
                                "Only trial or active subscriptions can be cancelled at period end"
                            )
                        self._update_flags(
                            subscription,
                            now,
                            cancel_at_period_end=True,
                            cancellation_reason=reason,
                            cancellation_note=note,
                        )
                        logger.info(f"📅 [Lifecycle] Subscription {subscription.pk} will end at period end")
                        return subscription

                    self.transition(
                        subscription,
                        CANCELLED,
                        activity="cancelled",
                        now=now,
                        reason=note or reason,
                        changes={
                            "cancelled_at": now,
                            "ended_at": now,
                            "cancellation_reason": reason,
                            "cancellation_note": note,
                            "next_retry_at": None,
                            "next_billing_date": None,
                        },
                    )
                    return subscription
            except TransitionConflict:
                if attempt >= get_max_transition_retries():
                    raise
