"""
Dunning / retry manager.

Decides whether and when a failed payment is retried. Retries back off
exponentially from the plan's base delay, capped by the plan's maximum delay
and attempt count. Once the attempt budget is spent the subscription is
forced into grace (or straight to cancellation when the plan has no grace).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from django.core.exceptions import ValidationError

from . import clock
from .exceptions import RetryBudgetExhausted
from .models import PaymentRecord, Plan, Subscription, SubscriptionTransition
from .state_machine import (
    ACTIVE,
    CANCELLED,
    GRACE_PERIOD,
    PAST_DUE,
    TRIAL,
    Evaluation,
    SubscriptionStateMachine,
    load_subscription,
)

logger = logging.getLogger(__name__)


class DunningManager:
    """Retry scheduling and escalation for failed payments."""

    def __init__(self, machine: SubscriptionStateMachine | None = None) -> None:
        self.machine = machine or SubscriptionStateMachine()

    # ===========================================================================
    # POLICY
    # ===========================================================================

    @staticmethod
    def backoff_delay(plan: Plan, failed_count: int) -> timedelta:
        """base * 2^(failed_count - 1), capped at the plan's maximum delay."""
        exponent = max(0, failed_count - 1)
        hours = min(plan.effective_retry_base_delay_hours * (2**exponent), plan.effective_retry_max_delay_hours)
        return timedelta(hours=hours)

    @classmethod
    def schedule_next_retry(cls, plan: Plan, failed_count: int, now: datetime) -> datetime | None:
        """When to retry after `failed_count` failures; None once the budget is spent."""
        if failed_count >= plan.effective_max_retry_attempts:
            return None
        return now + cls.backoff_delay(plan, failed_count)

    @staticmethod
    def has_budget(subscription: Subscription) -> bool:
        return subscription.failed_payment_count < subscription.plan.effective_max_retry_attempts

    @staticmethod
    def retry_reference(subscription: Subscription) -> str:
        """
        Shared by automatic and manual retries so the two collapse into one charge.

        Keyed by the unpaid period's end as well as the attempt number: a
        recovery starts a new period, so the next dunning cycle never reuses
        a reference that was already charged.
        """
        cycle = int(subscription.current_period_end.timestamp())
        return f"{subscription.pk}:retry:{cycle}:{subscription.failed_payment_count}"

    # ===========================================================================
    # FAILURE HANDLING
    # ===========================================================================

    def on_payment_failure(
        self,
        subscription: Subscription | Any,
        reason: str,
        now: datetime,
        *,
        payment: PaymentRecord | None = None,
    ) -> SubscriptionTransition:
        """
        Count a failed payment and move the subscription accordingly.

        trial/active -> past_due with the first retry scheduled and the grace
        deadline set; past_due -> past_due with the next retry, or escalation
        when the budget is spent; grace_period records the failure in place.
        """
        if not isinstance(subscription, Subscription):
            subscription = load_subscription(subscription)

        plan = subscription.plan
        failed_count = subscription.failed_payment_count + 1
        next_retry_at = self.schedule_next_retry(plan, failed_count, now)
        status = subscription.status

        logger.warning(
            f"💸 [Dunning] Payment failure #{failed_count} for subscription {subscription.pk}: {reason or '-'}"
        )

        if status in (TRIAL, ACTIVE):
            return self.machine.transition(
                subscription,
                PAST_DUE,
                activity="payment_failed",
                now=now,
                reason=reason,
                payment=payment,
                changes={
                    "failed_payment_count": failed_count,
                    "next_retry_at": next_retry_at,
                    "grace_period_ends_at": clock.grace_deadline(now, plan.effective_grace_period_days),
                },
            )

        if status == PAST_DUE and next_retry_at is None:
            exhausted = RetryBudgetExhausted(subscription.pk, failed_count)
            logger.warning(f"🧾 [Dunning] {exhausted}")
            return self.escalate(
                subscription,
                now,
                activity="retry_budget_exhausted",
                reason=str(exhausted),
                payment=payment,
                failed_count=failed_count,
            )

        return self.machine.transition(
            subscription,
            status,
            activity="payment_failed",
            now=now,
            reason=reason,
            payment=payment,
            changes={
                "failed_payment_count": failed_count,
                "next_retry_at": next_retry_at if status == PAST_DUE else None,
            },
        )

    def escalate(
        self,
        subscription: Subscription,
        now: datetime,
        *,
        activity: str,
        reason: str,
        payment: PaymentRecord | None = None,
        failed_count: int | None = None,
    ) -> SubscriptionTransition:
        """past_due -> grace_period, or -> cancelled when the plan has no grace window."""
        grace_days = subscription.plan.effective_grace_period_days
        changes: dict[str, Any] = {"next_retry_at": None}
        if failed_count is not None:
            changes["failed_payment_count"] = failed_count

        if grace_days == 0:
            changes.update(
                cancelled_at=now,
                ended_at=now,
                next_billing_date=None,
                cancellation_reason=(
                    "retry_budget_exhausted" if activity == "retry_budget_exhausted" else "non_payment"
                ),
            )
            return self.machine.transition(
                subscription, CANCELLED, activity=activity, now=now, reason=reason, payment=payment, changes=changes
            )

        changes["grace_period_ends_at"] = clock.grace_deadline(now, grace_days)
        return self.machine.transition(
            subscription, GRACE_PERIOD, activity=activity, now=now, reason=reason, payment=payment, changes=changes
        )

    # ===========================================================================
    # RETRIES
    # ===========================================================================

    def retry_due(self, subscription: Subscription, now: datetime) -> bool:
        return (
            subscription.status == PAST_DUE
            and clock.is_retry_due(subscription, now)
            and self.has_budget(subscription)
        )

    def retry_now(self, subscription_id: Any, now: datetime) -> Evaluation:
        """
        Charge a failed subscription immediately, ignoring backoff.

        Raises:
            ValidationError: the subscription has nothing to retry
            RetryBudgetExhausted: no attempts left
        """
        subscription = load_subscription(subscription_id)
        if subscription.status not in (PAST_DUE, GRACE_PERIOD):
            raise ValidationError(f"Subscription is {subscription.status}; there is no failed payment to retry")
        if not self.has_budget(subscription):
            raise RetryBudgetExhausted(subscription.pk, subscription.failed_payment_count)

        logger.info(f"🔁 [Dunning] Manual retry for subscription {subscription.pk}")
        return self.machine.charge_and_apply(subscription, self.retry_reference(subscription), "retry", now)
