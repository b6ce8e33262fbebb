"""
Lifecycle sweeper.

Periodic scan that advances every live subscription whose clock deadline
has passed. Each subscription is evaluated on its own: a version race, an
in-flight charge or an invariant violation on one row is counted and the
scan moves on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from django.db.models import Q

from .config import get_expiry_warning_days
from .exceptions import LifecycleInvariantViolation, TransitionConflict
from .models import Subscription
from .state_machine import (
    ACTIVE,
    CANCELLED,
    EXPIRED,
    GRACE_PERIOD,
    PAST_DUE,
    TRIAL,
    Evaluation,
    SubscriptionStateMachine,
)

logger = logging.getLogger(__name__)

# Statuses counted as "expired" in sweep results: the tenant lost paid standing
_EXPIRED_COUNT_STATES = frozenset({PAST_DUE, GRACE_PERIOD, EXPIRED})
_TERMINAL_STATES = frozenset({CANCELLED, EXPIRED})

# Bound on transitions applied to one subscription per sweep
MAX_STEPS_PER_SUBSCRIPTION = 24


@dataclass
class SweepResult:
    scanned: int = 0
    transitioned: int = 0
    expired_count: int = 0
    cancelled_count: int = 0
    warnings_count: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "transitioned": self.transitioned,
            "expired_count": self.expired_count,
            "cancelled_count": self.cancelled_count,
            "warnings_count": self.warnings_count,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "errors": list(self.errors),
        }


def due_subscriptions_query(now: datetime) -> Q:
    """Live subscriptions whose next relevant deadline is <= now."""
    return (
        Q(status=TRIAL, trial_end__lte=now)
        | Q(status=ACTIVE, current_period_end__lte=now)
        | Q(status=PAST_DUE, grace_period_ends_at__lte=now)
        | Q(status=PAST_DUE, next_retry_at__lte=now)
        | Q(status=GRACE_PERIOD, grace_period_ends_at__lte=now)
    )


def expiring_soon_query(now: datetime, days: int) -> Q:
    """Live subscriptions with a deadline inside (now, now + days]."""
    horizon = now + timedelta(days=days)
    return (
        Q(status=TRIAL, trial_end__gt=now, trial_end__lte=horizon)
        | Q(status=ACTIVE, current_period_end__gt=now, current_period_end__lte=horizon)
        | Q(status__in=[PAST_DUE, GRACE_PERIOD], grace_period_ends_at__gt=now, grace_period_ends_at__lte=horizon)
    )


class LifecycleSweeper:
    """Runs the state machine over every due subscription."""

    def __init__(self, machine: SubscriptionStateMachine | None = None) -> None:
        self.machine = machine or SubscriptionStateMachine()

    def sweep(self, now: datetime) -> SweepResult:
        """
        Bring every due subscription up to date with `now`.

        Each subscription is re-evaluated until it stops changing, so a second
        sweep at the same instant finds nothing to do. A subscription several
        periods behind catches up in one run, bounded by MAX_STEPS_PER_SUBSCRIPTION.

        Safe to run concurrently with itself and with webhook handling: every
        transition is version-guarded and charges are claimed per reference.
        """
        result = SweepResult()
        due_ids = list(
            Subscription.objects.filter(due_subscriptions_query(now))
            .order_by("pk")
            .values_list("pk", flat=True)
        )
        logger.info(f"🧹 [Sweeper] {len(due_ids)} subscriptions due at {now.isoformat()}")

        for subscription_id in due_ids:
            result.scanned += 1
            steps: list[Evaluation] = []
            try:
                self._advance(subscription_id, now, steps)
            except TransitionConflict as e:
                result.conflicts += 1
                logger.info(f"⏭️ [Sweeper] Skipping stale subscription {subscription_id}: {e}")
            except LifecycleInvariantViolation as e:
                result.errors.append(f"{subscription_id}: {e}")
            except Exception as e:
                logger.exception(f"🔥 [Sweeper] Failed to evaluate subscription {subscription_id}: {e}")
                result.errors.append(f"{subscription_id}: {e}")
            self._tally(result, steps)

        result.warnings_count = Subscription.objects.filter(
            expiring_soon_query(now, get_expiry_warning_days())
        ).count()

        logger.info(
            f"✅ [Sweeper] scanned={result.scanned} transitioned={result.transitioned} "
            f"expired={result.expired_count} cancelled={result.cancelled_count} "
            f"skipped={result.skipped} conflicts={result.conflicts} errors={len(result.errors)}"
        )
        return result

    def _advance(self, subscription_id: Any, now: datetime, steps: list[Evaluation]) -> None:
        """Evaluate until nothing changes; progress is appended to `steps` as it happens."""
        for _step in range(MAX_STEPS_PER_SUBSCRIPTION):
            evaluation = self.machine.evaluate(subscription_id, now)
            steps.append(evaluation)
            if evaluation.skipped or not evaluation.changed or evaluation.to_status in _TERMINAL_STATES:
                return
        logger.warning(
            f"⚠️ [Sweeper] Subscription {subscription_id} still due after "
            f"{MAX_STEPS_PER_SUBSCRIPTION} steps, continuing next sweep"
        )

    @staticmethod
    def _tally(result: SweepResult, steps: list[Evaluation]) -> None:
        if steps and steps[-1].skipped:
            result.skipped += 1
        changed = [step for step in steps if step.changed]
        if not changed:
            return

        result.transitioned += 1
        from_status, to_status = changed[0].from_status, changed[-1].to_status
        if to_status == CANCELLED:
            result.cancelled_count += 1
        elif to_status in _EXPIRED_COUNT_STATES and to_status != from_status:
            result.expired_count += 1
