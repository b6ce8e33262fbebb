"""
Billing lifecycle exceptions.

Input problems use Django's ValidationError; everything here describes
something that happened while applying a billing event.
"""

from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """Base class for billing lifecycle errors"""


class DuplicateEvent(BillingError):
    """A provider reference was already recorded. Carries the existing record."""

    def __init__(self, existing: Any, message: str = "") -> None:
        self.existing = existing
        super().__init__(message or f"Payment reference {getattr(existing, 'provider_reference', '?')} already recorded")


class TransitionConflict(BillingError):
    """The subscription changed underneath a transition (version mismatch)."""

    def __init__(self, subscription_id: Any, expected_version: int) -> None:
        self.subscription_id = subscription_id
        self.expected_version = expected_version
        super().__init__(f"Subscription {subscription_id} moved past version {expected_version}")


class ProviderError(BillingError):
    """The payment provider rejected a charge or refund."""

    def __init__(self, message: str, provider_code: str = "") -> None:
        self.provider_code = provider_code
        super().__init__(message)


class RetryBudgetExhausted(BillingError):
    """No further dunning retries are allowed for this subscription."""

    def __init__(self, subscription_id: Any, attempts: int) -> None:
        self.subscription_id = subscription_id
        self.attempts = attempts
        super().__init__(f"Subscription {subscription_id} used all {attempts} payment attempts")


class LifecycleInvariantViolation(BillingError):
    """Persisted data breaks a lifecycle invariant. Never auto-repaired."""
