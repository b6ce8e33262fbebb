"""
Centralized billing configuration.

All billing-related constants and configuration should be defined here
to ensure DRY compliance and easy maintenance. Values are read from Django
settings on each call so tests can override them.
"""

import logging

from django.conf import settings

logger = logging.getLogger(__name__)

# ===============================================================================
# HELPER: SAFE VALUE PARSING
# ===============================================================================


def _get_positive_int(setting_name: str, default: int) -> int:
    """Get a positive integer from settings with validation."""
    value = getattr(settings, setting_name, default)
    try:
        result = int(value)
    except (TypeError, ValueError):
        result = default
    return max(1, result)  # Ensure at least 1


def _get_non_negative_int(setting_name: str, default: int) -> int:
    """Get an integer >= 0 from settings (zero is a meaningful value)."""
    value = getattr(settings, setting_name, default)
    try:
        result = int(value)
    except (TypeError, ValueError):
        result = default
    return max(0, result)


# ===============================================================================
# CURRENCY
# ===============================================================================


def get_default_currency() -> str:
    return (getattr(settings, "BILLING_DEFAULT_CURRENCY", "NGN") or "NGN").upper()


# ===============================================================================
# DUNNING DEFAULTS (plans may override each of these)
# ===============================================================================


def get_grace_period_days() -> int:
    """Days between the first failed renewal and the grace-period step. Zero skips grace."""
    return _get_non_negative_int("BILLING_GRACE_PERIOD_DAYS", 7)


def get_retry_base_delay_hours() -> int:
    return _get_positive_int("BILLING_RETRY_BASE_DELAY_HOURS", 24)


def get_retry_max_delay_hours() -> int:
    return _get_positive_int("BILLING_RETRY_MAX_DELAY_HOURS", 168)


def get_max_retry_attempts() -> int:
    return _get_positive_int("BILLING_MAX_RETRY_ATTEMPTS", 4)


# ===============================================================================
# LIFECYCLE SWEEP
# ===============================================================================


def get_sweep_interval_minutes() -> int:
    return _get_positive_int("BILLING_SWEEP_INTERVAL_MINUTES", 5)


def get_expiry_warning_days() -> int:
    """Live subscriptions with a deadline inside this window count as warnings."""
    return _get_positive_int("BILLING_EXPIRY_WARNING_DAYS", 7)


def get_max_transition_retries() -> int:
    """Re-read/re-apply attempts for a payment event that lost a version race."""
    return _get_positive_int("BILLING_MAX_TRANSITION_RETRIES", 3)


# ===============================================================================
# PAYMENT PROVIDER
# ===============================================================================


def get_payment_gateway_name() -> str:
    return getattr(settings, "BILLING_PAYMENT_GATEWAY", "stripe") or "stripe"


def get_provider_timeout_seconds() -> int:
    return _get_positive_int("BILLING_PROVIDER_TIMEOUT_SECONDS", 30)


def get_reconcile_after_minutes() -> int:
    """How long an unresolved charge waits before the provider is queried."""
    return _get_positive_int("BILLING_RECONCILE_AFTER_MINUTES", 15)


# ===============================================================================
# READ SIDE
# ===============================================================================


def get_activity_max_limit() -> int:
    return _get_positive_int("BILLING_ACTIVITY_MAX_LIMIT", 100)
