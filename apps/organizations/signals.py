"""
Organization Status Gate signal handlers.

The gate is told about terminal billing outcomes so it can revoke tenant
access. It never feeds back into billing and never flips the administrative
status: billing loss of access is derived from the subscription state.
"""

import logging
from typing import Any

from django.dispatch import receiver

from apps.billing.signals import subscription_status_changed
from apps.common.validators import log_security_event

logger = logging.getLogger(__name__)

# Billing states after which the tenant loses (or is about to lose) access
ACCESS_AFFECTING_STATES = frozenset({"grace_period", "cancelled", "expired"})


@receiver(subscription_status_changed)
def handle_subscription_status_changed(
    sender: Any, subscription: Any, from_status: str, to_status: str, reason: str = "", **kwargs: Any
) -> None:
    """Record billing-driven access changes for the organization."""
    if to_status not in ACCESS_AFFECTING_STATES:
        if from_status in ACCESS_AFFECTING_STATES:
            logger.info(
                f"🏢 [Organizations] Billing access restored for {subscription.organization_id} "
                f"({from_status} -> {to_status})"
            )
        return

    event_type = "organization_access_degraded" if to_status == "grace_period" else "organization_access_revoked"
    log_security_event(
        event_type=event_type,
        details={
            "organization_id": str(subscription.organization_id),
            "subscription_id": str(subscription.id),
            "from_status": from_status,
            "to_status": to_status,
            "reason": reason,
        },
    )
    logger.warning(
        f"🏢 [Organizations] Billing {to_status} for organization {subscription.organization_id}: {reason or '-'}"
    )
