"""Billing background tasks.

Django-Q2 tasks that drive the subscription lifecycle: the periodic sweep
that advances subscriptions past their deadlines, and reconciliation of
charges whose provider outcome was not observed.
"""

from __future__ import annotations

import logging
from typing import Any

from django_q.tasks import async_task

from apps.billing.config import get_reconcile_after_minutes, get_sweep_interval_minutes
from apps.billing.subscription_service import BillingEngine

logger = logging.getLogger(__name__)

# Task configuration
TASK_SOFT_TIME_LIMIT = 300  # 5 minutes
TASK_TIME_LIMIT = 600  # 10 minutes

SWEEP_SCHEDULE_NAME = "billing_lifecycle_sweep"
RECONCILE_SCHEDULE_NAME = "billing_reconcile_pending_charges"


def run_lifecycle_sweep() -> dict[str, Any]:
    """
    Advance every subscription whose trial, period, retry or grace deadline passed.

    Returns:
        Dictionary with the sweep counters
    """
    logger.info("🧹 [Lifecycle] Starting lifecycle sweep")

    try:
        result = BillingEngine.trigger_lifecycle_check()
    except Exception as e:
        logger.exception(f"💥 [Lifecycle] Sweep aborted: {e}")
        return {"success": False, "error": str(e)}

    summary = result.as_dict()
    if result.errors:
        logger.warning(f"⚠️ [Lifecycle] Sweep finished with {len(result.errors)} errors")
    logger.info(
        f"✅ [Lifecycle] Sweep done: scanned={result.scanned} transitioned={result.transitioned} "
        f"cancelled={result.cancelled_count} expired={result.expired_count} warnings={result.warnings_count}"
    )
    return {"success": True, **summary}


def reconcile_pending_charges() -> dict[str, Any]:
    """
    Ask the payment provider for the outcome of charges left pending by a
    timeout or network failure, and apply whatever it reports.
    """
    logger.info("🔎 [Billing] Reconciling pending charges")

    try:
        stats = BillingEngine.reconcile_pending_charges()
    except Exception as e:
        logger.exception(f"💥 [Billing] Reconciliation aborted: {e}")
        return {"success": False, "error": str(e)}

    logger.info(f"✅ [Billing] Reconciliation done: resolved={stats['resolved']} errors={stats['errors']}")
    return {"success": True, **stats}


def schedule_billing_tasks() -> dict[str, Any]:
    """Create or update the recurring Django-Q2 schedules for billing."""
    from django_q.models import Schedule  # noqa: PLC0415

    sweep_minutes = get_sweep_interval_minutes()
    reconcile_minutes = get_reconcile_after_minutes()

    Schedule.objects.update_or_create(
        name=SWEEP_SCHEDULE_NAME,
        defaults={
            "func": "apps.billing.tasks.run_lifecycle_sweep",
            "schedule_type": Schedule.MINUTES,
            "minutes": sweep_minutes,
            "repeats": -1,
        },
    )
    Schedule.objects.update_or_create(
        name=RECONCILE_SCHEDULE_NAME,
        defaults={
            "func": "apps.billing.tasks.reconcile_pending_charges",
            "schedule_type": Schedule.MINUTES,
            "minutes": reconcile_minutes,
            "repeats": -1,
        },
    )

    logger.info(
        f"📅 [Billing] Scheduled lifecycle sweep every {sweep_minutes}m "
        f"and reconciliation every {reconcile_minutes}m"
    )
    return {
        "success": True,
        "schedules": [SWEEP_SCHEDULE_NAME, RECONCILE_SCHEDULE_NAME],
        "sweep_interval_minutes": sweep_minutes,
        "reconcile_interval_minutes": reconcile_minutes,
    }


# ===============================================================================
# ASYNC WRAPPERS
# ===============================================================================


def run_lifecycle_sweep_async() -> str:
    """Queue a lifecycle sweep (async wrapper)"""
    return async_task("apps.billing.tasks.run_lifecycle_sweep", timeout=TASK_TIME_LIMIT)


def reconcile_pending_charges_async() -> str:
    """Queue charge reconciliation (async wrapper)"""
    return async_task("apps.billing.tasks.reconcile_pending_charges", timeout=TASK_SOFT_TIME_LIMIT)
