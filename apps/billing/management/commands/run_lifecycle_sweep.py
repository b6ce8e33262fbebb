"""
Management command for running the subscription lifecycle sweep.

Usage:
    python manage.py run_lifecycle_sweep
    python manage.py run_lifecycle_sweep --reconcile   # resolve pending charges first
    python manage.py run_lifecycle_sweep --at 2026-05-01T00:00:00+00:00
"""

from __future__ import annotations

import logging
from typing import Any

from django.core.management.base import BaseCommand, CommandError, CommandParser
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from apps.billing.subscription_service import BillingEngine

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    """Advance subscriptions whose lifecycle deadlines have passed."""

    help = "Run the subscription lifecycle sweep once"

    def add_arguments(self, parser: CommandParser) -> None:
        parser.add_argument(
            "--at",
            type=str,
            help="Evaluate as of this ISO datetime instead of now",
        )
        parser.add_argument(
            "--reconcile",
            action="store_true",
            help="Reconcile pending provider charges before sweeping",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        now = timezone.now()
        if options["at"]:
            parsed = parse_datetime(options["at"])
            if parsed is None:
                raise CommandError(f"Invalid datetime: {options['at']}")
            now = parsed if timezone.is_aware(parsed) else timezone.make_aware(parsed)

        if options["reconcile"]:
            stats = BillingEngine.reconcile_pending_charges(now=now)
            self.stdout.write(f"Reconciled charges: resolved={stats['resolved']} errors={stats['errors']}")

        result = BillingEngine.trigger_lifecycle_check(now=now)

        self.stdout.write(
            self.style.HTTP_INFO(
                f"\n{'='*60}\n"
                f"Lifecycle sweep at {now.isoformat()}\n"
                f"{'='*60}"
            )
        )
        for key, value in result.as_dict().items():
            if key != "errors":
                self.stdout.write(f"  {key}: {value}")

        if result.errors:
            for error in result.errors:
                self.stderr.write(self.style.ERROR(f"  {error}"))
            self.stdout.write(self.style.WARNING(f"\nWARNING: {len(result.errors)} subscriptions failed."))
        else:
            self.stdout.write(self.style.SUCCESS("\nSweep completed successfully."))
