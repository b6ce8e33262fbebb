"""
Management command that configures the recurring billing tasks in Django-Q2.

Usage:
    python manage.py setup_billing_schedules
"""

from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand

from apps.billing.tasks import schedule_billing_tasks


class Command(BaseCommand):
    help = "Create or update the lifecycle sweep and reconciliation schedules"

    def handle(self, *args: Any, **options: Any) -> None:
        try:
            result = schedule_billing_tasks()
        except Exception as e:
            self.stderr.write(self.style.ERROR(f"Failed to setup schedules: {e}"))
            return

        self.stdout.write(
            self.style.SUCCESS(f"Created lifecycle sweep schedule ({result['sweep_interval_minutes']}m)")
        )
        self.stdout.write(
            self.style.SUCCESS(f"Created charge reconciliation schedule ({result['reconcile_interval_minutes']}m)")
        )
        self.stdout.write(
            self.style.SUCCESS(
                "\nAll scheduled tasks configured successfully!\n"
                "Run 'python manage.py qcluster' to start the task worker."
            )
        )
