"""
Django app configuration for Organizations app
"""

from django.apps import AppConfig


class OrganizationsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.organizations"
    verbose_name = "Organizations"

    def ready(self) -> None:
        """Connect the status gate to billing lifecycle signals."""
        from . import signals  # noqa: F401, PLC0415
