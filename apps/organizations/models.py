"""
Organization models for the billing platform
The tenant being billed. Administrative access status is kept separate
from billing status, which is owned by the subscription.
"""

from __future__ import annotations

import uuid
from typing import Any, ClassVar

from django.conf import settings
from django.db import models
from django.utils.translation import gettext_lazy as _

# Access levels exposed to the tenant-facing gate
ACCESS_FULL = "full"
ACCESS_READ_ONLY = "read_only"
ACCESS_NONE = "none"


class Organization(models.Model):
    """
    Tenant organization.

    `status` is the administrative axis (enable/disable by staff). Billing state
    lives on the organization's live subscription and never writes here.
    """

    STATUS_ACTIVE = "active"
    STATUS_SUSPENDED = "suspended"

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (STATUS_ACTIVE, _("Active")),
        (STATUS_SUSPENDED, _("Suspended")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200, help_text=_("Display name"))
    email = models.EmailField(blank=True, help_text=_("Billing contact email"))

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_ACTIVE,
        db_index=True,
    )
    suspension_reason = models.TextField(blank=True)
    suspended_at = models.DateTimeField(null=True, blank=True)
    suspended_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="suspended_organizations",
    )

    customer_code = models.CharField(
        max_length=100,
        blank=True,
        db_index=True,
        help_text=_("Payment provider customer identifier"),
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "organizations"
        verbose_name = _("Organization")
        verbose_name_plural = _("Organizations")
        ordering = ("name",)
        indexes = (models.Index(fields=["status", "created_at"], name="org_status_created_idx"),)

    def __str__(self) -> str:
        return f"{self.name} ({self.status})"

    @property
    def is_suspended(self) -> bool:
        return self.status == self.STATUS_SUSPENDED

    @property
    def live_subscription(self) -> Any:
        """The organization's single live subscription, if any."""
        from apps.billing.models import Subscription  # noqa: PLC0415

        return (
            Subscription.objects.select_related("plan")
            .filter(organization=self, status__in=Subscription.LIVE_STATUSES)
            .first()
        )

    @property
    def access_level(self) -> str:
        """Combine the administrative gate with the billing state."""
        if self.is_suspended:
            return ACCESS_NONE
        subscription = self.live_subscription
        if subscription is None:
            return ACCESS_NONE
        if subscription.status == subscription.STATUS_GRACE_PERIOD:
            return ACCESS_READ_ONLY
        return ACCESS_FULL

    @property
    def is_enabled(self) -> bool:
        return self.access_level != ACCESS_NONE
