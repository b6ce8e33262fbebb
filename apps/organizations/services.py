"""
Organization Status Gate services.

Enable/disable are administrative actions keyed by organization id and are
idempotent: repeating one returns the organization unchanged.
"""

from __future__ import annotations

import logging
from typing import Any

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from apps.common.types import Err, Ok, Result
from apps.common.validators import log_security_event

from .models import Organization

logger = logging.getLogger(__name__)


class OrganizationService:
    """Administrative enable/disable of tenant access."""

    @staticmethod
    def _get(organization_id: Any) -> Organization | None:
        try:
            return Organization.objects.select_for_update().get(pk=organization_id)
        except (Organization.DoesNotExist, ValidationError, ValueError, TypeError):
            # malformed UUID
            return None

    @staticmethod
    def enable_organization(organization_id: Any, user: Any = None) -> Result[Organization, str]:
        """Lift an administrative suspension."""
        try:
            with transaction.atomic():
                organization = OrganizationService._get(organization_id)
                if organization is None:
                    return Err(f"Organization {organization_id} not found")

                if not organization.is_suspended:
                    return Ok(organization)

                organization.status = Organization.STATUS_ACTIVE
                organization.suspension_reason = ""
                organization.suspended_at = None
                organization.suspended_by = None
                organization.save(
                    update_fields=["status", "suspension_reason", "suspended_at", "suspended_by", "updated_at"]
                )

                log_security_event(
                    event_type="organization_enabled",
                    details={"organization_id": str(organization.id), "name": organization.name},
                    user_email=getattr(user, "email", None),
                )
                logger.info(f"🏢 [Organizations] Enabled {organization.name}")
                return Ok(organization)

        except Exception as e:
            logger.exception(f"Failed to enable organization {organization_id}: {e}")
            return Err(f"Failed to enable organization: {e}")

    @staticmethod
    def disable_organization(organization_id: Any, reason: str, user: Any = None) -> Result[Organization, str]:
        """Suspend tenant access. Billing status is left untouched."""
        if not reason or not reason.strip():
            return Err("A suspension reason is required")

        try:
            with transaction.atomic():
                organization = OrganizationService._get(organization_id)
                if organization is None:
                    return Err(f"Organization {organization_id} not found")

                if organization.is_suspended:
                    return Ok(organization)

                organization.status = Organization.STATUS_SUSPENDED
                organization.suspension_reason = reason.strip()
                organization.suspended_at = timezone.now()
                organization.suspended_by = user if getattr(user, "pk", None) else None
                organization.save(
                    update_fields=["status", "suspension_reason", "suspended_at", "suspended_by", "updated_at"]
                )

                log_security_event(
                    event_type="organization_disabled",
                    details={
                        "organization_id": str(organization.id),
                        "name": organization.name,
                        "reason": organization.suspension_reason,
                    },
                    user_email=getattr(user, "email", None),
                )
                logger.warning(f"🏢 [Organizations] Disabled {organization.name}: {organization.suspension_reason}")
                return Ok(organization)

        except Exception as e:
            logger.exception(f"Failed to disable organization {organization_id}: {e}")
            return Err(f"Failed to disable organization: {e}")
