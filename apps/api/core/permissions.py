# ===============================================================================
# API PERMISSIONS CLASSES 🔐
# ===============================================================================

from typing import Any

from django.http import HttpRequest
from rest_framework import permissions


class IsBillingAdmin(permissions.BasePermission):
    """
    Billing administration is restricted to authenticated staff users.
    Tenants never call these endpoints; they only see the enabled/disabled gate.
    """

    message = "Billing administration requires a staff account."

    def has_permission(self, request: HttpRequest, view: Any) -> bool:
        user = getattr(request, "user", None)
        return bool(user and user.is_authenticated and user.is_staff)
