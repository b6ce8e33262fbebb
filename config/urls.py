"""
URL configuration for the billing platform
"""

from django.urls import include, path

# ===============================================================================
# MAIN URL PATTERNS
# ===============================================================================

urlpatterns = [
    # REST API (staff billing administration + provider webhooks)
    path("api/", include("apps.api.urls")),
]
