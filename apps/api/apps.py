# ===============================================================================
# API APP CONFIGURATION 🛠️
# ===============================================================================

from django.apps import AppConfig


class ApiConfig(AppConfig):
    """
    REST endpoints for billing administration:
    - Plans, subscriptions, payments and lifecycle sweeps
    - Dashboard, tab counts, activity feed and analytics
    - Organization status gate
    - Payment provider webhooks
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.api"
    label = "billing_api"
    verbose_name = "Billing API"
