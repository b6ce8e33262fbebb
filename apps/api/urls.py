# ===============================================================================
# API MAIN URLS 🚀
# ===============================================================================
#
# URL Structure:
#   /api/billing/        → Plans, subscriptions, payments, dashboards, webhooks
#   /api/organizations/  → Tenant status gate and per-organization billing view
#

from django.urls import include, path

from .billing import urls as billing_urls
from .organizations import urls as organization_urls

app_name = 'api'

urlpatterns = [
    path('billing/', include((billing_urls, 'billing'), namespace='billing')),
    path('organizations/', include((organization_urls, 'organizations'), namespace='organizations')),
]
