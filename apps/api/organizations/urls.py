# ===============================================================================
# ORGANIZATION API URLS 🏢
# ===============================================================================

from django.urls import path

from . import views

app_name = 'api_organizations'

urlpatterns = [
    path('', views.organizations_api, name='organizations'),
    path('stats/', views.organization_stats_api, name='organization_stats'),
    path('<uuid:organization_id>/', views.organization_detail_api, name='organization_detail'),
    path(
        '<uuid:organization_id>/subscription-status/',
        views.organization_subscription_status_api,
        name='organization_subscription_status',
    ),
    path('<uuid:organization_id>/enable/', views.organization_enable_api, name='organization_enable'),
    path('<uuid:organization_id>/disable/', views.organization_disable_api, name='organization_disable'),
]
