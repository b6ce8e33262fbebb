# ===============================================================================
# BILLING API URLS - SUBSCRIPTION LIFECYCLE ENDPOINTS 💳
# ===============================================================================

from django.urls import path

from . import views

app_name = 'api_billing'

urlpatterns = [
    # Dashboard & analytics
    path('dashboard/', views.dashboard_stats_api, name='dashboard_stats'),
    path('tab-counts/', views.tab_counts_api, name='tab_counts'),
    path('lifecycle-stats/', views.lifecycle_stats_api, name='lifecycle_stats'),
    path('activity/', views.recent_activity_api, name='recent_activity'),
    path('analytics/', views.analytics_api, name='analytics'),

    # Plans
    path('plans/', views.plans_api, name='plans'),
    path('plans/<uuid:plan_id>/', views.plan_detail_api, name='plan_detail'),

    # Subscriptions
    path('subscriptions/', views.subscriptions_api, name='subscriptions'),
    path('subscriptions/<uuid:subscription_id>/cancel/', views.subscription_cancel_api, name='subscription_cancel'),
    path(
        'organizations/<uuid:organization_id>/subscription/',
        views.organization_subscription_create_api,
        name='organization_subscription_create',
    ),
    path('lifecycle-check/', views.lifecycle_check_api, name='lifecycle_check'),

    # Payments
    path('payments/', views.payments_api, name='payments'),
    path('payments/failed/', views.failed_payments_api, name='failed_payments'),
    path('payments/<uuid:payment_id>/retry/', views.payment_retry_api, name='payment_retry'),
    path('payments/<uuid:payment_id>/refund/', views.payment_refund_api, name='payment_refund'),

    # Provider webhooks
    path('webhooks/stripe/', views.stripe_webhook_api, name='stripe_webhook'),
]
