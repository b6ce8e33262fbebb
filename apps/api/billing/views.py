# ===============================================================================
# BILLING API VIEWS - SUBSCRIPTION LIFECYCLE ADMINISTRATION 💳
# ===============================================================================

import logging
from typing import Any

from django.core.exceptions import ValidationError
from django.http import HttpRequest
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.decorators import api_view, authentication_classes, permission_classes, throttle_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from apps.billing.aggregator import ANALYTICS_PERIODS, SubscriptionAggregator
from apps.billing.subscription_service import BillingEngine, PlanService, SubscriptionService
from apps.common.types import Result

from ..core.permissions import IsBillingAdmin
from ..core.throttling import MutationAPIThrottle, StandardAPIThrottle, WebhookThrottle
from .serializers import (
    CancelSubscriptionSerializer,
    CreateOrganizationSubscriptionSerializer,
    CreateSubscriptionSerializer,
    PaymentRecordSerializer,
    PlanInputSerializer,
    PlanSerializer,
    RefundPaymentSerializer,
    SubscriptionFilterSerializer,
    SubscriptionSerializer,
)

logger = logging.getLogger(__name__)


def error_response(message: str) -> Response:
    """Map a service error string to 404 for missing entities, 400 otherwise"""
    code = status.HTTP_404_NOT_FOUND if message.endswith("not found") else status.HTTP_400_BAD_REQUEST
    return Response({"success": False, "error": message}, status=code)


def result_response(result: Result[Any, str], render: Any, created: bool = False) -> Response:
    if result.is_err():
        return error_response(result.unwrap_err())
    return Response(
        {"success": True, **render(result.unwrap())},
        status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
    )


def parse_filters(request: HttpRequest) -> dict[str, Any] | Response:
    """Validated list filters from the query string, or a 400 response"""
    serializer = SubscriptionFilterSerializer(data=request.query_params)
    if not serializer.is_valid():
        return Response({"success": False, "errors": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)
    return dict(serializer.validated_data)


# ===============================================================================
# DASHBOARD & ANALYTICS 📊
# ===============================================================================


@api_view(['GET'])
@permission_classes([IsBillingAdmin])
@throttle_classes([StandardAPIThrottle])
def dashboard_stats_api(request: HttpRequest) -> Response:
    """
    📊 Subscription dashboard

    GET /api/billing/dashboard/

    Dashboard stats and tab counts are computed from the same snapshot so
    their per-status figures always agree.
    """
    stats, tabs = SubscriptionAggregator.overview()
    return Response({"success": True, "stats": stats, "tab_counts": tabs})


@api_view(['GET'])
@permission_classes([IsBillingAdmin])
@throttle_classes([StandardAPIThrottle])
def tab_counts_api(request: HttpRequest) -> Response:
    return Response({"success": True, "tab_counts": SubscriptionAggregator.tab_counts()})


@api_view(['GET'])
@permission_classes([IsBillingAdmin])
@throttle_classes([StandardAPIThrottle])
def lifecycle_stats_api(request: HttpRequest) -> Response:
    return Response({"success": True, "stats": SubscriptionAggregator.lifecycle_stats()})


@api_view(['GET'])
@permission_classes([IsBillingAdmin])
@throttle_classes([StandardAPIThrottle])
def recent_activity_api(request: HttpRequest) -> Response:
    """GET /api/billing/activity/?limit=20 - newest first, limit clamped server-side"""
    try:
        limit = int(request.query_params.get('limit', 20))
    except (TypeError, ValueError):
        return error_response("limit must be an integer")
    return Response({"success": True, "activity": SubscriptionAggregator.recent_activity(limit)})


@api_view(['GET'])
@permission_classes([IsBillingAdmin])
@throttle_classes([StandardAPIThrottle])
def analytics_api(request: HttpRequest) -> Response:
    """GET /api/billing/analytics/?period=month (week, month, quarter, year)"""
    period = request.query_params.get('period', 'month')
    if period not in ANALYTICS_PERIODS:
        return error_response(f"Unknown period '{period}', expected one of: {', '.join(ANALYTICS_PERIODS)}")
    return Response({"success": True, "analytics": SubscriptionAggregator.analytics(period)})


# ===============================================================================
# PLANS 📦
# ===============================================================================


@api_view(['GET', 'POST'])
@permission_classes([IsBillingAdmin])
@throttle_classes([StandardAPIThrottle])
def plans_api(request: HttpRequest) -> Response:
    if request.method == 'GET':
        filters: dict[str, Any] = {"search": request.query_params.get('search')}
        if 'is_active' in request.query_params:
            filters["is_active"] = request.query_params['is_active'].lower() in ('1', 'true', 'yes')
        plans = PlanService.list_plans(filters)
        return Response({"success": True, "plans": PlanSerializer(plans, many=True).data})

    serializer = PlanInputSerializer(data=request.data)
    if not serializer.is_valid():
        return Response({"success": False, "errors": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)
    return result_response(
        PlanService.create_plan(serializer.validated_data),
        lambda plan: {"plan": PlanSerializer(plan).data},
        created=True,
    )


@api_view(['PATCH', 'DELETE'])
@permission_classes([IsBillingAdmin])
@throttle_classes([StandardAPIThrottle])
def plan_detail_api(request: HttpRequest, plan_id: str) -> Response:
    if request.method == 'DELETE':
        return result_response(
            PlanService.delete_plan(plan_id),
            lambda outcome: {"plan": PlanSerializer(outcome["plan"]).data, "deleted": outcome["deleted"]},
        )

    serializer = PlanInputSerializer(data=request.data, partial=True)
    if not serializer.is_valid():
        return Response({"success": False, "errors": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)
    return result_response(
        PlanService.update_plan(plan_id, serializer.validated_data),
        lambda plan: {"plan": PlanSerializer(plan).data},
    )


# ===============================================================================
# SUBSCRIPTIONS 🔁
# ===============================================================================


@api_view(['GET', 'POST'])
@permission_classes([IsBillingAdmin])
@throttle_classes([StandardAPIThrottle])
def subscriptions_api(request: HttpRequest) -> Response:
    """
    GET  /api/billing/subscriptions/ - filtered list
    POST /api/billing/subscriptions/ - createSubscription by provider customer code
    """
    if request.method == 'GET':
        filters = parse_filters(request)
        if isinstance(filters, Response):
            return filters
        try:
            subscriptions = SubscriptionService.list_subscriptions(filters)
        except ValidationError as e:
            return error_response("; ".join(e.messages))
        return Response({"success": True, "subscriptions": SubscriptionSerializer(subscriptions, many=True).data})

    serializer = CreateSubscriptionSerializer(data=request.data)
    if not serializer.is_valid():
        return Response({"success": False, "errors": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data
    return result_response(
        SubscriptionService.create_subscription(
            data["customer_id"],
            data["plan_id"],
            authorization_code=data["authorization_code"],
            start_date=data["start_date"],
            metadata=data["metadata"],
            user=request.user,
        ),
        lambda subscription: {"subscription": SubscriptionSerializer(subscription).data},
        created=True,
    )


@api_view(['POST'])
@permission_classes([IsBillingAdmin])
@throttle_classes([MutationAPIThrottle])
def organization_subscription_create_api(request: HttpRequest, organization_id: str) -> Response:
    """POST /api/billing/organizations/<id>/subscription/ - createOrganizationSubscription"""
    serializer = CreateOrganizationSubscriptionSerializer(data=request.data)
    if not serializer.is_valid():
        return Response({"success": False, "errors": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data
    return result_response(
        SubscriptionService.create_organization_subscription(
            organization_id,
            data["plan_id"],
            authorization_code=data["authorization_code"],
            start_date=data["start_date"],
            metadata=data["metadata"],
            user=request.user,
        ),
        lambda subscription: {"subscription": SubscriptionSerializer(subscription).data},
        created=True,
    )


@api_view(['POST'])
@permission_classes([IsBillingAdmin])
@throttle_classes([MutationAPIThrottle])
def subscription_cancel_api(request: HttpRequest, subscription_id: str) -> Response:
    serializer = CancelSubscriptionSerializer(data=request.data)
    if not serializer.is_valid():
        return Response({"success": False, "errors": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data
    return result_response(
        SubscriptionService.cancel_subscription(
            subscription_id,
            reason=data["reason"],
            note=data["note"],
            at_period_end=data["at_period_end"],
            user=request.user,
        ),
        lambda subscription: {"subscription": SubscriptionSerializer(subscription).data},
    )


@api_view(['POST'])
@permission_classes([IsBillingAdmin])
@throttle_classes([MutationAPIThrottle])
def lifecycle_check_api(request: HttpRequest) -> Response:
    """
    🧹 POST /api/billing/lifecycle-check/ - run the lifecycle sweep now

    Response carries expired_count, cancelled_count and warnings_count plus
    the remaining sweep counters.
    """
    result = BillingEngine.trigger_lifecycle_check()
    logger.info(f"🧹 [Lifecycle] Manual sweep by {getattr(request.user, 'email', 'unknown')}")
    return Response({"success": not result.errors, **result.as_dict()})


# ===============================================================================
# PAYMENTS 💰
# ===============================================================================


@api_view(['GET'])
@permission_classes([IsBillingAdmin])
@throttle_classes([StandardAPIThrottle])
def payments_api(request: HttpRequest) -> Response:
    filters = parse_filters(request)
    if isinstance(filters, Response):
        return filters
    try:
        payments = SubscriptionService.list_payments(filters)
    except ValidationError as e:
        return error_response("; ".join(e.messages))
    return Response({"success": True, "payments": PaymentRecordSerializer(payments, many=True).data})


@api_view(['GET'])
@permission_classes([IsBillingAdmin])
@throttle_classes([StandardAPIThrottle])
def failed_payments_api(request: HttpRequest) -> Response:
    filters = parse_filters(request)
    if isinstance(filters, Response):
        return filters
    payments = SubscriptionService.failed_payments(filters)
    return Response({"success": True, "payments": PaymentRecordSerializer(payments, many=True).data})


@api_view(['POST'])
@permission_classes([IsBillingAdmin])
@throttle_classes([MutationAPIThrottle])
def payment_retry_api(request: HttpRequest, payment_id: str) -> Response:
    """
    🔁 POST /api/billing/payments/<id>/retry/

    Charges the subscription behind a failed payment immediately. A charge
    whose outcome the provider has not reported yet is returned as pending.
    """
    return result_response(
        SubscriptionService.retry_failed_payment(payment_id),
        lambda outcome: {
            "subscription": SubscriptionSerializer(outcome["subscription"]).data,
            "payment": PaymentRecordSerializer(outcome["payment"]).data if outcome["payment"] else None,
            "pending": outcome["pending"],
            "detail": outcome["detail"],
        },
    )


@api_view(['POST'])
@permission_classes([IsBillingAdmin])
@throttle_classes([MutationAPIThrottle])
def payment_refund_api(request: HttpRequest, payment_id: str) -> Response:
    serializer = RefundPaymentSerializer(data=request.data)
    if not serializer.is_valid():
        return Response({"success": False, "errors": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)
    return result_response(
        SubscriptionService.refund_payment(payment_id, reason=serializer.validated_data["reason"], user=request.user),
        lambda refund: {"payment": PaymentRecordSerializer(refund).data},
    )


# ===============================================================================
# PROVIDER WEBHOOKS 🔄
# ===============================================================================


@csrf_exempt
@api_view(['POST'])
@authentication_classes([])  # Provider calls are verified by signature, not session
@permission_classes([AllowAny])
@throttle_classes([WebhookThrottle])
def stripe_webhook_api(request: HttpRequest) -> Response:
    """
    🔄 POST /api/billing/webhooks/stripe/

    Redeliveries are acknowledged with 200 and change nothing. Invalid
    signatures get 400 so the provider does not keep retrying them.
    """
    signature = request.META.get('HTTP_STRIPE_SIGNATURE', '')
    if not signature:
        return Response({"status": "error", "message": "Missing signature"}, status=status.HTTP_400_BAD_REQUEST)

    result = BillingEngine.process_webhook(request.body, signature)
    if result.is_err():
        return Response({"status": "error", "message": result.unwrap_err()}, status=status.HTTP_400_BAD_REQUEST)

    outcome = result.unwrap()
    return Response({"status": "ok", **outcome})
