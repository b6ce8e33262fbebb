# ===============================================================================
# ORGANIZATION API VIEWS - STATUS GATE AND SUBSCRIPTION VIEW 🏢
# ===============================================================================

import logging
from uuid import UUID

from django.http import HttpRequest
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes, throttle_classes
from rest_framework.response import Response

from apps.billing.aggregator import SubscriptionAggregator
from apps.billing.subscription_service import SubscriptionService
from apps.organizations.models import Organization
from apps.organizations.services import OrganizationService

from ..billing.serializers import SubscriptionSerializer
from ..billing.views import error_response, parse_filters, result_response
from ..core.permissions import IsBillingAdmin
from ..core.throttling import MutationAPIThrottle, StandardAPIThrottle
from .serializers import DisableOrganizationSerializer, OrganizationDetailSerializer, OrganizationSerializer

logger = logging.getLogger(__name__)


@api_view(['GET'])
@permission_classes([IsBillingAdmin])
@throttle_classes([StandardAPIThrottle])
def organizations_api(request: HttpRequest) -> Response:
    """GET /api/organizations/?status=&subscription_status=&search=&offset=&limit="""
    filters = parse_filters(request)
    if isinstance(filters, Response):
        return filters
    organizations = SubscriptionService.list_organizations(filters)
    return Response({"success": True, "organizations": OrganizationSerializer(organizations, many=True).data})


@api_view(['GET'])
@permission_classes([IsBillingAdmin])
@throttle_classes([StandardAPIThrottle])
def organization_detail_api(request: HttpRequest, organization_id: UUID) -> Response:
    try:
        organization = Organization.objects.get(pk=organization_id)
    except Organization.DoesNotExist:
        return error_response(f"Organization {organization_id} not found")
    return Response({"success": True, "organization": OrganizationDetailSerializer(organization).data})


@api_view(['GET'])
@permission_classes([IsBillingAdmin])
@throttle_classes([StandardAPIThrottle])
def organization_stats_api(request: HttpRequest) -> Response:
    return Response({"success": True, "stats": SubscriptionAggregator.organization_stats()})


@api_view(['GET'])
@permission_classes([IsBillingAdmin])
@throttle_classes([StandardAPIThrottle])
def organization_subscription_status_api(request: HttpRequest, organization_id: UUID) -> Response:
    """
    GET /api/organizations/<id>/subscription-status/

    {has_active_subscription, days_until_expiry, is_in_grace_period, subscription}
    """
    return result_response(
        SubscriptionService.organization_subscription_status(organization_id),
        lambda view: {
            "has_active_subscription": view["has_active_subscription"],
            "days_until_expiry": view["days_until_expiry"],
            "is_in_grace_period": view["is_in_grace_period"],
            "subscription": SubscriptionSerializer(view["subscription"]).data if view["subscription"] else None,
        },
    )


@api_view(['POST'])
@permission_classes([IsBillingAdmin])
@throttle_classes([MutationAPIThrottle])
def organization_enable_api(request: HttpRequest, organization_id: UUID) -> Response:
    return result_response(
        OrganizationService.enable_organization(organization_id, user=request.user),
        lambda organization: {"organization": OrganizationSerializer(organization).data},
    )


@api_view(['POST'])
@permission_classes([IsBillingAdmin])
@throttle_classes([MutationAPIThrottle])
def organization_disable_api(request: HttpRequest, organization_id: UUID) -> Response:
    serializer = DisableOrganizationSerializer(data=request.data)
    if not serializer.is_valid():
        return Response({"success": False, "errors": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)
    return result_response(
        OrganizationService.disable_organization(
            organization_id, serializer.validated_data["reason"], user=request.user
        ),
        lambda organization: {"organization": OrganizationSerializer(organization).data},
    )
