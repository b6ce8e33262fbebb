# ===============================================================================
# ORGANIZATION API SERIALIZERS - TENANT ACCESS AND BILLING VIEW 🏢
# ===============================================================================

from typing import Any, ClassVar

from rest_framework import serializers

from apps.organizations.models import Organization

from ..billing.serializers import PaymentRecordSerializer, SubscriptionSerializer, SubscriptionTransitionSerializer


class OrganizationSerializer(serializers.ModelSerializer):
    access_level = serializers.CharField(read_only=True)
    subscription_status = serializers.SerializerMethodField()

    class Meta:
        model = Organization
        fields: ClassVar = [
            "id",
            "name",
            "email",
            "status",
            "access_level",
            "subscription_status",
            "suspension_reason",
            "suspended_at",
            "customer_code",
            "created_at",
        ]

    def get_subscription_status(self, obj: Organization) -> str | None:
        subscription = obj.live_subscription
        return subscription.status if subscription else None


class OrganizationDetailSerializer(OrganizationSerializer):
    """Organization with its full subscription history, payments and transitions"""

    subscriptions = serializers.SerializerMethodField()
    payments = serializers.SerializerMethodField()
    transitions = serializers.SerializerMethodField()

    class Meta(OrganizationSerializer.Meta):
        fields: ClassVar = [*OrganizationSerializer.Meta.fields, "subscriptions", "payments", "transitions"]

    def get_subscriptions(self, obj: Organization) -> list[dict[str, Any]]:
        subscriptions = obj.subscriptions.select_related("plan").order_by("-created_at")
        return SubscriptionSerializer(subscriptions, many=True).data

    def get_payments(self, obj: Organization) -> list[dict[str, Any]]:
        from apps.billing.models import PaymentRecord  # noqa: PLC0415

        payments = (
            PaymentRecord.objects.select_related("subscription__organization")
            .filter(subscription__organization=obj)
            .order_by("-created_at", "-id")
        )
        return PaymentRecordSerializer(payments, many=True).data

    def get_transitions(self, obj: Organization) -> list[dict[str, Any]]:
        return SubscriptionTransitionSerializer(obj.subscription_transitions.all(), many=True).data


class DisableOrganizationSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=1000)
