# ===============================================================================
# BILLING API SERIALIZERS - PLANS, SUBSCRIPTIONS AND PAYMENTS 💳
# ===============================================================================

from typing import ClassVar

from rest_framework import serializers

from apps.billing.clock import BillingInterval
from apps.billing.models import PaymentRecord, Plan, Subscription, SubscriptionTransition

# ===============================================================================
# PLAN SERIALIZERS 📦
# ===============================================================================


class PlanSerializer(serializers.ModelSerializer):
    """Plan with its live subscription count when the queryset is annotated"""

    active_subscriptions_count = serializers.SerializerMethodField()

    class Meta:
        model = Plan
        fields: ClassVar = [
            "id",
            "name",
            "description",
            "plan_code",
            "amount_cents",
            "currency",
            "interval",
            "interval_count",
            "trial_period_days",
            "grace_period_days",
            "retry_base_delay_hours",
            "retry_max_delay_hours",
            "max_retry_attempts",
            "features",
            "is_active",
            "version",
            "supersedes",
            "active_subscriptions_count",
            "created_at",
            "updated_at",
        ]

    def get_active_subscriptions_count(self, obj: Plan) -> int | None:
        return getattr(obj, "active_subscriptions_count", None)


class PlanInputSerializer(serializers.Serializer):
    """Writable plan fields; validated here, business rules enforced by PlanService"""

    name = serializers.CharField(max_length=200)
    description = serializers.CharField(required=False, allow_blank=True)
    plan_code = serializers.CharField(max_length=100, required=False, allow_blank=True)
    amount_cents = serializers.IntegerField(min_value=0)
    currency = serializers.CharField(min_length=3, max_length=3, required=False)
    interval = serializers.ChoiceField(choices=BillingInterval.CHOICES, required=False)
    interval_count = serializers.IntegerField(min_value=1, required=False)
    trial_period_days = serializers.IntegerField(min_value=0, required=False)
    grace_period_days = serializers.IntegerField(min_value=0, required=False, allow_null=True)
    retry_base_delay_hours = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    retry_max_delay_hours = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    max_retry_attempts = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    features = serializers.ListField(child=serializers.CharField(), required=False)
    is_active = serializers.BooleanField(required=False)


# ===============================================================================
# SUBSCRIPTION SERIALIZERS 🔁
# ===============================================================================


class SubscriptionSerializer(serializers.ModelSerializer):
    organization_name = serializers.CharField(source="organization.name", read_only=True)
    plan = PlanSerializer(read_only=True)

    class Meta:
        model = Subscription
        fields: ClassVar = [
            "id",
            "organization",
            "organization_name",
            "plan",
            "status",
            "current_period_start",
            "current_period_end",
            "next_billing_date",
            "trial_start",
            "trial_end",
            "last_payment_date",
            "failed_payment_count",
            "next_retry_at",
            "grace_period_ends_at",
            "cancel_at_period_end",
            "cancelled_at",
            "cancellation_reason",
            "ended_at",
            "metadata",
            "version",
            "created_at",
            "updated_at",
        ]


class SubscriptionTransitionSerializer(serializers.ModelSerializer):
    class Meta:
        model = SubscriptionTransition
        fields: ClassVar = [
            "id",
            "from_status",
            "to_status",
            "activity_type",
            "reason",
            "version",
            "payment",
            "created_at",
        ]


class CreateSubscriptionSerializer(serializers.Serializer):
    """Input for createSubscription: customer is a provider customer code or organization id"""

    customer_id = serializers.CharField(max_length=100)
    plan_id = serializers.UUIDField()
    authorization_code = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    start_date = serializers.DateTimeField(required=False, allow_null=True, default=None)
    metadata = serializers.DictField(required=False, default=dict)


class CreateOrganizationSubscriptionSerializer(serializers.Serializer):
    plan_id = serializers.UUIDField()
    authorization_code = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    start_date = serializers.DateTimeField(required=False, allow_null=True, default=None)
    metadata = serializers.DictField(required=False, default=dict)


class CancelSubscriptionSerializer(serializers.Serializer):
    reason = serializers.ChoiceField(choices=Subscription.CANCELLATION_REASON_CHOICES, default="admin_request")
    note = serializers.CharField(required=False, allow_blank=True, default="")
    at_period_end = serializers.BooleanField(required=False, default=False)


class SubscriptionFilterSerializer(serializers.Serializer):
    """Query-string filters shared by the list endpoints"""

    status = serializers.CharField(required=False)
    organization_id = serializers.UUIDField(required=False)
    plan_id = serializers.UUIDField(required=False)
    subscription_id = serializers.UUIDField(required=False)
    date_from = serializers.DateTimeField(required=False)
    date_to = serializers.DateTimeField(required=False)
    search = serializers.CharField(required=False)
    subscription_status = serializers.ChoiceField(choices=Subscription.STATUS_CHOICES, required=False)
    offset = serializers.IntegerField(min_value=0, required=False)
    limit = serializers.IntegerField(min_value=1, required=False)


# ===============================================================================
# PAYMENT SERIALIZERS 💰
# ===============================================================================


class PaymentRecordSerializer(serializers.ModelSerializer):
    organization_id = serializers.UUIDField(source="subscription.organization_id", read_only=True)
    organization_name = serializers.CharField(source="subscription.organization.name", read_only=True)

    class Meta:
        model = PaymentRecord
        fields: ClassVar = [
            "id",
            "subscription",
            "organization_id",
            "organization_name",
            "amount_cents",
            "currency",
            "outcome",
            "purpose",
            "provider_reference",
            "provider_transaction_id",
            "failure_reason",
            "refund_of",
            "created_at",
            "paid_at",
            "failed_at",
            "refunded_at",
        ]


class RefundPaymentSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="", max_length=500)
