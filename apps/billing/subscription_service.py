"""
Subscription services
Administrative and provider-facing operations over the billing lifecycle.

Provides:
- Subscription creation (trial or immediately active) and cancellation
- Manual payment retry and refunds
- Plan management with versioning
- Provider webhook ingestion and charge reconciliation
- Manual lifecycle sweep and the organization subscription status view

Every operation returns Ok/Err; Ok always carries the post-operation entity.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, TypedDict

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import Count, Q, QuerySet
from django.utils import timezone

from apps.common.types import Err, Ok, Result
from apps.common.validators import log_security_event
from apps.organizations.models import Organization

from . import clock
from .charging import ChargeCoordinator
from .config import get_default_currency
from .dunning import DunningManager
from .exceptions import DuplicateEvent, ProviderError, RetryBudgetExhausted, TransitionConflict
from .gateways.base import CHARGE_SUCCEEDED, BasePaymentGateway, PaymentGatewayFactory
from .ledger import PaymentLedger
from .models import ChargeAttempt, PaymentRecord, Plan, Subscription, SubscriptionTransition
from .state_machine import PaymentIngestion, SubscriptionStateMachine, load_subscription
from .sweeper import LifecycleSweeper, SweepResult

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 500


# ===============================================================================
# TYPE DEFINITIONS
# ===============================================================================


class SubscriptionStatusView(TypedDict):
    """What an organization sees of its billing state."""

    has_active_subscription: bool
    days_until_expiry: int | None
    is_in_grace_period: bool
    subscription: Subscription | None


class RetryOutcome(TypedDict):
    """Result of a manual payment retry."""

    subscription: Subscription
    payment: PaymentRecord | None
    pending: bool
    detail: str


class PlanDeleteResult(TypedDict):
    plan: Plan
    deleted: bool


class WebhookOutcome(TypedDict):
    event_id: str
    handled: bool
    duplicate: bool
    subscription_id: str | None
    status: str | None


def _page(queryset: QuerySet[Any], filters: dict[str, Any]) -> QuerySet[Any]:
    offset = max(0, int(filters.get("offset") or 0))
    limit = max(1, min(int(filters.get("limit") or DEFAULT_PAGE_LIMIT), MAX_PAGE_LIMIT))
    return queryset[offset : offset + limit]


# ===============================================================================
# SUBSCRIPTION SERVICE
# ===============================================================================


class SubscriptionService:
    """Subscription creation, cancellation, retries, refunds and reads."""

    @staticmethod
    def _gateway(gateway: BasePaymentGateway | None) -> BasePaymentGateway:
        return gateway or PaymentGatewayFactory.get_default_gateway()

    # ---------------------------------------------------------------------------
    # Creation
    # ---------------------------------------------------------------------------

    @staticmethod
    def create_subscription(  # noqa: PLR0913
        customer_id: str,
        plan_id: Any,
        authorization_code: str = "",
        start_date: datetime | None = None,
        metadata: dict[str, Any] | None = None,
        user: Any = None,
    ) -> Result[Subscription, str]:
        """Create a subscription for the organization identified by provider customer code or id."""
        organization = Organization.objects.filter(customer_code=customer_id).first() if customer_id else None
        if organization is None:
            try:
                organization = Organization.objects.filter(pk=customer_id).first()
            except ValidationError:
                organization = None
        if organization is None:
            return Err(f"Unknown customer: {customer_id}")

        return SubscriptionService.create_organization_subscription(
            organization.pk,
            plan_id,
            authorization_code=authorization_code,
            start_date=start_date,
            metadata=metadata,
            user=user,
        )

    @staticmethod
    def create_organization_subscription(  # noqa: PLR0913, PLR0911
        organization_id: Any,
        plan_id: Any,
        *,
        authorization_code: str = "",
        start_date: datetime | None = None,
        metadata: dict[str, Any] | None = None,
        user: Any = None,
        now: datetime | None = None,
    ) -> Result[Subscription, str]:
        """
        Start a subscription: TRIAL when the plan has trial days, otherwise
        ACTIVE with a period starting immediately. Repeating the call for the
        same plan returns the existing live subscription.
        """
        now = now or timezone.now()
        start = start_date or now

        try:
            organization = Organization.objects.get(pk=organization_id)
        except (Organization.DoesNotExist, ValidationError, ValueError):
            return Err(f"Organization {organization_id} not found")
        try:
            plan = Plan.objects.get(pk=plan_id)
        except (Plan.DoesNotExist, ValidationError, ValueError):
            return Err(f"Plan {plan_id} not found")
        if not plan.is_active:
            return Err(f"Plan {plan.name} is not active")

        existing = Subscription.objects.filter(
            organization=organization, status__in=Subscription.LIVE_STATUSES
        ).first()
        if existing is not None:
            if existing.plan_id == plan.pk:
                return Ok(existing)
            return Err(f"Organization {organization.name} already has a {existing.status} subscription")

        fields: dict[str, Any] = {
            "organization": organization,
            "plan": plan,
            "authorization_code": authorization_code,
            "metadata": metadata or {},
            "created_at": now,
            "updated_at": now,
        }
        if plan.trial_period_days > 0:
            trial_end = start + timedelta(days=plan.trial_period_days)
            fields.update(
                status=Subscription.STATUS_TRIAL,
                trial_start=start,
                trial_end=trial_end,
                current_period_start=start,
                current_period_end=trial_end,
                next_billing_date=trial_end,
                billing_anchor_day=trial_end.day,
            )
        else:
            period_start, period_end = clock.next_period_bounds(start, plan.interval, plan.interval_count)
            fields.update(
                status=Subscription.STATUS_ACTIVE,
                current_period_start=period_start,
                current_period_end=period_end,
                next_billing_date=period_end,
                billing_anchor_day=period_start.day,
            )

        try:
            with transaction.atomic():
                subscription = Subscription.objects.create(**fields)
                SubscriptionTransition.objects.create(
                    subscription=subscription,
                    organization=organization,
                    from_status="",
                    to_status=subscription.status,
                    activity_type="subscription_created",
                    reason=f"Subscribed to {plan.name}",
                    version=subscription.version,
                    created_at=now,
                )
        except IntegrityError:
            # Lost a race with a concurrent creation for the same organization
            raced = Subscription.objects.filter(
                organization=organization, status__in=Subscription.LIVE_STATUSES
            ).first()
            if raced is not None and raced.plan_id == plan.pk:
                return Ok(raced)
            return Err(f"Organization {organization.name} already has a live subscription")

        log_security_event(
            event_type="subscription_created",
            details={
                "subscription_id": str(subscription.pk),
                "organization_id": str(organization.pk),
                "plan_id": str(plan.pk),
                "status": subscription.status,
            },
            user_email=getattr(user, "email", None),
        )
        logger.info(f"✅ [Billing] Created {subscription.status} subscription {subscription.pk} for {organization.name}")
        return Ok(subscription)

    # ---------------------------------------------------------------------------
    # Cancellation
    # ---------------------------------------------------------------------------

    @staticmethod
    def cancel_subscription(  # noqa: PLR0913
        subscription_id: Any,
        reason: str = "admin_request",
        note: str = "",
        at_period_end: bool = False,
        user: Any = None,
        now: datetime | None = None,
    ) -> Result[Subscription, str]:
        now = now or timezone.now()
        try:
            subscription = SubscriptionStateMachine().cancel(
                subscription_id, now, reason=reason, note=note, at_period_end=at_period_end
            )
        except Subscription.DoesNotExist:
            return Err(f"Subscription {subscription_id} not found")
        except ValidationError as e:
            return Err("; ".join(e.messages))
        except TransitionConflict as e:
            return Err(f"Subscription is changing concurrently, try again: {e}")

        log_security_event(
            event_type="subscription_cancel_requested",
            details={
                "subscription_id": str(subscription.pk),
                "reason": reason,
                "at_period_end": at_period_end,
                "status": subscription.status,
            },
            user_email=getattr(user, "email", None),
        )
        return Ok(subscription)

    # ---------------------------------------------------------------------------
    # Payments
    # ---------------------------------------------------------------------------

    @staticmethod
    def retry_failed_payment(
        payment_id: Any, now: datetime | None = None, gateway: BasePaymentGateway | None = None
    ) -> Result[RetryOutcome, str]:
        """Manually retry the subscription behind a FAILED payment, bypassing backoff."""
        now = now or timezone.now()
        try:
            failed = PaymentRecord.objects.get(pk=payment_id)
        except (PaymentRecord.DoesNotExist, ValidationError, ValueError):
            return Err(f"Payment {payment_id} not found")
        if failed.outcome != PaymentRecord.OUTCOME_FAILED:
            return Err(f"Payment {failed.provider_reference} is {failed.outcome}, only failed payments can be retried")

        machine = SubscriptionStateMachine(charges=ChargeCoordinator(gateway))
        try:
            evaluation = DunningManager(machine=machine).retry_now(failed.subscription_id, now)
        except ValidationError as e:
            return Err("; ".join(e.messages))
        except RetryBudgetExhausted as e:
            return Err(str(e))
        except TransitionConflict as e:
            return Err(f"Subscription is changing concurrently, try again: {e}")

        subscription = load_subscription(failed.subscription_id)
        latest = PaymentRecord.objects.filter(subscription=subscription).order_by("-created_at", "-id").first()
        payment = latest if latest is not None and latest.pk != failed.pk and latest.purpose == "retry" else None
        if payment is not None and payment.outcome == PaymentRecord.OUTCOME_FAILED:
            logger.warning(f"💸 [Billing] Manual retry failed for {subscription.pk}: {payment.failure_reason}")
        return Ok(
            RetryOutcome(
                subscription=subscription,
                payment=payment,
                pending=evaluation.skipped,
                detail=evaluation.detail or evaluation.activity,
            )
        )

    @staticmethod
    def refund_payment(
        payment_id: Any,
        reason: str = "",
        user: Any = None,
        now: datetime | None = None,
        gateway: BasePaymentGateway | None = None,
    ) -> Result[PaymentRecord, str]:
        """
        Refund a settled payment in full. The refund is a new REFUNDED record;
        asking again returns that same record.
        """
        now = now or timezone.now()
        try:
            original = PaymentRecord.objects.get(pk=payment_id)
        except (PaymentRecord.DoesNotExist, ValidationError, ValueError):
            return Err(f"Payment {payment_id} not found")
        if original.outcome != PaymentRecord.OUTCOME_SUCCESS:
            return Err(f"Payment {original.provider_reference} is {original.outcome}, only successful payments can be refunded")

        reference = f"refund:{original.provider_reference}"
        existing = PaymentRecord.objects.filter(provider_reference=reference).first()
        if existing is not None:
            return Ok(existing)

        try:
            result = SubscriptionService._gateway(gateway).refund(
                original.provider_reference, original.amount_cents, reason
            )
            if not result["success"]:
                raise ProviderError(result["error"] or "Refund rejected by payment provider")
        except ProviderError as e:
            logger.error(f"🔥 [Billing] Refund of {original.provider_reference} rejected: {e}")
            return Err(f"Refund failed: {e}")

        try:
            refund = PaymentLedger.record_payment(
                original.subscription_id,
                original.amount_cents,
                original.currency,
                PaymentRecord.OUTCOME_REFUNDED,
                reference,
                reason,
                purpose="refund",
                occurred_at=now,
                refund_of=original,
                provider_transaction_id=result["refund_id"],
            )
        except DuplicateEvent as duplicate:
            return Ok(duplicate.existing)

        log_security_event(
            event_type="payment_refunded",
            details={
                "payment_id": str(original.pk),
                "refund_id": str(refund.pk),
                "amount_cents": refund.amount_cents,
                "currency": refund.currency,
                "reason": reason,
            },
            user_email=getattr(user, "email", None),
        )
        return Ok(refund)

    # ---------------------------------------------------------------------------
    # Reads
    # ---------------------------------------------------------------------------

    @staticmethod
    def organization_subscription_status(
        organization_id: Any, now: datetime | None = None
    ) -> Result[SubscriptionStatusView, str]:
        now = now or timezone.now()
        if not Organization.objects.filter(pk=organization_id).exists():
            return Err(f"Organization {organization_id} not found")

        subscriptions = Subscription.objects.select_related("plan", "organization").filter(
            organization_id=organization_id
        )
        subscription = subscriptions.filter(status__in=Subscription.LIVE_STATUSES).first() or subscriptions.first()

        if subscription is None or not subscription.is_live:
            return Ok(
                SubscriptionStatusView(
                    has_active_subscription=False,
                    days_until_expiry=None,
                    is_in_grace_period=False,
                    subscription=subscription,
                )
            )

        return Ok(
            SubscriptionStatusView(
                has_active_subscription=subscription.status != Subscription.STATUS_GRACE_PERIOD,
                days_until_expiry=clock.days_until(clock.next_deadline(subscription), now),
                is_in_grace_period=subscription.is_in_grace_period,
                subscription=subscription,
            )
        )

    @staticmethod
    def list_subscriptions(filters: dict[str, Any] | None = None) -> QuerySet[Subscription]:
        filters = filters or {}
        queryset = Subscription.objects.select_related("plan", "organization").order_by("-created_at")
        if filters.get("status"):
            if filters["status"] not in dict(Subscription.STATUS_CHOICES):
                raise ValidationError(f"Unknown subscription status: {filters['status']}")
            queryset = queryset.filter(status=filters["status"])
        if filters.get("organization_id"):
            queryset = queryset.filter(organization_id=filters["organization_id"])
        if filters.get("plan_id"):
            queryset = queryset.filter(plan_id=filters["plan_id"])
        if filters.get("date_from"):
            queryset = queryset.filter(created_at__gte=filters["date_from"])
        if filters.get("date_to"):
            queryset = queryset.filter(created_at__lte=filters["date_to"])
        return _page(queryset, filters)

    @staticmethod
    def list_payments(filters: dict[str, Any] | None = None) -> QuerySet[PaymentRecord]:
        filters = filters or {}
        queryset = PaymentRecord.objects.select_related("subscription__organization").order_by("-created_at", "-id")
        if filters.get("status"):
            if filters["status"] not in dict(PaymentRecord.OUTCOME_CHOICES):
                raise ValidationError(f"Unknown payment status: {filters['status']}")
            queryset = queryset.filter(outcome=filters["status"])
        if filters.get("subscription_id"):
            queryset = queryset.filter(subscription_id=filters["subscription_id"])
        if filters.get("organization_id"):
            queryset = queryset.filter(subscription__organization_id=filters["organization_id"])
        if filters.get("date_from"):
            queryset = queryset.filter(created_at__gte=filters["date_from"])
        if filters.get("date_to"):
            queryset = queryset.filter(created_at__lte=filters["date_to"])
        return _page(queryset, filters)

    @staticmethod
    def failed_payments(filters: dict[str, Any] | None = None) -> QuerySet[PaymentRecord]:
        return SubscriptionService.list_payments({**(filters or {}), "status": PaymentRecord.OUTCOME_FAILED})

    @staticmethod
    def list_organizations(filters: dict[str, Any] | None = None) -> QuerySet[Organization]:
        """Organizations for the subscription admin view, optionally by access or billing status."""
        filters = filters or {}
        queryset = Organization.objects.order_by("name")
        if filters.get("status"):
            queryset = queryset.filter(status=filters["status"])
        if filters.get("subscription_status"):
            queryset = queryset.filter(subscriptions__status=filters["subscription_status"]).distinct()
        if filters.get("search"):
            term = filters["search"]
            queryset = queryset.filter(Q(name__icontains=term) | Q(email__icontains=term))
        return _page(queryset, filters)


# ===============================================================================
# PLAN SERVICE
# ===============================================================================

PLAN_EDITABLE_FIELDS = (
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
)

# Changing any of these on a referenced plan requires a new version
PLAN_PRICING_FIELDS = frozenset(PLAN_EDITABLE_FIELDS) - {"name", "description", "is_active"}


class PlanService:
    """Plan CRUD. Referenced plans are versioned, never edited in place."""

    @staticmethod
    def list_plans(filters: dict[str, Any] | None = None) -> QuerySet[Plan]:
        filters = filters or {}
        queryset = Plan.objects.annotate(
            active_subscriptions_count=Count(
                "subscriptions", filter=Q(subscriptions__status__in=Subscription.LIVE_STATUSES)
            )
        ).order_by("amount_cents", "name")
        if filters.get("is_active") is not None:
            queryset = queryset.filter(is_active=filters["is_active"])
        if filters.get("search"):
            queryset = queryset.filter(name__icontains=filters["search"])
        return queryset

    @staticmethod
    def create_plan(data: dict[str, Any]) -> Result[Plan, str]:
        fields = {key: data[key] for key in PLAN_EDITABLE_FIELDS if key in data}
        fields.setdefault("currency", get_default_currency())
        fields["currency"] = str(fields["currency"]).upper()
        plan = Plan(**fields)
        try:
            plan.full_clean()
        except ValidationError as e:
            return Err("; ".join(e.messages))
        plan.save()
        logger.info(f"✅ [Billing] Created plan {plan}")
        return Ok(plan)

    @staticmethod
    def update_plan(plan_id: Any, data: dict[str, Any]) -> Result[Plan, str]:
        """
        Update a plan. If live subscriptions reference it and a pricing field
        changes, a new version is created and the old one is deactivated; the
        existing subscriptions keep the old version.
        """
        try:
            plan = Plan.objects.get(pk=plan_id)
        except (Plan.DoesNotExist, ValidationError, ValueError):
            return Err(f"Plan {plan_id} not found")

        updates = {key: data[key] for key in PLAN_EDITABLE_FIELDS if key in data}
        if "currency" in updates:
            updates["currency"] = str(updates["currency"]).upper()
        referenced = plan.subscriptions.filter(status__in=Subscription.LIVE_STATUSES).exists()
        pricing_changed = any(getattr(plan, key) != value for key, value in updates.items() if key in PLAN_PRICING_FIELDS)

        try:
            with transaction.atomic():
                if referenced and pricing_changed:
                    successor = Plan(
                        **{key: getattr(plan, key) for key in PLAN_EDITABLE_FIELDS},
                        version=plan.version + 1,
                        supersedes=plan,
                    )
                    for key, value in updates.items():
                        setattr(successor, key, value)
                    successor.full_clean()
                    plan.is_active = False
                    plan.save(update_fields=["is_active", "updated_at"])
                    successor.save()
                    logger.info(f"🆕 [Billing] Plan {plan.pk} superseded by version {successor.version}")
                    return Ok(successor)

                for key, value in updates.items():
                    setattr(plan, key, value)
                plan.full_clean()
                plan.save()
                return Ok(plan)
        except ValidationError as e:
            return Err("; ".join(e.messages))

    @staticmethod
    def delete_plan(plan_id: Any) -> Result[PlanDeleteResult, str]:
        """Delete an unreferenced plan; a referenced plan is only deactivated."""
        try:
            plan = Plan.objects.get(pk=plan_id)
        except (Plan.DoesNotExist, ValidationError, ValueError):
            return Err(f"Plan {plan_id} not found")

        if plan.subscriptions.exists() or Plan.objects.filter(supersedes=plan).exists():
            plan.is_active = False
            plan.save(update_fields=["is_active", "updated_at"])
            return Ok(PlanDeleteResult(plan=plan, deleted=False))

        plan.delete()
        return Ok(PlanDeleteResult(plan=plan, deleted=True))


# ===============================================================================
# BILLING ENGINE (provider events, reconciliation, sweeps)
# ===============================================================================


class BillingEngine:
    """Entry points shared by webhooks, tasks and management commands."""

    @staticmethod
    def ingest_payment_event(  # noqa: PLR0913
        subscription_id: Any,
        amount_cents: int,
        currency: str,
        outcome: str,
        provider_reference: str,
        reason: str = "",
        purpose: str = "manual",
        now: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Result[PaymentIngestion, str]:
        """Record a payment outcome and apply it. Replays return the prior result."""
        now = now or timezone.now()
        try:
            ingestion = SubscriptionStateMachine().ingest_payment(
                subscription_id,
                amount_cents,
                currency,
                outcome,
                provider_reference,
                now=now,
                reason=reason,
                purpose=purpose,
                metadata=metadata,
            )
        except Subscription.DoesNotExist:
            return Err(f"Subscription {subscription_id} not found")
        except ValidationError as e:
            return Err("; ".join(e.messages))
        except TransitionConflict as e:
            logger.error(f"🔥 [Billing] Gave up applying {provider_reference}: {e}")
            return Err(f"Subscription kept changing while applying {provider_reference}")
        return Ok(ingestion)

    @staticmethod
    def process_webhook(
        payload: bytes, signature: str, gateway: BasePaymentGateway | None = None
    ) -> Result[WebhookOutcome, str]:
        gateway = gateway or PaymentGatewayFactory.get_default_gateway()
        try:
            event = gateway.parse_webhook(payload, signature)
        except ValueError as e:
            logger.warning(f"⚠️ [Webhooks] Rejected {gateway.gateway_name} webhook: {e}")
            return Err(str(e))

        if not event["status"] or not event["reference"]:
            logger.info(f"⏭️ [Webhooks] Ignoring {event['event_type']} ({event['event_id']})")
            return Ok(
                WebhookOutcome(
                    event_id=event["event_id"], handled=False, duplicate=False, subscription_id=None, status=None
                )
            )

        attempt = ChargeAttempt.objects.filter(provider_reference=event["reference"]).first()
        subscription_id = attempt.subscription_id if attempt else event["subscription_id"]
        if not subscription_id:
            return Err(f"Payment reference {event['reference']} does not belong to a subscription")

        outcome = (
            PaymentRecord.OUTCOME_SUCCESS if event["status"] == CHARGE_SUCCEEDED else PaymentRecord.OUTCOME_FAILED
        )
        result = BillingEngine.ingest_payment_event(
            subscription_id,
            event["amount_cents"],
            event["currency"],
            outcome,
            event["reference"],
            reason=event["failure_reason"],
            purpose=attempt.purpose if attempt else "manual",
            metadata={"webhook_event_id": event["event_id"]},
        )
        if result.is_err():
            return Err(result.unwrap_err())

        ingestion = result.unwrap()
        return Ok(
            WebhookOutcome(
                event_id=event["event_id"],
                handled=True,
                duplicate=ingestion.duplicate,
                subscription_id=str(ingestion.subscription.pk),
                status=ingestion.subscription.status,
            )
        )

    @staticmethod
    def reconcile_pending_charges(
        now: datetime | None = None, gateway: BasePaymentGateway | None = None
    ) -> dict[str, int]:
        """Resolve charges whose outcome was unknown by asking the provider."""
        now = now or timezone.now()
        coordinator = ChargeCoordinator(gateway)
        machine = SubscriptionStateMachine(charges=coordinator)
        stats = {"resolved": 0, "errors": 0}

        for item in coordinator.reconcile(now):
            attempt, outcome = item.attempt, item.outcome
            try:
                machine.ingest_payment(
                    attempt.subscription_id,
                    attempt.amount_cents,
                    attempt.currency,
                    outcome.payment_outcome,
                    attempt.provider_reference,
                    now=now,
                    reason=outcome.failure_reason,
                    purpose=attempt.purpose,
                    provider_transaction_id=outcome.provider_transaction_id,
                )
                stats["resolved"] += 1
            except Exception as e:
                logger.exception(f"🔥 [Billing] Failed to ingest reconciled charge {attempt.provider_reference}: {e}")
                stats["errors"] += 1
        return stats

    @staticmethod
    def trigger_lifecycle_check(
        now: datetime | None = None, gateway: BasePaymentGateway | None = None
    ) -> SweepResult:
        """Run the lifecycle sweep on demand."""
        now = now or timezone.now()
        machine = SubscriptionStateMachine(charges=ChargeCoordinator(gateway))
        return LifecycleSweeper(machine=machine).sweep(now)
