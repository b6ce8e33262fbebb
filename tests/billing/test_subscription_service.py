# ===============================================================================
# SUBSCRIPTION SERVICE TESTS
# ===============================================================================

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.test import TestCase

from apps.billing.ledger import PaymentLedger
from apps.billing.models import PaymentRecord, Plan, Subscription, SubscriptionTransition
from apps.billing.subscription_service import PlanService, SubscriptionService
from tests.billing.helpers import FakeGateway, at, make_organization, make_plan, make_subscription

User = get_user_model()


class CreateSubscriptionTestCase(TestCase):
    """Test subscription creation"""

    def setUp(self) -> None:
        self.organization = make_organization(customer_code="cus_globex")
        self.plan = make_plan()

    def test_create_active_subscription(self) -> None:
        result = SubscriptionService.create_organization_subscription(self.organization.pk, self.plan.pk, now=at(0))

        self.assertTrue(result.is_ok())
        subscription = result.unwrap()
        self.assertEqual(subscription.status, Subscription.STATUS_ACTIVE)
        self.assertEqual(subscription.current_period_start, at(0))
        self.assertEqual(subscription.current_period_end, at(30))
        self.assertEqual(subscription.version, 1)
        self.assertTrue(
            SubscriptionTransition.objects.filter(subscription=subscription, activity_type="subscription_created").exists()
        )

    def test_create_trial_subscription(self) -> None:
        plan = make_plan(trial_period_days=7)
        subscription = SubscriptionService.create_organization_subscription(
            self.organization.pk, plan.pk, now=at(0)
        ).unwrap()
        self.assertEqual(subscription.status, Subscription.STATUS_TRIAL)
        self.assertEqual(subscription.trial_end, at(7))
        self.assertEqual(subscription.next_billing_date, at(7))

    def test_create_by_customer_code(self) -> None:
        """Test the provider customer code resolves the organization"""
        result = SubscriptionService.create_subscription("cus_globex", self.plan.pk, authorization_code="pm_1")
        self.assertTrue(result.is_ok())
        self.assertEqual(result.unwrap().organization, self.organization)
        self.assertEqual(result.unwrap().authorization_code, "pm_1")

    def test_unknown_customer(self) -> None:
        result = SubscriptionService.create_subscription("cus_nobody", self.plan.pk)
        self.assertTrue(result.is_err())
        self.assertIn("Unknown customer", result.unwrap_err())

    def test_repeat_for_same_plan_returns_existing(self) -> None:
        first = SubscriptionService.create_organization_subscription(self.organization.pk, self.plan.pk).unwrap()
        second = SubscriptionService.create_organization_subscription(self.organization.pk, self.plan.pk).unwrap()
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(Subscription.objects.count(), 1)

    def test_second_live_subscription_rejected(self) -> None:
        SubscriptionService.create_organization_subscription(self.organization.pk, self.plan.pk)
        result = SubscriptionService.create_organization_subscription(self.organization.pk, make_plan().pk)
        self.assertTrue(result.is_err())
        self.assertIn("already has", result.unwrap_err())

    def test_inactive_plan_rejected(self) -> None:
        plan = make_plan(is_active=False)
        result = SubscriptionService.create_organization_subscription(self.organization.pk, plan.pk)
        self.assertTrue(result.is_err())

    def test_missing_plan_and_organization(self) -> None:
        missing_plan = SubscriptionService.create_organization_subscription(self.organization.pk, "not-a-uuid")
        self.assertTrue(missing_plan.unwrap_err().endswith("not found"))
        missing_org = SubscriptionService.create_organization_subscription(
            "00000000-0000-0000-0000-000000000000", self.plan.pk
        )
        self.assertTrue(missing_org.unwrap_err().endswith("not found"))


class CancelSubscriptionTestCase(TestCase):
    def test_cancel(self) -> None:
        subscription = make_subscription()
        result = SubscriptionService.cancel_subscription(subscription.pk, reason="fraud", now=at(3))
        self.assertEqual(result.unwrap().status, Subscription.STATUS_CANCELLED)

    def test_cancel_unknown(self) -> None:
        result = SubscriptionService.cancel_subscription("00000000-0000-0000-0000-000000000000")
        self.assertTrue(result.unwrap_err().endswith("not found"))

    def test_cancel_invalid_reason(self) -> None:
        subscription = make_subscription()
        self.assertTrue(SubscriptionService.cancel_subscription(subscription.pk, reason="whim").is_err())


class PaymentOperationsTestCase(TestCase):
    """Test manual retry and refund"""

    def setUp(self) -> None:
        self.gateway = FakeGateway()
        self.subscription = make_subscription(
            status=Subscription.STATUS_PAST_DUE, failed_payment_count=1, next_retry_at=at(31), grace_period_ends_at=at(37)
        )
        self.failed = PaymentLedger.record_payment(
            self.subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_FAILED, "fail-1", "Card declined", occurred_at=at(30)
        )

    def test_retry_failed_payment(self) -> None:
        outcome = SubscriptionService.retry_failed_payment(self.failed.pk, now=at(30, hours=2), gateway=self.gateway)

        self.assertTrue(outcome.is_ok())
        retry = outcome.unwrap()
        self.assertEqual(retry["subscription"].status, Subscription.STATUS_ACTIVE)
        self.assertEqual(retry["payment"].purpose, "retry")
        self.assertFalse(retry["pending"])

    def test_retry_requires_failed_payment(self) -> None:
        paid = PaymentLedger.record_payment(
            self.subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_SUCCESS, "paid-1", occurred_at=at(1)
        )
        result = SubscriptionService.retry_failed_payment(paid.pk, gateway=self.gateway)
        self.assertTrue(result.is_err())
        self.assertEqual(self.gateway.charges, [])

    def test_retry_with_unknown_outcome_is_pending(self) -> None:
        self.gateway.raise_on_charge = TimeoutError("timed out")
        retry = SubscriptionService.retry_failed_payment(
            self.failed.pk, now=at(30, hours=2), gateway=self.gateway
        ).unwrap()
        self.assertTrue(retry["pending"])
        self.assertIsNone(retry["payment"])
        self.assertEqual(retry["subscription"].status, Subscription.STATUS_PAST_DUE)

    def test_refund_creates_refunded_record(self) -> None:
        paid = PaymentLedger.record_payment(
            self.subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_SUCCESS, "paid-2", occurred_at=at(1)
        )
        refund = SubscriptionService.refund_payment(paid.pk, reason="duplicate", now=at(2), gateway=self.gateway).unwrap()

        self.assertEqual(refund.outcome, PaymentRecord.OUTCOME_REFUNDED)
        self.assertEqual(refund.provider_reference, "refund:paid-2")
        self.assertEqual(refund.refund_of, paid)
        self.assertEqual(refund.amount_cents, 5000)

        again = SubscriptionService.refund_payment(paid.pk, gateway=self.gateway).unwrap()
        self.assertEqual(again.pk, refund.pk)
        self.assertEqual(self.gateway.refunds, ["paid-2"])

    def test_refund_rejected_by_provider(self) -> None:
        paid = PaymentLedger.record_payment(
            self.subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_SUCCESS, "paid-3", occurred_at=at(1)
        )
        result = SubscriptionService.refund_payment(paid.pk, gateway=FakeGateway(refund_ok=False))
        self.assertTrue(result.is_err())
        self.assertFalse(PaymentRecord.objects.filter(outcome=PaymentRecord.OUTCOME_REFUNDED).exists())

    def test_refund_of_failed_payment_rejected(self) -> None:
        self.assertTrue(SubscriptionService.refund_payment(self.failed.pk, gateway=self.gateway).is_err())


class SubscriptionStatusViewTestCase(TestCase):
    """Test the organization-facing status view"""

    def setUp(self) -> None:
        self.organization = make_organization()

    def test_no_subscription(self) -> None:
        view = SubscriptionService.organization_subscription_status(self.organization.pk, now=at(0)).unwrap()
        self.assertFalse(view["has_active_subscription"])
        self.assertIsNone(view["days_until_expiry"])
        self.assertIsNone(view["subscription"])

    def test_active_subscription(self) -> None:
        make_subscription(organization=self.organization)
        view = SubscriptionService.organization_subscription_status(self.organization.pk, now=at(20)).unwrap()
        self.assertTrue(view["has_active_subscription"])
        self.assertEqual(view["days_until_expiry"], 10)
        self.assertFalse(view["is_in_grace_period"])

    def test_grace_period_subscription(self) -> None:
        make_subscription(
            organization=self.organization, status=Subscription.STATUS_GRACE_PERIOD, grace_period_ends_at=at(40)
        )
        view = SubscriptionService.organization_subscription_status(self.organization.pk, now=at(35)).unwrap()
        self.assertFalse(view["has_active_subscription"])
        self.assertTrue(view["is_in_grace_period"])
        self.assertEqual(view["days_until_expiry"], 5)

    def test_unknown_organization(self) -> None:
        result = SubscriptionService.organization_subscription_status("00000000-0000-0000-0000-000000000000")
        self.assertTrue(result.is_err())


class ListingTestCase(TestCase):
    def setUp(self) -> None:
        self.active = make_subscription()
        self.past_due = make_subscription(status=Subscription.STATUS_PAST_DUE)

    def test_filter_by_status(self) -> None:
        listed = list(SubscriptionService.list_subscriptions({"status": Subscription.STATUS_PAST_DUE}))
        self.assertEqual(listed, [self.past_due])

    def test_unknown_status_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            SubscriptionService.list_subscriptions({"status": "zombie"})

    def test_pagination(self) -> None:
        self.assertEqual(len(SubscriptionService.list_subscriptions({"limit": 1})), 1)
        self.assertEqual(len(SubscriptionService.list_subscriptions({"offset": 1, "limit": 5})), 1)

    def test_failed_payments(self) -> None:
        PaymentLedger.record_payment(self.past_due.pk, 5000, "NGN", PaymentRecord.OUTCOME_FAILED, "lst-f")
        PaymentLedger.record_payment(self.active.pk, 5000, "NGN", PaymentRecord.OUTCOME_SUCCESS, "lst-s")
        failed = list(SubscriptionService.failed_payments())
        self.assertEqual([payment.provider_reference for payment in failed], ["lst-f"])

    def test_organization_filters(self) -> None:
        listed = SubscriptionService.list_organizations({"subscription_status": Subscription.STATUS_PAST_DUE})
        self.assertEqual(list(listed), [self.past_due.organization])


class PlanServiceTestCase(TestCase):
    """Test plan management with versioning"""

    def test_create_plan_defaults_currency(self) -> None:
        plan = PlanService.create_plan({"name": "Starter", "amount_cents": 1000}).unwrap()
        self.assertEqual(plan.currency, "NGN")
        self.assertEqual(plan.interval, "monthly")

    def test_create_plan_validates(self) -> None:
        result = PlanService.create_plan(
            {"name": "Broken", "amount_cents": 1000, "retry_base_delay_hours": 48, "retry_max_delay_hours": 24}
        )
        self.assertTrue(result.is_err())

    def test_update_unreferenced_plan_in_place(self) -> None:
        plan = make_plan()
        updated = PlanService.update_plan(plan.pk, {"amount_cents": 7000}).unwrap()
        self.assertEqual(updated.pk, plan.pk)
        self.assertEqual(updated.amount_cents, 7000)

    def test_price_change_on_referenced_plan_creates_version(self) -> None:
        """Test live subscriptions keep the price they signed up for"""
        plan = make_plan()
        subscription = make_subscription(plan=plan)
        successor = PlanService.update_plan(plan.pk, {"amount_cents": 7000}).unwrap()

        self.assertNotEqual(successor.pk, plan.pk)
        self.assertEqual(successor.version, 2)
        self.assertEqual(successor.supersedes_id, plan.pk)
        plan.refresh_from_db()
        self.assertFalse(plan.is_active)
        subscription.refresh_from_db()
        self.assertEqual(subscription.plan.amount_cents, 5000)

    def test_rename_referenced_plan_in_place(self) -> None:
        plan = make_plan()
        make_subscription(plan=plan)
        renamed = PlanService.update_plan(plan.pk, {"name": "Pro Plus"}).unwrap()
        self.assertEqual(renamed.pk, plan.pk)

    def test_delete_plan(self) -> None:
        unused = make_plan()
        used = make_plan()
        make_subscription(plan=used)

        self.assertTrue(PlanService.delete_plan(unused.pk).unwrap()["deleted"])
        self.assertFalse(Plan.objects.filter(pk=unused.pk).exists())
        kept = PlanService.delete_plan(used.pk).unwrap()
        self.assertFalse(kept["deleted"])
        self.assertFalse(kept["plan"].is_active)

    def test_list_plans_counts_live_subscriptions(self) -> None:
        plan = make_plan()
        make_subscription(plan=plan)
        make_subscription(plan=plan, status=Subscription.STATUS_CANCELLED)
        listed = PlanService.list_plans().get(pk=plan.pk)
        self.assertEqual(listed.active_subscriptions_count, 1)
