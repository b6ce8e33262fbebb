# ===============================================================================
# SUBSCRIPTION STATE MACHINE TESTS
# ===============================================================================

from datetime import timedelta
from unittest.mock import MagicMock, patch

from django.core.exceptions import ValidationError
from django.test import TestCase, override_settings

from apps.billing.charging import ChargeCoordinator
from apps.billing.exceptions import LifecycleInvariantViolation, TransitionConflict
from apps.billing.gateways.base import CHARGE_FAILED
from apps.billing.models import PaymentRecord, Subscription, SubscriptionTransition
from apps.billing.signals import subscription_status_changed
from apps.billing.state_machine import SubscriptionStateMachine
from tests.billing.helpers import FakeGateway, at, make_organization, make_plan, make_subscription


def machine_with(gateway: FakeGateway) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(charges=ChargeCoordinator(gateway))


class TrialEvaluationTestCase(TestCase):
    """Test what happens when a trial ends"""

    def setUp(self) -> None:
        self.gateway = FakeGateway()
        self.machine = machine_with(self.gateway)
        self.plan = make_plan(trial_period_days=14)
        self.subscription = make_subscription(plan=self.plan, status=Subscription.STATUS_TRIAL)

    def test_trial_not_due_is_untouched(self) -> None:
        evaluation = self.machine.evaluate(self.subscription.pk, at(13))
        self.assertFalse(evaluation.changed)
        self.assertEqual(self.gateway.charges, [])

    def test_trial_converts_on_successful_charge(self) -> None:
        """Test trial end charges the plan and starts the first paid period at trial end"""
        evaluation = self.machine.evaluate(self.subscription.pk, at(14))

        self.assertEqual(evaluation.to_status, Subscription.STATUS_ACTIVE)
        self.assertEqual(evaluation.activity, "trial_converted")
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, Subscription.STATUS_ACTIVE)
        self.assertEqual(self.subscription.current_period_start, at(14))
        self.assertEqual(self.subscription.current_period_end, at(14) + timedelta(days=30))
        self.assertEqual(self.subscription.last_payment_date, at(14))
        self.assertEqual(self.subscription.version, 2)

        reference = f"{self.subscription.pk}:trial:{int(at(14).timestamp())}"
        self.assertEqual(self.gateway.charges[0]["reference"], reference)
        payment = PaymentRecord.objects.get(provider_reference=reference)
        self.assertEqual(payment.purpose, "trial_conversion")
        transition = SubscriptionTransition.objects.get(subscription=self.subscription, activity_type="trial_converted")
        self.assertEqual(transition.payment, payment)
        self.assertEqual(transition.version, 2)

    def test_trial_conversion_failure_enters_past_due(self) -> None:
        """Test a declined conversion charge starts dunning"""
        self.gateway.script = [CHARGE_FAILED]
        self.machine.evaluate(self.subscription.pk, at(14))

        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, Subscription.STATUS_PAST_DUE)
        self.assertEqual(self.subscription.failed_payment_count, 1)
        self.assertEqual(self.subscription.next_retry_at, at(14) + timedelta(hours=24))
        self.assertEqual(self.subscription.grace_period_ends_at, at(21))

    def test_free_plan_converts_without_charge(self) -> None:
        free = make_subscription(plan=make_plan(amount_cents=0, trial_period_days=14), status=Subscription.STATUS_TRIAL)
        evaluation = self.machine.evaluate(free.pk, at(14))
        self.assertEqual(evaluation.to_status, Subscription.STATUS_ACTIVE)
        self.assertEqual(self.gateway.charges, [])

    def test_prepaid_trial_converts_without_second_charge(self) -> None:
        """Test a payment settled during the trial is applied at trial end"""
        ingestion = self.machine.ingest_payment(
            self.subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_SUCCESS, "prepaid-1", now=at(5)
        )
        self.assertIsNone(ingestion.transition)
        self.assertEqual(ingestion.subscription.status, Subscription.STATUS_TRIAL)

        evaluation = self.machine.evaluate(self.subscription.pk, at(14))
        self.assertEqual(evaluation.to_status, Subscription.STATUS_ACTIVE)
        self.assertEqual(self.gateway.charges, [])

    def test_trial_cancelled_at_period_end_expires(self) -> None:
        Subscription.objects.filter(pk=self.subscription.pk).update(cancel_at_period_end=True)
        evaluation = self.machine.evaluate(self.subscription.pk, at(15))
        self.assertEqual(evaluation.to_status, Subscription.STATUS_EXPIRED)
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.ended_at, at(14))
        self.assertEqual(self.gateway.charges, [])


class RenewalEvaluationTestCase(TestCase):
    """Test period rollover for active subscriptions"""

    def setUp(self) -> None:
        self.gateway = FakeGateway()
        self.machine = machine_with(self.gateway)
        self.subscription = make_subscription()

    def test_renewal_period_starts_at_previous_end(self) -> None:
        """Test a renewal charged late still starts the new period at the old end"""
        old_end = self.subscription.current_period_end
        self.machine.evaluate(self.subscription.pk, old_end + timedelta(hours=3))

        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, Subscription.STATUS_ACTIVE)
        self.assertEqual(self.subscription.current_period_start, old_end)
        # Anchored on the 1st: May 1 -> June 1
        self.assertEqual(self.subscription.current_period_end, at(61))
        self.assertEqual(
            self.gateway.charges[0]["reference"], f"{self.subscription.pk}:renewal:{int(old_end.timestamp())}"
        )

    def test_renewal_failure_enters_past_due(self) -> None:
        self.gateway.script = [CHARGE_FAILED]
        evaluation = self.machine.evaluate(self.subscription.pk, at(30))
        self.assertEqual(evaluation.to_status, Subscription.STATUS_PAST_DUE)
        self.assertEqual(evaluation.activity, "payment_failed")

    def test_cancel_at_period_end_expires_without_charge(self) -> None:
        Subscription.objects.filter(pk=self.subscription.pk).update(cancel_at_period_end=True)
        evaluation = self.machine.evaluate(self.subscription.pk, at(30))
        self.assertEqual(evaluation.to_status, Subscription.STATUS_EXPIRED)
        self.assertEqual(self.gateway.charges, [])

    def test_gateway_exception_leaves_subscription_untouched(self) -> None:
        """Test an unobservable charge outcome is skipped, not treated as failure"""
        self.gateway.raise_on_charge = TimeoutError("read timed out")
        evaluation = self.machine.evaluate(self.subscription.pk, at(30))

        self.assertTrue(evaluation.skipped)
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, Subscription.STATUS_ACTIVE)
        self.assertEqual(self.subscription.failed_payment_count, 0)
        self.assertEqual(PaymentRecord.objects.count(), 0)


class PaymentIngestionTestCase(TestCase):
    """Test applying payment outcomes to subscriptions"""

    def setUp(self) -> None:
        self.machine = machine_with(FakeGateway())

    def past_due(self, **overrides):
        fields = {
            "status": Subscription.STATUS_PAST_DUE,
            "failed_payment_count": 2,
            "next_retry_at": at(33),
            "grace_period_ends_at": at(37),
        }
        fields.update(overrides)
        return make_subscription(**fields)

    def test_recovery_from_past_due_starts_fresh_period(self) -> None:
        """Test a late payment resets counters and starts the period at payment time"""
        subscription = self.past_due()
        ingestion = self.machine.ingest_payment(
            subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_SUCCESS, "ext-1", now=at(32)
        )

        self.assertEqual(ingestion.transition.activity_type, "payment_recovered")
        subscription.refresh_from_db()
        self.assertEqual(subscription.status, Subscription.STATUS_ACTIVE)
        self.assertEqual(subscription.current_period_start, at(32))
        self.assertEqual(subscription.failed_payment_count, 0)
        self.assertIsNone(subscription.next_retry_at)
        self.assertIsNone(subscription.grace_period_ends_at)

    def test_recovery_from_grace_period(self) -> None:
        subscription = self.past_due(status=Subscription.STATUS_GRACE_PERIOD, next_retry_at=None)
        self.machine.ingest_payment(subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_SUCCESS, "ext-g", now=at(40))
        subscription.refresh_from_db()
        self.assertEqual(subscription.status, Subscription.STATUS_ACTIVE)

    def test_failure_in_past_due_schedules_next_retry(self) -> None:
        subscription = self.past_due()
        self.machine.ingest_payment(subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_FAILED, "ext-f", now=at(33))
        subscription.refresh_from_db()
        self.assertEqual(subscription.status, Subscription.STATUS_PAST_DUE)
        self.assertEqual(subscription.failed_payment_count, 3)
        self.assertEqual(subscription.next_retry_at, at(33) + timedelta(hours=96))

    def test_early_failure_on_active_is_recorded_only(self) -> None:
        """Test a failure before the period ends does not move an active subscription"""
        subscription = make_subscription()
        ingestion = self.machine.ingest_payment(
            subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_FAILED, "ext-early", now=at(10)
        )
        self.assertIsNone(ingestion.transition)
        self.assertEqual(ingestion.subscription.status, Subscription.STATUS_ACTIVE)
        self.assertEqual(PaymentRecord.objects.count(), 1)

    def test_duplicate_event_returns_prior_result(self) -> None:
        """Test replaying a payment event produces no second record or transition"""
        subscription = self.past_due()
        first = self.machine.ingest_payment(
            subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_SUCCESS, "ext-dup", now=at(32)
        )
        replay = self.machine.ingest_payment(
            subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_SUCCESS, "ext-dup", now=at(35)
        )

        self.assertTrue(replay.duplicate)
        self.assertIsNone(replay.transition)
        self.assertEqual(replay.payment.pk, first.payment.pk)
        self.assertEqual(PaymentRecord.objects.filter(provider_reference="ext-dup").count(), 1)
        self.assertEqual(SubscriptionTransition.objects.filter(subscription=subscription).count(), 1)

    def test_payment_for_terminal_subscription_recorded_without_transition(self) -> None:
        subscription = make_subscription(status=Subscription.STATUS_CANCELLED)
        ingestion = self.machine.ingest_payment(
            subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_SUCCESS, "ext-late", now=at(40)
        )
        self.assertIsNone(ingestion.transition)
        self.assertEqual(ingestion.subscription.status, Subscription.STATUS_CANCELLED)
        self.assertTrue(PaymentRecord.objects.filter(provider_reference="ext-late").exists())

    def test_refund_does_not_change_status(self) -> None:
        subscription = make_subscription()
        paid = self.machine.ingest_payment(
            subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_SUCCESS, "ext-paid", now=at(1)
        ).payment
        ingestion = self.machine.ingest_payment(
            subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_REFUNDED, "refund:ext-paid", now=at(2), refund_of=paid
        )
        self.assertIsNone(ingestion.transition)
        self.assertEqual(ingestion.subscription.status, Subscription.STATUS_ACTIVE)


class TransitionPrimitiveTestCase(TestCase):
    """Test the version-guarded transition primitive"""

    def setUp(self) -> None:
        self.machine = machine_with(FakeGateway())

    def test_illegal_transition_raises(self) -> None:
        subscription = make_subscription(status=Subscription.STATUS_CANCELLED)
        with self.assertRaises(LifecycleInvariantViolation):
            self.machine.transition(subscription, Subscription.STATUS_ACTIVE, activity="renewed", now=at(1))

    def test_active_cannot_jump_to_grace(self) -> None:
        subscription = make_subscription()
        with self.assertRaises(LifecycleInvariantViolation):
            self.machine.transition(
                subscription, Subscription.STATUS_GRACE_PERIOD, activity="grace_period_started", now=at(1)
            )

    def test_stale_snapshot_conflicts(self) -> None:
        """Test a transition against an outdated version is rejected"""
        subscription = make_subscription()
        stale = Subscription.objects.get(pk=subscription.pk)
        self.machine.transition(subscription, Subscription.STATUS_PAST_DUE, activity="payment_failed", now=at(30))

        with self.assertRaises(TransitionConflict):
            self.machine.transition(stale, Subscription.STATUS_CANCELLED, activity="cancelled", now=at(30))
        self.assertEqual(Subscription.objects.get(pk=subscription.pk).status, Subscription.STATUS_PAST_DUE)

    def test_signal_sent_after_commit(self) -> None:
        """Test receivers are notified once the transition commits"""
        subscription = make_subscription()
        receiver = MagicMock()
        subscription_status_changed.connect(receiver)
        self.addCleanup(subscription_status_changed.disconnect, receiver)

        with self.captureOnCommitCallbacks(execute=True):
            self.machine.transition(subscription, Subscription.STATUS_PAST_DUE, activity="payment_failed", now=at(30))

        receiver.assert_called_once()
        kwargs = receiver.call_args.kwargs
        self.assertEqual(kwargs["from_status"], Subscription.STATUS_ACTIVE)
        self.assertEqual(kwargs["to_status"], Subscription.STATUS_PAST_DUE)
        self.assertEqual(kwargs["activity_type"], "payment_failed")


class CancellationTestCase(TestCase):
    """Test administrative cancellation"""

    def setUp(self) -> None:
        self.machine = machine_with(FakeGateway())
        self.organization = make_organization()

    def test_immediate_cancel(self) -> None:
        subscription = make_subscription(organization=self.organization, status=Subscription.STATUS_PAST_DUE)
        result = self.machine.cancel(subscription.pk, at(5), reason="customer_request", note="Moving away")
        self.assertEqual(result.status, Subscription.STATUS_CANCELLED)
        self.assertEqual(result.cancelled_at, at(5))
        self.assertEqual(result.cancellation_reason, "customer_request")
        self.assertIsNone(result.next_billing_date)

    def test_cancel_is_idempotent_for_terminal(self) -> None:
        subscription = make_subscription(organization=self.organization)
        self.machine.cancel(subscription.pk, at(5))
        again = self.machine.cancel(subscription.pk, at(6))
        self.assertEqual(again.cancelled_at, at(5))
        self.assertEqual(SubscriptionTransition.objects.filter(activity_type="cancelled").count(), 1)

    def test_cancel_at_period_end_keeps_access(self) -> None:
        subscription = make_subscription(organization=self.organization)
        result = self.machine.cancel(subscription.pk, at(5), at_period_end=True)
        self.assertEqual(result.status, Subscription.STATUS_ACTIVE)
        self.assertTrue(result.cancel_at_period_end)
        self.assertEqual(result.version, 2)

    def test_cancel_at_period_end_requires_paid_standing(self) -> None:
        subscription = make_subscription(organization=self.organization, status=Subscription.STATUS_PAST_DUE)
        with self.assertRaises(ValidationError):
            self.machine.cancel(subscription.pk, at(5), at_period_end=True)

    def test_unknown_reason_rejected(self) -> None:
        subscription = make_subscription(organization=self.organization)
        with self.assertRaises(ValidationError):
            self.machine.cancel(subscription.pk, at(5), reason="bored")

    def test_new_subscription_allowed_after_cancel(self) -> None:
        """Test only one live subscription per organization, terminal ones do not count"""
        subscription = make_subscription(organization=self.organization)
        self.machine.cancel(subscription.pk, at(5))
        replacement = make_subscription(organization=self.organization, start=at(6))
        self.assertEqual(replacement.status, Subscription.STATUS_ACTIVE)


@override_settings(BILLING_MAX_TRANSITION_RETRIES=2)
class ConflictRetryTestCase(TestCase):
    """Test version races that never settle are surfaced"""

    def setUp(self) -> None:
        self.machine = machine_with(FakeGateway())
        self.subscription = make_subscription(status=Subscription.STATUS_PAST_DUE, failed_payment_count=1)

    def test_ingest_raises_after_last_attempt(self) -> None:
        conflict = TransitionConflict(self.subscription.pk, 1)
        with patch.object(SubscriptionStateMachine, "apply_payment", side_effect=conflict) as mock_apply:
            with self.assertRaises(TransitionConflict):
                self.machine.ingest_payment(
                    self.subscription.pk, 5000, "NGN", PaymentRecord.OUTCOME_SUCCESS, "race-1", now=at(31)
                )

        self.assertEqual(mock_apply.call_count, 2)
        self.assertFalse(PaymentRecord.objects.filter(provider_reference="race-1").exists())

    def test_cancel_raises_after_last_attempt(self) -> None:
        conflict = TransitionConflict(self.subscription.pk, 1)
        with patch.object(SubscriptionStateMachine, "transition", side_effect=conflict) as mock_transition:
            with self.assertRaises(TransitionConflict):
                self.machine.cancel(self.subscription.pk, at(31))

        self.assertEqual(mock_transition.call_count, 2)
        self.assertEqual(Subscription.objects.get().status, Subscription.STATUS_PAST_DUE)
