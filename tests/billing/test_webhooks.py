# ===============================================================================
# PAYMENT WEBHOOK TESTS
# ===============================================================================

from types import SimpleNamespace
from unittest.mock import patch

import stripe
from django.test import TestCase, override_settings

from apps.billing.charging import ChargeCoordinator
from apps.billing.gateways.base import CHARGE_FAILED, CHARGE_NOT_FOUND, CHARGE_SUCCEEDED, CHARGE_UNKNOWN
from apps.billing.gateways.stripe_gateway import StripeGateway
from apps.billing.models import ChargeAttempt, PaymentRecord, Subscription
from apps.billing.subscription_service import BillingEngine
from tests.billing.helpers import FakeGateway, at, make_event, make_subscription


class WebhookIngestionTestCase(TestCase):
    """Test provider events flowing into the ledger and state machine"""

    def setUp(self) -> None:
        self.gateway = FakeGateway()
        self.subscription = make_subscription(
            status=Subscription.STATUS_PAST_DUE, failed_payment_count=1, next_retry_at=at(31), grace_period_ends_at=at(37)
        )
        self.reference = f"{self.subscription.pk}:retry:1"

    def deliver(self, key: str, signature: str = "valid"):
        return BillingEngine.process_webhook(key.encode(), signature, gateway=self.gateway)

    def test_invalid_signature_rejected(self) -> None:
        self.gateway.events["evt"] = make_event(self.reference, subscription_id=str(self.subscription.pk))
        result = self.deliver("evt", signature="forged")
        self.assertTrue(result.is_err())
        self.assertEqual(PaymentRecord.objects.count(), 0)

    def test_success_event_recovers_subscription(self) -> None:
        self.gateway.events["evt"] = make_event(self.reference, subscription_id=str(self.subscription.pk))
        outcome = self.deliver("evt").unwrap()

        self.assertTrue(outcome["handled"])
        self.assertFalse(outcome["duplicate"])
        self.assertEqual(outcome["status"], Subscription.STATUS_ACTIVE)
        self.assertEqual(outcome["subscription_id"], str(self.subscription.pk))

    def test_replayed_event_is_duplicate(self) -> None:
        """Test a redelivered webhook changes nothing"""
        self.gateway.events["evt"] = make_event(self.reference, subscription_id=str(self.subscription.pk))
        self.deliver("evt")
        replay = self.deliver("evt").unwrap()

        self.assertTrue(replay["duplicate"])
        self.assertEqual(PaymentRecord.objects.count(), 1)
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.version, 2)

    def test_event_matched_by_charge_reference(self) -> None:
        """Test an event without subscription metadata resolves through the pending charge"""
        ChargeCoordinator(FakeGateway(charges=[CHARGE_UNKNOWN])).charge(self.subscription, self.reference, "retry", at(31))
        self.gateway.events["evt"] = make_event(self.reference, status=CHARGE_FAILED)
        outcome = self.deliver("evt").unwrap()

        self.assertEqual(outcome["status"], Subscription.STATUS_PAST_DUE)
        payment = PaymentRecord.objects.get(provider_reference=self.reference)
        self.assertEqual(payment.purpose, "retry")
        self.assertEqual(ChargeAttempt.objects.get(provider_reference=self.reference).status, ChargeAttempt.STATUS_RESOLVED)
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.failed_payment_count, 2)

    def test_unhandled_event_ignored(self) -> None:
        self.gateway.events["evt"] = make_event("", status="", event_type="customer.created")
        outcome = self.deliver("evt").unwrap()
        self.assertFalse(outcome["handled"])

    def test_unknown_reference_rejected(self) -> None:
        self.gateway.events["evt"] = make_event("nobody:renewal:1")
        self.assertTrue(self.deliver("evt").is_err())


@override_settings(STRIPE_SECRET_KEY="sk_test_fake_key", STRIPE_WEBHOOK_SECRET="whsec_test_fake_secret")
class StripeGatewayTestCase(TestCase):
    """Test the Stripe adapter with the SDK patched out"""

    def setUp(self) -> None:
        self.gateway = StripeGateway()

    @patch("stripe.PaymentIntent.create")
    def test_charge_uses_reference_as_idempotency_key(self, mock_create) -> None:
        mock_create.return_value = SimpleNamespace(id="pi_1", status="succeeded")
        result = self.gateway.charge("sub:renewal:1", 5000, "NGN", customer_code="cus_1", authorization_code="pm_1")

        self.assertEqual(result["status"], CHARGE_SUCCEEDED)
        kwargs = mock_create.call_args.kwargs
        self.assertEqual(kwargs["idempotency_key"], "sub:renewal:1")
        self.assertEqual(kwargs["currency"], "ngn")
        self.assertEqual(kwargs["metadata"]["reference"], "sub:renewal:1")

    @patch("stripe.PaymentIntent.create")
    def test_connection_error_is_unknown(self, mock_create) -> None:
        mock_create.side_effect = stripe.APIConnectionError("connection reset")
        self.assertEqual(self.gateway.charge("ref", 5000, "NGN")["status"], CHARGE_UNKNOWN)

    @patch("stripe.PaymentIntent.create")
    def test_processing_intent_is_unknown(self, mock_create) -> None:
        mock_create.return_value = SimpleNamespace(id="pi_2", status="processing")
        self.assertEqual(self.gateway.charge("ref", 5000, "NGN")["status"], CHARGE_UNKNOWN)

    @patch("stripe.PaymentIntent.search")
    def test_lookup_not_found(self, mock_search) -> None:
        mock_search.return_value = SimpleNamespace(data=[])
        self.assertEqual(self.gateway.lookup_charge("ref")["status"], CHARGE_NOT_FOUND)

    @patch("stripe.Webhook.construct_event")
    def test_parse_webhook(self, mock_construct) -> None:
        mock_construct.return_value = {
            "id": "evt_1",
            "type": "payment_intent.payment_failed",
            "data": {
                "object": {
                    "amount": 5000,
                    "currency": "ngn",
                    "metadata": {"reference": "sub:retry:1", "subscription_id": "sub"},
                    "last_payment_error": {"message": "Your card was declined."},
                }
            },
        }
        event = self.gateway.parse_webhook(b"{}", "t=1,v1=abc")

        self.assertEqual(event["status"], CHARGE_FAILED)
        self.assertEqual(event["reference"], "sub:retry:1")
        self.assertEqual(event["currency"], "NGN")
        self.assertEqual(event["failure_reason"], "Your card was declined.")

    def test_parse_webhook_bad_signature(self) -> None:
        with self.assertRaises(ValueError):
            self.gateway.parse_webhook(b'{"id": "evt_1"}', "t=1,v1=forged")
