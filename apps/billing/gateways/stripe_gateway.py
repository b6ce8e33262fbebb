"""
Stripe Payment Gateway
Off-session charges against a saved payment method, keyed by our reference.
"""

from __future__ import annotations

import logging
from typing import Any

import stripe
from django.conf import settings

from apps.billing.config import get_provider_timeout_seconds

from .base import (
    CHARGE_FAILED,
    CHARGE_NOT_FOUND,
    CHARGE_SUCCEEDED,
    CHARGE_UNKNOWN,
    BasePaymentGateway,
    ChargeResult,
    PaymentGatewayFactory,
    RefundResult,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

# PaymentIntent statuses that are final failures for an off-session charge
_FAILED_INTENT_STATUSES = frozenset({'requires_payment_method', 'canceled'})

_HANDLED_EVENTS = {
    'payment_intent.succeeded': CHARGE_SUCCEEDED,
    'payment_intent.payment_failed': CHARGE_FAILED,
}


# ===============================================================================
# STRIPE GATEWAY IMPLEMENTATION
# ===============================================================================


class StripeGateway(BasePaymentGateway):
    """
    💳 Stripe payment gateway implementation

    Charges are PaymentIntents confirmed off-session with our reference stored
    in metadata and used as the idempotency key, so lookups and replays are
    resolved by reference rather than by Stripe IDs.
    """

    def __init__(self) -> None:
        super().__init__()
        self._initialize_stripe()

    def _initialize_stripe(self) -> None:
        """Initialize Stripe SDK with API key and a bounded network timeout"""
        stripe.api_key = getattr(settings, 'STRIPE_SECRET_KEY', '')
        stripe.max_network_retries = 0  # retries are owned by dunning
        stripe.default_http_client = stripe.RequestsClient(timeout=get_provider_timeout_seconds())

    @property
    def gateway_name(self) -> str:
        return 'stripe'

    def validate_configuration(self) -> bool:
        if not getattr(settings, 'STRIPE_SECRET_KEY', ''):
            self.logger.error("❌ STRIPE_SECRET_KEY is not configured")
            return False
        if not getattr(settings, 'STRIPE_WEBHOOK_SECRET', ''):
            self.logger.warning("⚠️ STRIPE_WEBHOOK_SECRET not configured - webhooks will fail")
        return True

    # ---------------------------------------------------------------------------
    # Charges
    # ---------------------------------------------------------------------------

    def charge(
        self,
        reference: str,
        amount_cents: int,
        currency: str,
        customer_code: str = '',
        authorization_code: str = '',
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        params: dict[str, Any] = {
            'amount': amount_cents,
            'currency': currency.lower(),
            'confirm': True,
            'off_session': True,
            'metadata': {'reference': reference, **(metadata or {})},
        }
        if customer_code:
            params['customer'] = customer_code
        if authorization_code:
            params['payment_method'] = authorization_code

        try:
            intent = stripe.PaymentIntent.create(idempotency_key=reference, **params)
        except stripe.CardError as e:
            intent_id = getattr(getattr(e, 'error', None), 'payment_intent', None) or {}
            self.logger.warning(f"❌ Stripe declined {reference}: {e.user_message or e}")
            return ChargeResult(
                status=CHARGE_FAILED,
                provider_id=intent_id.get('id', '') if isinstance(intent_id, dict) else '',
                error=e.user_message or str(e),
            )
        except stripe.APIConnectionError as e:
            # The request may have reached Stripe; only a lookup can tell
            self.logger.error(f"🔥 Stripe unreachable while charging {reference}: {e}")
            return ChargeResult(status=CHARGE_UNKNOWN, provider_id='', error=str(e))
        except stripe.StripeError as e:
            self.logger.error(f"🔥 Stripe charge {reference} rejected: {e}")
            return ChargeResult(status=CHARGE_FAILED, provider_id='', error=str(e))

        return self._intent_to_result(intent)

    def lookup_charge(self, reference: str) -> ChargeResult:
        try:
            found = stripe.PaymentIntent.search(query=f"metadata['reference']:'{reference}'", limit=1)
        except stripe.StripeError as e:
            self.logger.error(f"🔥 Stripe lookup for {reference} failed: {e}")
            return ChargeResult(status=CHARGE_UNKNOWN, provider_id='', error=str(e))

        if not found.data:
            return ChargeResult(status=CHARGE_NOT_FOUND, provider_id='', error=None)
        return self._intent_to_result(found.data[0])

    def _intent_to_result(self, intent: Any) -> ChargeResult:
        if intent.status == 'succeeded':
            self.logger.info(f"💰 Stripe charge succeeded: {intent.id}")
            return ChargeResult(status=CHARGE_SUCCEEDED, provider_id=intent.id, error=None)
        if intent.status in _FAILED_INTENT_STATUSES:
            last_error = getattr(intent, 'last_payment_error', None)
            message = getattr(last_error, 'message', None) or f"Payment {intent.status}"
            return ChargeResult(status=CHARGE_FAILED, provider_id=intent.id, error=message)
        # processing / requires_action: not final yet
        return ChargeResult(status=CHARGE_UNKNOWN, provider_id=intent.id, error=f"Payment {intent.status}")

    # ---------------------------------------------------------------------------
    # Refunds
    # ---------------------------------------------------------------------------

    def refund(self, provider_reference: str, amount_cents: int, reason: str = '') -> RefundResult:
        located = self.lookup_charge(provider_reference)
        if located['status'] != CHARGE_SUCCEEDED:
            return RefundResult(
                success=False,
                refund_id='',
                error=located['error'] or f"No settled Stripe charge for {provider_reference}",
            )

        try:
            refund = stripe.Refund.create(
                payment_intent=located['provider_id'],
                amount=amount_cents,
                reason='requested_by_customer',
                metadata={'reference': provider_reference, 'reason': reason[:500]},
                idempotency_key=f"refund:{provider_reference}",
            )
        except stripe.StripeError as e:
            self.logger.error(f"🔥 Stripe refund for {provider_reference} failed: {e}")
            return RefundResult(success=False, refund_id='', error=str(e))

        self.logger.info(f"↩️ Stripe refund {refund.id} created for {provider_reference}")
        return RefundResult(success=True, refund_id=refund.id, error=None)

    # ---------------------------------------------------------------------------
    # Webhooks
    # ---------------------------------------------------------------------------

    def parse_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        secret = getattr(settings, 'STRIPE_WEBHOOK_SECRET', '')
        try:
            event = stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            raise ValueError(f"Invalid Stripe signature: {e}") from e

        intent = event['data']['object']
        metadata = intent.get('metadata') or {}
        last_error = intent.get('last_payment_error') or {}
        return WebhookEvent(
            event_id=event['id'],
            event_type=event['type'],
            reference=metadata.get('reference', ''),
            subscription_id=metadata.get('subscription_id', ''),
            status=_HANDLED_EVENTS.get(event['type'], ''),
            amount_cents=int(intent.get('amount') or 0),
            currency=(intent.get('currency') or '').upper(),
            failure_reason=last_error.get('message', '') if event['type'] == 'payment_intent.payment_failed' else '',
        )


# ===============================================================================
# GATEWAY REGISTRATION
# ===============================================================================

PaymentGatewayFactory.register_gateway('stripe', StripeGateway)
