"""
Base Payment Gateway
Narrow interface to the payment provider: charge, refund, look up a charge,
and verify a webhook. Everything else about the provider stays behind it.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar, TypedDict

from apps.billing.config import get_payment_gateway_name

logger = logging.getLogger(__name__)


# ===============================================================================
# TYPE DEFINITIONS
# ===============================================================================

# Charge statuses reported by gateways
CHARGE_SUCCEEDED = 'succeeded'
CHARGE_FAILED = 'failed'
CHARGE_UNKNOWN = 'unknown'  # timeout/network: the provider may or may not have charged
CHARGE_NOT_FOUND = 'not_found'  # lookup only: the provider never saw the reference


class ChargeResult(TypedDict):
    """Result from a charge or a charge lookup"""
    status: str
    provider_id: str
    error: str | None


class RefundResult(TypedDict):
    """Result from refund creation"""
    success: bool
    refund_id: str
    error: str | None


class WebhookEvent(TypedDict):
    """Provider-neutral payment event extracted from a verified webhook"""
    event_id: str
    event_type: str
    reference: str  # our charge reference (idempotency key)
    subscription_id: str
    status: str  # CHARGE_SUCCEEDED / CHARGE_FAILED, '' for events we ignore
    amount_cents: int
    currency: str
    failure_reason: str


# ===============================================================================
# ABSTRACT BASE GATEWAY
# ===============================================================================


class BasePaymentGateway(ABC):
    """
    🏛️ Abstract base class for all payment gateways

    Every charge carries our own reference, which the provider must treat as
    an idempotency key so a retried call never charges twice.
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(f"apps.billing.gateways.{self.__class__.__name__.lower()}")

    @property
    @abstractmethod
    def gateway_name(self) -> str:
        """Gateway identifier (e.g., 'stripe')"""

    @abstractmethod
    def charge(
        self,
        reference: str,
        amount_cents: int,
        currency: str,
        customer_code: str = '',
        authorization_code: str = '',
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        """
        Charge a stored payment method

        Args:
            reference: Our charge reference, used as the idempotency key
            amount_cents: Amount in minor units
            currency: ISO currency code
            customer_code: Provider customer identifier
            authorization_code: Provider payment method / authorization
            metadata: Additional metadata

        Returns:
            ChargeResult; status CHARGE_UNKNOWN when the outcome could not be observed
        """

    @abstractmethod
    def lookup_charge(self, reference: str) -> ChargeResult:
        """Ask the provider for the authoritative outcome of a charge reference."""

    @abstractmethod
    def refund(self, provider_reference: str, amount_cents: int, reason: str = '') -> RefundResult:
        """Refund a settled charge identified by our reference."""

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and normalise a webhook delivery

        Raises:
            ValueError: If the payload or signature is invalid
        """

    def validate_configuration(self) -> bool:
        """
        Validate gateway configuration (API keys, etc.)
        Override in subclasses for specific validation.
        """
        return True


# ===============================================================================
# GATEWAY FACTORY
# ===============================================================================


class PaymentGatewayFactory:
    """
    🏭 Factory for creating payment gateway instances
    """

    _gateways: ClassVar[dict[str, type[BasePaymentGateway]]] = {}

    @classmethod
    def register_gateway(cls, gateway_name: str, gateway_class: type[BasePaymentGateway]) -> None:
        """Register a payment gateway class"""
        cls._gateways[gateway_name] = gateway_class

    @classmethod
    def create_gateway(cls, gateway_name: str) -> BasePaymentGateway:
        """
        Create payment gateway instance

        Raises:
            ValueError: If gateway not found or not configured
        """
        if gateway_name not in cls._gateways:
            raise ValueError(f"Payment gateway '{gateway_name}' not registered")

        gateway = cls._gateways[gateway_name]()

        if not gateway.validate_configuration():
            raise ValueError(f"Payment gateway '{gateway_name}' not properly configured")

        logger.debug(f"✅ Created {gateway_name} payment gateway")
        return gateway

    @classmethod
    def get_default_gateway(cls) -> BasePaymentGateway:
        """Get the gateway named by BILLING_PAYMENT_GATEWAY"""
        return cls.create_gateway(get_payment_gateway_name())

    @classmethod
    def list_available_gateways(cls) -> list[str]:
        """List all registered gateway names"""
        return list(cls._gateways.keys())
