"""
Payment Gateway Implementations
Unified interface in front of the payment provider.
"""

from .base import BasePaymentGateway, PaymentGatewayFactory
from .stripe_gateway import StripeGateway

__all__ = ['BasePaymentGateway', 'PaymentGatewayFactory', 'StripeGateway']
