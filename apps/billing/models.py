"""
Billing models
Re-exports the split model modules so Django and callers see one namespace.
"""

from .payment_models import ChargeAttempt, PaymentRecord
from .plan_models import Plan
from .subscription_models import Subscription, SubscriptionTransition

__all__ = [
    "ChargeAttempt",
    "PaymentRecord",
    "Plan",
    "Subscription",
    "SubscriptionTransition",
]
