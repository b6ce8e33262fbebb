"""
Billing lifecycle signals.

`subscription_status_changed` is sent after the transaction that committed
a transition, so receivers never observe a transition that was rolled back.

Receivers get: subscription, from_status, to_status, activity_type, reason.
"""

from django.dispatch import Signal

subscription_status_changed = Signal()
