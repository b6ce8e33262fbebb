# ===============================================================================
# BILLING TEST HELPERS - SCRIPTED GATEWAY AND BUILDERS
# ===============================================================================

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from apps.billing.gateways.base import (
    CHARGE_FAILED,
    CHARGE_NOT_FOUND,
    CHARGE_SUCCEEDED,
    CHARGE_UNKNOWN,
    BasePaymentGateway,
    ChargeResult,
    RefundResult,
    WebhookEvent,
)
from apps.billing.models import Plan, Subscription
from apps.organizations.models import Organization

UTC_START = datetime.fromisoformat("2026-04-01T00:00:00+00:00")


def at(day: int, hours: int = 0) -> datetime:
    """Synthetic clock: day 0 is 2026-04-01 00:00 UTC."""
    return UTC_START + timedelta(days=day, hours=hours)


class FakeGateway(BasePaymentGateway):
    """
    Scripted gateway. Charge outcomes are consumed in order; when the script
    runs out every charge succeeds.
    """

    def __init__(
        self,
        charges: list[str] | None = None,
        lookups: dict[str, str] | None = None,
        refund_ok: bool = True,
        raise_on_charge: Exception | None = None,
    ) -> None:
        super().__init__()
        self.script = list(charges or [])
        self.lookups = dict(lookups or {})
        self.refund_ok = refund_ok
        self.raise_on_charge = raise_on_charge
        self.charges: list[dict[str, Any]] = []
        self.refunds: list[str] = []
        self.events: dict[str, WebhookEvent] = {}

    @property
    def gateway_name(self) -> str:
        return "fake"

    def charge(
        self,
        reference: str,
        amount_cents: int,
        currency: str,
        customer_code: str = "",
        authorization_code: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        self.charges.append(
            {"reference": reference, "amount_cents": amount_cents, "currency": currency, "metadata": metadata}
        )
        if self.raise_on_charge is not None:
            raise self.raise_on_charge
        status = self.script.pop(0) if self.script else CHARGE_SUCCEEDED
        if status == CHARGE_FAILED:
            return ChargeResult(status=status, provider_id=f"pi_{len(self.charges)}", error="Card declined")
        if status == CHARGE_UNKNOWN:
            return ChargeResult(status=status, provider_id="", error="Read timed out")
        return ChargeResult(status=status, provider_id=f"pi_{len(self.charges)}", error=None)

    def lookup_charge(self, reference: str) -> ChargeResult:
        status = self.lookups.get(reference, CHARGE_NOT_FOUND)
        error = "Card declined" if status == CHARGE_FAILED else None
        return ChargeResult(status=status, provider_id="pi_lookup" if status != CHARGE_NOT_FOUND else "", error=error)

    def refund(self, provider_reference: str, amount_cents: int, reason: str = "") -> RefundResult:
        self.refunds.append(provider_reference)
        if not self.refund_ok:
            return RefundResult(success=False, refund_id="", error="Charge already refunded")
        return RefundResult(success=True, refund_id=f"re_{len(self.refunds)}", error=None)

    def parse_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        if signature != "valid":
            raise ValueError("Invalid signature")
        key = payload.decode()
        if key not in self.events:
            raise ValueError("Malformed payload")
        return self.events[key]


def make_event(  # noqa: PLR0913
    reference: str,
    status: str = CHARGE_SUCCEEDED,
    amount_cents: int = 5000,
    currency: str = "NGN",
    event_id: str = "evt_1",
    event_type: str = "payment_intent.succeeded",
    subscription_id: str = "",
) -> WebhookEvent:
    return WebhookEvent(
        event_id=event_id,
        event_type=event_type,
        reference=reference,
        subscription_id=subscription_id,
        status=status,
        amount_cents=amount_cents,
        currency=currency,
        failure_reason="Card declined" if status == CHARGE_FAILED else "",
    )


# ===============================================================================
# BUILDERS
# ===============================================================================

_counter = {"n": 0}


def _next() -> int:
    _counter["n"] += 1
    return _counter["n"]


def make_organization(**overrides: Any) -> Organization:
    n = _next()
    fields: dict[str, Any] = {
        "name": f"Acme {n}",
        "email": f"billing{n}@acme.test",
        "customer_code": f"cus_{n}",
    }
    fields.update(overrides)
    return Organization.objects.create(**fields)


def make_plan(**overrides: Any) -> Plan:
    fields: dict[str, Any] = {
        "name": f"Pro {_next()}",
        "amount_cents": 5000,
        "currency": "NGN",
        "interval": "monthly",
        "interval_count": 1,
        "trial_period_days": 0,
    }
    fields.update(overrides)
    return Plan.objects.create(**fields)


def make_subscription(
    organization: Organization | None = None,
    plan: Plan | None = None,
    status: str = Subscription.STATUS_ACTIVE,
    start: datetime | None = None,
    **overrides: Any,
) -> Subscription:
    """Insert a subscription directly; period is one month from `start`."""
    start = start or UTC_START
    fields: dict[str, Any] = {
        "organization": organization or make_organization(),
        "plan": plan or make_plan(),
        "status": status,
        "current_period_start": start,
        "current_period_end": start + timedelta(days=30),
        "next_billing_date": start + timedelta(days=30),
        "billing_anchor_day": start.day,
        "created_at": start,
    }
    if status == Subscription.STATUS_TRIAL:
        fields.update(trial_start=start, trial_end=start + timedelta(days=14))
        fields.update(current_period_end=fields["trial_end"], next_billing_date=fields["trial_end"])
    fields.update(overrides)
    return Subscription.objects.create(**fields)
