"""Typed webhook events.

Billing webhooks arrive as loosely shaped JSON. ``parse_event`` turns a
verified body into one of the event classes below so the reconciler only ever
sees validated fields. Stripe's native event names and the short canonical
names (``subscription.created`` and friends) map to the same classes.
Anything else becomes an ``UnknownEvent`` and is acknowledged without
side effects.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union

from services.exceptions import ValidationError
from utils.timestamps import parse_timestamp, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionData:
    subscription_id: str
    status: str
    customer_id: Optional[str] = None
    plan: Optional[str] = None
    price_id: Optional[str] = None
    user_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentData:
    payment_id: str
    amount_cents: int
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    currency: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionCreated:
    data: SubscriptionData
    occurred_at: datetime
    event_id: Optional[str] = None
    type: str = field(default="subscription.created", init=False)


@dataclass(frozen=True)
class SubscriptionUpdated:
    data: SubscriptionData
    occurred_at: datetime
    event_id: Optional[str] = None
    type: str = field(default="subscription.updated", init=False)


@dataclass(frozen=True)
class SubscriptionCanceled:
    data: SubscriptionData
    occurred_at: datetime
    event_id: Optional[str] = None
    type: str = field(default="subscription.canceled", init=False)


@dataclass(frozen=True)
class PaymentSucceeded:
    data: PaymentData
    occurred_at: datetime
    event_id: Optional[str] = None
    type: str = field(default="payment.succeeded", init=False)


@dataclass(frozen=True)
class PaymentFailed:
    data: PaymentData
    occurred_at: datetime
    event_id: Optional[str] = None
    type: str = field(default="payment.failed", init=False)


@dataclass(frozen=True)
class UnknownEvent:
    raw_type: str
    occurred_at: datetime
    event_id: Optional[str] = None
    type: str = field(default="unknown", init=False)


WebhookEvent = Union[
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionCanceled,
    PaymentSucceeded,
    PaymentFailed,
    UnknownEvent,
]

SUBSCRIPTION_EVENTS = {
    "subscription.created": SubscriptionCreated,
    "customer.subscription.created": SubscriptionCreated,
    "subscription.updated": SubscriptionUpdated,
    "subscription.renewed": SubscriptionUpdated,
    "customer.subscription.updated": SubscriptionUpdated,
    "subscription.canceled": SubscriptionCanceled,
    "subscription.cancelled": SubscriptionCanceled,
    "customer.subscription.deleted": SubscriptionCanceled,
}

PAYMENT_EVENTS = {
    "payment.succeeded": PaymentSucceeded,
    "invoice.payment_succeeded": PaymentSucceeded,
    "invoice.paid": PaymentSucceeded,
    "payment.failed": PaymentFailed,
    "invoice.payment_failed": PaymentFailed,
}


def _as_id(value: Any) -> Optional[str]:
    """Expanded objects carry their id under "id"; plain references are strings."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return _as_id(value.get("id"))
    return None


def _first_item(obj: Dict) -> Dict:
    items = obj.get("items")
    if isinstance(items, dict):
        data = items.get("data") or []
        if data and isinstance(data[0], dict):
            return data[0]
    return {}


def _price_id(obj: Dict) -> Optional[str]:
    item = _first_item(obj)
    price = _as_id(item.get("price")) if item else None
    if price:
        return price
    legacy_plan = obj.get("plan")
    return _as_id(legacy_plan) if isinstance(legacy_plan, dict) else obj.get("product_id")


def _event_object(data: Dict, key: str) -> Dict:
    for candidate in (data.get("object"), data.get(key), data):
        if isinstance(candidate, dict) and candidate:
            return candidate
    return {}


def _parse_subscription(obj: Dict, default_status: Optional[str] = None) -> SubscriptionData:
    metadata = obj.get("metadata") or {}
    item = _first_item(obj)

    subscription_id = obj.get("subscription_id") or _as_id(obj.get("id"))
    status = obj.get("status") or default_status
    if not subscription_id or not status:
        raise ValidationError("Malformed subscription event", details="subscription id and status are required")

    plan = metadata.get("plan") or obj.get("plan_id")
    if not plan and isinstance(obj.get("plan"), str):
        plan = obj["plan"]

    return SubscriptionData(
        subscription_id=subscription_id,
        status=str(status),
        customer_id=_as_id(obj.get("customer_id")) or _as_id(obj.get("customer")),
        plan=plan,
        price_id=_price_id(obj),
        user_id=metadata.get("user_id"),
        current_period_start=parse_timestamp(obj.get("current_period_start") or item.get("current_period_start")),
        current_period_end=parse_timestamp(obj.get("current_period_end") or item.get("current_period_end")),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
        canceled_at=parse_timestamp(obj.get("canceled_at")),
    )


def _invoice_subscription_id(obj: Dict) -> Optional[str]:
    direct = _as_id(obj.get("subscription_id")) or _as_id(obj.get("subscription"))
    if direct:
        return direct
    # newer Stripe API versions nest it under parent.subscription_details
    parent = obj.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _as_id(details.get("subscription"))


def _invoice_payment_id(obj: Dict) -> Optional[str]:
    # newer Stripe API versions list payments on the invoice instead of charge/payment_intent
    payments = obj.get("payments")
    entries = payments.get("data") if isinstance(payments, dict) else None
    for entry in entries or []:
        payment = entry.get("payment") if isinstance(entry, dict) else None
        if isinstance(payment, dict):
            found = _as_id(payment.get("payment_intent")) or _as_id(payment.get("charge"))
            if found:
                return found
    return None


def _parse_payment(obj: Dict, succeeded: bool) -> PaymentData:
    # payment and charge ids name a single attempt
    payment_id = _as_id(obj.get("payment_id")) or _as_id(obj.get("charge"))
    if not payment_id:
        # intents and invoices can fail and later succeed under the same id
        payment_id = _as_id(obj.get("payment_intent")) or _invoice_payment_id(obj) or _as_id(obj.get("id"))
        if payment_id and not succeeded:
            payment_id = f"{payment_id}:failed"
    if not payment_id:
        raise ValidationError("Malformed payment event", details="payment id is required")

    amount = obj.get("amount")
    if amount is None:
        amount = obj.get("amount_paid") if succeeded else obj.get("amount_due")
    try:
        amount_cents = int(amount or 0)
    except (TypeError, ValueError):
        raise ValidationError("Malformed payment event", details=f"invalid amount {amount!r}")

    return PaymentData(
        payment_id=payment_id,
        amount_cents=amount_cents,
        customer_id=_as_id(obj.get("customer_id")) or _as_id(obj.get("customer")),
        subscription_id=_invoice_subscription_id(obj),
        currency=(obj.get("currency") or None) and str(obj["currency"]).lower(),
    )


def parse_event(body: Union[bytes, str, Dict]) -> WebhookEvent:
    if isinstance(body, (bytes, str)):
        try:
            body = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError("Invalid webhook payload", details=str(e)) from e
    if not isinstance(body, dict):
        raise ValidationError("Invalid webhook payload", details="expected a JSON object")

    event_type = body.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ValidationError("Invalid webhook payload", details="missing event type")

    event_id = _as_id(body.get("id")) or _as_id(body.get("webhook_id"))
    occurred_at = parse_timestamp(body.get("created") or body.get("timestamp")) or utcnow()
    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    if event_type in SUBSCRIPTION_EVENTS:
        event_cls = SUBSCRIPTION_EVENTS[event_type]
        default_status = "canceled" if event_cls is SubscriptionCanceled else None
        parsed = _parse_subscription(_event_object(data, "subscription"), default_status)
        return event_cls(data=parsed, occurred_at=occurred_at, event_id=event_id)

    if event_type in PAYMENT_EVENTS:
        event_cls = PAYMENT_EVENTS[event_type]
        parsed = _parse_payment(_event_object(data, "payment"), succeeded=event_cls is PaymentSucceeded)
        return event_cls(data=parsed, occurred_at=occurred_at, event_id=event_id)

    return UnknownEvent(raw_type=event_type, occurred_at=occurred_at, event_id=event_id)
