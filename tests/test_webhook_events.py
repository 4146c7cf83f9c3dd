import json
from datetime import datetime, timezone

import pytest

from conftest import invoice_object, stripe_event, subscription_object
from services.exceptions import ValidationError
from services.webhook_events import (
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCanceled,
    SubscriptionCreated,
    SubscriptionUpdated,
    UnknownEvent,
    parse_event,
)


@pytest.mark.parametrize("event_type, expected", [
    ("subscription.created", SubscriptionCreated),
    ("customer.subscription.created", SubscriptionCreated),
    ("subscription.updated", SubscriptionUpdated),
    ("subscription.renewed", SubscriptionUpdated),
    ("customer.subscription.updated", SubscriptionUpdated),
    ("subscription.canceled", SubscriptionCanceled),
    ("subscription.cancelled", SubscriptionCanceled),
    ("customer.subscription.deleted", SubscriptionCanceled),
])
def test_subscription_event_types(event_type, expected):
    event = parse_event(stripe_event(event_type, subscription_object()))
    assert isinstance(event, expected)


def test_subscription_fields():
    body = stripe_event("customer.subscription.updated",
                        subscription_object(user_id="user-1", cancel_at_period_end=True),
                        created=1760000000, event_id="evt_42")

    event = parse_event(json.dumps(body).encode())

    assert event.event_id == "evt_42"
    assert event.occurred_at == datetime(2025, 10, 9, 8, 53, 20, tzinfo=timezone.utc)
    data = event.data
    assert data.subscription_id == "sub_test_1"
    assert data.customer_id == "cus_test_1"
    assert data.status == "active"
    assert data.plan == "individual"
    assert data.price_id == "price_individual"
    assert data.user_id == "user-1"
    assert data.cancel_at_period_end is True
    assert data.current_period_end > data.current_period_start


def test_flat_payload_shape():
    body = {
        "type": "subscription.created",
        "timestamp": "2025-01-01T00:00:00Z",
        "data": {
            "subscription_id": "sub_flat",
            "customer": {"id": "cus_flat"},
            "status": "active",
            "product_id": "price_business",
        },
    }

    event = parse_event(body)

    assert event.occurred_at == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert event.data.subscription_id == "sub_flat"
    assert event.data.customer_id == "cus_flat"
    assert event.data.price_id == "price_business"


def test_period_bounds_from_subscription_item():
    obj = subscription_object()
    del obj["current_period_start"]
    del obj["current_period_end"]
    obj["items"]["data"][0].update({"current_period_start": 1760000000, "current_period_end": 1762592000})

    data = parse_event(stripe_event("customer.subscription.updated", obj)).data

    assert data.current_period_start == datetime.fromtimestamp(1760000000, tz=timezone.utc)
    assert data.current_period_end == datetime.fromtimestamp(1762592000, tz=timezone.utc)


def test_cancel_event_without_status_defaults_to_canceled():
    obj = subscription_object()
    del obj["status"]

    event = parse_event(stripe_event("subscription.canceled", obj))

    assert event.data.status == "canceled"


def test_update_without_status_is_rejected():
    obj = subscription_object()
    del obj["status"]

    with pytest.raises(ValidationError):
        parse_event(stripe_event("customer.subscription.updated", obj))


@pytest.mark.parametrize("event_type, expected", [
    ("payment.succeeded", PaymentSucceeded),
    ("invoice.payment_succeeded", PaymentSucceeded),
    ("invoice.paid", PaymentSucceeded),
    ("payment.failed", PaymentFailed),
    ("invoice.payment_failed", PaymentFailed),
])
def test_payment_event_types(event_type, expected):
    assert isinstance(parse_event(stripe_event(event_type, invoice_object())), expected)


def test_payment_id_prefers_charge_over_intent():
    event = parse_event(stripe_event("invoice.paid", invoice_object(charge="ch_1", payment_intent="pi_1")))
    assert event.data.payment_id == "ch_1"


def test_payment_id_falls_back_to_invoice_id():
    event = parse_event(stripe_event("invoice.paid", invoice_object(payment_intent=None)))
    assert event.data.payment_id == "in_test_1"


def test_explicit_payment_fields():
    body = {
        "type": "payment.succeeded",
        "data": {"payment_id": "pay_1", "amount": 1999, "currency": "USD", "subscription_id": "sub_9"},
    }

    data = parse_event(body).data

    assert data.payment_id == "pay_1"
    assert data.amount_cents == 1999
    assert data.currency == "usd"
    assert data.subscription_id == "sub_9"


def test_failed_invoice_uses_amount_due():
    event = parse_event(stripe_event("invoice.payment_failed", invoice_object(amount_paid=0, amount_due=1999)))
    assert event.data.amount_cents == 1999


def test_invoice_subscription_from_parent_details():
    obj = invoice_object(subscription_id=None)
    obj["parent"] = {"type": "subscription_details", "subscription_details": {"subscription": "sub_nested"}}

    event = parse_event(stripe_event("invoice.paid", obj))

    assert event.data.subscription_id == "sub_nested"


def test_invalid_amount():
    with pytest.raises(ValidationError):
        parse_event({"type": "payment.succeeded", "data": {"payment_id": "pay_1", "amount": "lots"}})


def test_unknown_type():
    event = parse_event(stripe_event("customer.updated", {"id": "cus_1"}))

    assert isinstance(event, UnknownEvent)
    assert event.raw_type == "customer.updated"


@pytest.mark.parametrize("body", [b"{not json", b"[]", json.dumps({"data": {}}).encode()])
def test_malformed_payloads(body):
    with pytest.raises(ValidationError):
        parse_event(body)


def test_missing_created_uses_now():
    before = datetime.now(timezone.utc)
    event = parse_event({"type": "payment.succeeded", "data": {"payment_id": "pay_1", "amount": 1}})
    assert event.occurred_at >= before


def test_failed_attempt_keyed_apart_from_success():
    failed = parse_event(stripe_event("invoice.payment_failed", invoice_object(payment_intent=None)))
    paid = parse_event(stripe_event("invoice.payment_succeeded", invoice_object(payment_intent=None)))

    assert failed.data.payment_id == "in_test_1:failed"
    assert paid.data.payment_id == "in_test_1"


def test_failed_charge_keeps_charge_id():
    event = parse_event(stripe_event("invoice.payment_failed", invoice_object(charge="ch_declined")))
    assert event.data.payment_id == "ch_declined"


def test_payment_id_from_invoice_payments_list():
    obj = invoice_object(payment_intent=None)
    obj["payments"] = {
        "object": "list",
        "data": [{"id": "inpay_1", "payment": {"type": "payment_intent", "payment_intent": "pi_listed"}}],
    }

    event = parse_event(stripe_event("invoice.paid", obj))

    assert event.data.payment_id == "pi_listed"
