import stripe
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from config import Settings
from services.exceptions import AuthenticationError, UpstreamError
from utils.timestamps import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class ProviderSubscription:
    """The parts of a provider subscription the reconciler writes back."""

    id: str
    status: str
    customer_id: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    payment_link: Optional[str] = None


def _get(obj: Any, key: str, default=None):
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def _first_item(subscription) -> Any:
    items = _get(_get(subscription, "items"), "data") or []
    return items[0] if items else None


def _to_subscription(obj) -> ProviderSubscription:
    item = _first_item(obj)
    # newer API versions moved the period bounds onto the subscription item
    period_start = _get(obj, "current_period_start") or _get(item, "current_period_start")
    period_end = _get(obj, "current_period_end") or _get(item, "current_period_end")
    invoice = _get(obj, "latest_invoice")
    customer = _get(obj, "customer")
    return ProviderSubscription(
        id=_get(obj, "id"),
        status=_get(obj, "status", "incomplete"),
        customer_id=customer if isinstance(customer, str) else _get(customer, "id"),
        cancel_at_period_end=bool(_get(obj, "cancel_at_period_end", False)),
        current_period_start=parse_timestamp(period_start),
        current_period_end=parse_timestamp(period_end),
        canceled_at=parse_timestamp(_get(obj, "canceled_at")),
        payment_link=_get(invoice, "hosted_invoice_url") if not isinstance(invoice, str) else None,
    )


class StripeService:
    """Billing provider backed by the Stripe API."""

    def __init__(self, settings: Settings):
        self.secret_key = settings.stripe_secret_key
        self.webhook_secret = settings.stripe_webhook_secret
        self.webhook_tolerance = settings.webhook_tolerance_seconds

        if not self.secret_key:
            logger.warning("STRIPE_SECRET_KEY not set")

        stripe.max_network_retries = settings.stripe_max_network_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.stripe_timeout_seconds)

    def _call(self, description: str, fn, *args, **params):
        try:
            return fn(*args, api_key=self.secret_key, **params)
        except stripe.StripeError as e:
            message = getattr(e, "user_message", None) or str(e)
            logger.error(f"Failed to {description}: {message}")
            raise UpstreamError("Payment service error", details=message) from e

    def find_customer_by_email(self, email: str, user_id: str) -> Optional[str]:
        """Return a customer for this email that was created for ``user_id``.

        Customers whose metadata names another user (or none) are ignored.
        """
        customers = self._call("list customers", stripe.Customer.list, email=email, limit=10)
        for customer in _get(customers, "data") or []:
            if _get(_get(customer, "metadata"), "user_id") == user_id:
                logger.info(f"Found existing billing customer for user {user_id}")
                return _get(customer, "id")
        return None

    def create_customer(self, email: str, metadata: Optional[Dict[str, str]] = None) -> str:
        customer = self._call(
            "create customer",
            stripe.Customer.create,
            email=email,
            name=email.split("@")[0],
            metadata=metadata or {},
        )
        logger.info(f"Created billing customer {customer.id}")
        return customer.id

    def create_subscription(self, customer_id: str, price_id: str, metadata: Dict[str, str]) -> ProviderSubscription:
        """Create an incomplete subscription whose first invoice carries the payment link."""
        subscription = self._call(
            "create subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id, "quantity": 1}],
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            metadata=metadata,
            expand=["latest_invoice"],
        )
        logger.info(f"Created subscription {subscription.id} for customer {customer_id}")
        return _to_subscription(subscription)

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = self._call(
            "create portal session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        logger.info(f"Created portal session for customer {customer_id}")
        return session.url

    def cancel_subscription(self, subscription_id: str, cancel_at_period_end: bool = True) -> ProviderSubscription:
        if cancel_at_period_end:
            subscription = self._call(
                "schedule subscription cancel",
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=True,
            )
            logger.info(f"Subscription {subscription_id} set to cancel at period end")
        else:
            subscription = self._call("cancel subscription", stripe.Subscription.cancel, subscription_id)
            logger.info(f"Subscription {subscription_id} canceled immediately")
        return _to_subscription(subscription)

    def reactivate_subscription(self, subscription_id: str) -> ProviderSubscription:
        subscription = self._call(
            "reactivate subscription",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=False,
        )
        logger.info(f"Subscription {subscription_id} reactivated")
        return _to_subscription(subscription)

    def change_subscription_price(self, subscription_id: str, price_id: str, metadata: Dict[str, str]) -> ProviderSubscription:
        current = self._call("retrieve subscription", stripe.Subscription.retrieve, subscription_id)
        item = _first_item(current)
        items = [{"id": _get(item, "id"), "price": price_id}] if item else [{"price": price_id}]
        subscription = self._call(
            "change subscription plan",
            stripe.Subscription.modify,
            subscription_id,
            items=items,
            proration_behavior="always_invoice",
            metadata=metadata,
        )
        logger.info(f"Subscription {subscription_id} moved to price {price_id}")
        return _to_subscription(subscription)

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> None:
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured")
            raise AuthenticationError("Webhook verification failed", details="webhook secret not configured")
        if not signature:
            raise AuthenticationError("Webhook verification failed", details="missing signature header")

        try:
            if hasattr(payload, "decode"):
                payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.error(f"Webhook payload is not valid UTF-8: {e}")
            raise AuthenticationError("Webhook verification failed", details="invalid payload encoding") from e
        try:
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret, self.webhook_tolerance)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise AuthenticationError("Webhook verification failed", details="invalid signature") from e
