import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone

import azure.functions as func
import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import Settings
from models import Base, Subscription, SubscriptionTier, User, UserSubscriptionStatus
from services.exceptions import UpstreamError
from services.plans import PlanCatalog
from services.reconciler import SubscriptionReconciler
from services.stripe_service import ProviderSubscription, StripeService
from utils.timestamps import utcnow

JWT_SECRET = "test-jwt-secret-with-enough-bytes-for-hs256"
WEBHOOK_SECRET = "whsec_test_secret"


class FakeBillingProvider(StripeService):
    """Stripe stand-in: API calls are recorded in memory, webhook
    signatures are still checked by the real Stripe verifier."""

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.customers = {}
        self.subscriptions = {}
        self.calls = []
        self.fail_on = set()

    def _record(self, operation: str, *args):
        self.calls.append((operation,) + args)
        if operation in self.fail_on:
            raise UpstreamError("Payment service error", details=f"{operation} failed")

    def operations(self):
        return [call[0] for call in self.calls]

    def add_customer(self, customer_id, email, user_id=None):
        self.customers[customer_id] = {"email": email, "metadata": {"user_id": user_id} if user_id else {}}

    def find_customer_by_email(self, email, user_id):
        self._record("find_customer_by_email", email, user_id)
        for customer_id, customer in self.customers.items():
            if customer["email"] == email and customer["metadata"].get("user_id") == user_id:
                return customer_id
        return None

    def create_customer(self, email, metadata=None):
        self._record("create_customer", email, metadata)
        customer_id = f"cus_test_{self.operations().count('create_customer')}"
        self.customers[customer_id] = {"email": email, "metadata": metadata or {}}
        return customer_id

    def create_subscription(self, customer_id, price_id, metadata):
        self._record("create_subscription", customer_id, price_id, metadata)
        subscription_id = f"sub_test_{len(self.subscriptions) + 1}"
        subscription = ProviderSubscription(
            id=subscription_id,
            status="incomplete",
            customer_id=customer_id,
            payment_link=f"https://invoice.stripe.test/{subscription_id}",
        )
        self.subscriptions[subscription_id] = subscription
        return subscription

    def create_portal_session(self, customer_id, return_url):
        self._record("create_portal_session", customer_id, return_url)
        return f"https://billing.stripe.test/session/{customer_id}"

    def cancel_subscription(self, subscription_id, cancel_at_period_end=True):
        self._record("cancel_subscription", subscription_id, cancel_at_period_end)
        if cancel_at_period_end:
            return ProviderSubscription(id=subscription_id, status="active", cancel_at_period_end=True)
        return ProviderSubscription(id=subscription_id, status="canceled", canceled_at=utcnow())

    def reactivate_subscription(self, subscription_id):
        self._record("reactivate_subscription", subscription_id)
        return ProviderSubscription(id=subscription_id, status="active", cancel_at_period_end=False)

    def change_subscription_price(self, subscription_id, price_id, metadata):
        self._record("change_subscription_price", subscription_id, price_id, metadata)
        return ProviderSubscription(id=subscription_id, status="active")


class RecordingEventSink:
    def __init__(self):
        self.events = []

    def capture(self, distinct_id, event, properties=None):
        self.events.append((distinct_id, event, properties or {}))

    def names(self):
        return [event for _, event, _ in self.events]


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_individual_price_id="price_individual",
        stripe_business_price_id="price_business",
        app_url="https://app.dropaccess.test",
        jwt_secret_key=JWT_SECRET,
        jwt_audience="authenticated",
    )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture
def billing(settings):
    return FakeBillingProvider(settings)


@pytest.fixture
def events():
    return RecordingEventSink()


@pytest.fixture
def reconciler(session_factory, billing, events, settings):
    return SubscriptionReconciler(
        session_factory=session_factory,
        billing=billing,
        events=events,
        plans=PlanCatalog.from_settings(settings),
        app_url=settings.app_url,
    )


@pytest.fixture
def make_user(session_factory):
    def _make_user(email="owner@example.com", customer_id=None,
                   tier=SubscriptionTier.FREE, status=UserSubscriptionStatus.FREE):
        with session_factory() as db:
            user = User(
                email=email,
                billing_customer_id=customer_id,
                subscription_tier=tier,
                subscription_status=status,
                is_paid=status == UserSubscriptionStatus.ACTIVE,
            )
            db.add(user)
            db.commit()
            return user.id
    return _make_user


@pytest.fixture
def make_subscription(session_factory):
    def _make_subscription(user_id, subscription_id="sub_existing", plan="individual", status="active",
                           customer_id=None, cancel_at_period_end=False, last_event_at=None):
        with session_factory() as db:
            subscription = Subscription(
                user_id=user_id,
                plan=plan,
                status=status,
                billing_customer_id=customer_id,
                billing_subscription_id=subscription_id,
                current_period_start=utcnow(),
                current_period_end=utcnow() + timedelta(days=30),
                cancel_at_period_end=cancel_at_period_end,
                last_event_at=last_event_at,
            )
            db.add(subscription)
            db.commit()
            return subscription.id
    return _make_subscription


@pytest.fixture
def paid_user(make_user, make_subscription):
    """An individual-plan user with an active subscription sub_existing."""
    user_id = make_user(
        email="paid@example.com",
        customer_id="cus_paid",
        tier=SubscriptionTier.INDIVIDUAL,
        status=UserSubscriptionStatus.ACTIVE,
    )
    make_subscription(user_id, customer_id="cus_paid")
    return user_id


@pytest.fixture
def load_user(session_factory):
    def _load_user(user_id):
        with session_factory() as db:
            user = db.get(User, user_id)
            db.expunge(user)
            return user
    return _load_user


@pytest.fixture
def load_subscription(session_factory):
    def _load_subscription(billing_subscription_id):
        with session_factory() as db:
            subscription = (
                db.query(Subscription)
                .filter(Subscription.billing_subscription_id == billing_subscription_id)
                .first()
            )
            if subscription:
                db.expunge(subscription)
            return subscription
    return _load_subscription


def bearer(user_id, secret=JWT_SECRET, audience="authenticated"):
    token = jwt.encode(
        {
            "sub": user_id,
            "aud": audience,
            "exp": datetime.now(timezone.utc) + timedelta(hours=1),
        },
        secret,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


def json_request(method, url, body=None, headers=None, params=None):
    return func.HttpRequest(
        method=method,
        url=url,
        headers={"Content-Type": "application/json", **(headers or {})},
        params=params or {},
        body=json.dumps(body).encode() if body is not None else b"",
    )


def sign_payload(payload: bytes, secret=WEBHOOK_SECRET, timestamp=None):
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type, obj, created=None, event_id=None):
    created = int(time.time()) if created is None else created
    return {
        "id": event_id or f"evt_{event_type.replace('.', '_')}_{created}",
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def subscription_object(subscription_id="sub_test_1", customer_id="cus_test_1", status="active",
                        user_id=None, plan="individual", price_id="price_individual",
                        cancel_at_period_end=False, canceled_at=None):
    now = int(time.time())
    metadata = {"plan": plan, "app_name": "DropAccess"} if plan else {}
    if user_id:
        metadata["user_id"] = user_id
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "canceled_at": canceled_at,
        "current_period_start": now,
        "current_period_end": now + 30 * 24 * 3600,
        "metadata": metadata,
        "items": {"object": "list", "data": [{"id": "si_test_1", "price": {"id": price_id}}]},
    }


def invoice_object(invoice_id="in_test_1", customer_id="cus_test_1", subscription_id="sub_test_1",
                   amount_paid=999, amount_due=999, payment_intent="pi_test_1", charge=None):
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer_id,
        "subscription": subscription_id,
        "amount_paid": amount_paid,
        "amount_due": amount_due,
        "currency": "usd",
        "payment_intent": payment_intent,
        "charge": charge,
    }
