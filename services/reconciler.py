import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from models import (
    User,
    Subscription,
    PaymentTransaction,
    UserSubscriptionStatus,
    ACTIVE_STATUSES,
)
from services.exceptions import (
    AlreadySubscribed,
    ConflictError,
    InternalError,
    NoActiveSubscription,
    NoBillingAccount,
    UpstreamError,
    UserNotFound,
)
from services.plans import Plan, PlanCatalog, check_feature_access, tier_limits
from services.webhook_events import (
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCanceled,
    SubscriptionCreated,
    SubscriptionData,
    SubscriptionUpdated,
    WebhookEvent,
    parse_event,
)
from utils.timestamps import utcnow

logger = logging.getLogger(__name__)

APP_NAME = "DropAccess"

# stored when an event names no plan or price we sell
UNKNOWN_PLAN = "unknown"

_USER_STATUS = {
    "active": UserSubscriptionStatus.ACTIVE,
    "trialing": UserSubscriptionStatus.ACTIVE,
    "past_due": UserSubscriptionStatus.PAST_DUE,
    "unpaid": UserSubscriptionStatus.PAST_DUE,
    "canceled": UserSubscriptionStatus.CANCELED,
    "cancelled": UserSubscriptionStatus.CANCELED,
    "incomplete_expired": UserSubscriptionStatus.CANCELED,
}


def user_status_for(provider_status: str) -> UserSubscriptionStatus:
    """Collapse a provider subscription status onto the user-facing status."""
    return _USER_STATUS.get((provider_status or "").lower(), UserSubscriptionStatus.FREE)


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise InternalError("Unsupported database", details=f"no upsert support for {dialect}")


class SubscriptionReconciler:
    """Keeps persisted subscription state in line with the billing provider.

    Holds no state of its own between calls. Every operation opens a session
    from ``session_factory``, talks to ``billing`` and commits; webhook
    handling relies on ``INSERT ... ON CONFLICT`` so redelivered or
    concurrent events converge on the same rows.
    """

    def __init__(self, session_factory, billing, events, plans: PlanCatalog, app_url: str):
        self.session_factory = session_factory
        self.billing = billing
        self.events = events
        self.plans = plans
        self.app_url = app_url.rstrip("/")

    # ------------------------------------------------------------------
    # user-initiated operations
    # ------------------------------------------------------------------

    def request_payment_link(self, plan: str, user_id: str, user_email: str) -> Dict[str, Any]:
        plan_config = self._purchasable_plan(plan)

        with self.session_factory() as db:
            user = self._get_user(db, user_id)
            active = self._active_subscription(db, user.id)
            if active:
                logger.info(f"User {user_id} already has active {active.plan} subscription")
                raise AlreadySubscribed(active.plan)

            self._track(user_email, "payment_link_requested", {
                "plan": plan,
                "price_id": plan_config.price_id,
                "price_cents": plan_config.price_cents,
                "user_id": user_id,
            })

            try:
                customer_id = self._ensure_customer(db, user)
                subscription = self.billing.create_subscription(
                    customer_id,
                    plan_config.price_id,
                    metadata={"user_id": user.id, "plan": plan, "app_name": APP_NAME},
                )
                if not subscription.payment_link:
                    raise UpstreamError("Payment service error", details="provider returned no payment link")
            except UpstreamError as e:
                self._track(user_email, "payment_link_creation_failed", {
                    "plan": plan,
                    "error_message": e.details or e.message,
                    "user_id": user_id,
                })
                raise

        self._track(user_email, "payment_link_created", {
            "plan": plan,
            "subscription_id": subscription.id,
            "billing_customer_id": customer_id,
            "user_id": user_id,
        })
        logger.info(f"Payment link created for user {user_id} on plan {plan}")

        return {
            "payment_link": subscription.payment_link,
            "subscription_id": subscription.id,
            "plan": plan,
            "amount": plan_config.price_cents,
        }

    def request_billing_portal(self, user_id: str, return_url: Optional[str] = None) -> str:
        with self.session_factory() as db:
            user = self._get_user(db, user_id)
            if not user.billing_customer_id:
                raise NoBillingAccount(user_id)
            customer_id = user.billing_customer_id

        return self.billing.create_portal_session(customer_id, return_url or f"{self.app_url}/settings")

    def cancel_subscription(self, user_id: str, cancel_at_period_end: bool = True) -> Dict[str, Any]:
        with self.session_factory() as db:
            user = self._get_user(db, user_id)
            subscription = self._active_subscription(db, user.id)
            if not subscription:
                raise NoActiveSubscription(user_id)

            result = self.billing.cancel_subscription(subscription.billing_subscription_id, cancel_at_period_end)

            # the provider's answer is authoritative, not the requested state
            subscription.status = result.status
            subscription.cancel_at_period_end = result.cancel_at_period_end
            if result.canceled_at:
                subscription.canceled_at = result.canceled_at
            if result.current_period_end:
                subscription.current_period_end = result.current_period_end
            subscription.last_event_at = utcnow()

            if not cancel_at_period_end:
                user.demote_to_free(UserSubscriptionStatus.CANCELED)

            plan = subscription.plan
            email = user.email
            db.commit()

        self._track(email, "subscription_canceled", {
            "plan": plan,
            "subscription_id": result.id,
            "cancel_at_period_end": result.cancel_at_period_end,
            "user_id": user_id,
        })
        logger.info(f"Subscription {result.id} canceled for user {user_id} (at period end: {result.cancel_at_period_end})")

        if result.cancel_at_period_end:
            message = "Subscription will be canceled at the end of the current billing period"
        else:
            message = "Subscription canceled"
        return {
            "status": result.status,
            "cancel_at_period_end": result.cancel_at_period_end,
            "message": message,
        }

    def change_plan(self, user_id: str, new_plan: str) -> Dict[str, Any]:
        plan_config = self._purchasable_plan(new_plan)

        with self.session_factory() as db:
            user = self._get_user(db, user_id)
            subscription = self._active_subscription(db, user.id)
            if not subscription:
                raise NoActiveSubscription(user_id)
            if subscription.plan == new_plan:
                raise ConflictError(f"You already have an active {new_plan} subscription")

            previous_plan = subscription.plan
            result = self.billing.change_subscription_price(
                subscription.billing_subscription_id,
                plan_config.price_id,
                metadata={"user_id": user.id, "plan": new_plan, "previous_plan": previous_plan, "app_name": APP_NAME},
            )

            subscription.plan = new_plan
            subscription.status = result.status
            if result.current_period_start:
                subscription.current_period_start = result.current_period_start
            if result.current_period_end:
                subscription.current_period_end = result.current_period_end
            subscription.last_event_at = utcnow()
            self._sync_user(db, user, subscription)

            email = user.email
            db.commit()

        self._track(email, "subscription_plan_changed", {
            "from_plan": previous_plan,
            "to_plan": new_plan,
            "subscription_id": result.id,
            "user_id": user_id,
        })
        logger.info(f"User {user_id} moved from {previous_plan} to {new_plan}")
        return {"plan": new_plan, "previous_plan": previous_plan, "status": result.status}

    def reactivate_subscription(self, user_id: str) -> Dict[str, Any]:
        with self.session_factory() as db:
            user = self._get_user(db, user_id)
            subscription = self._active_subscription(db, user.id)
            if not subscription:
                raise NoActiveSubscription(user_id)
            if not subscription.cancel_at_period_end:
                raise ConflictError("Subscription is not scheduled for cancellation")

            result = self.billing.reactivate_subscription(subscription.billing_subscription_id)

            subscription.status = result.status
            subscription.cancel_at_period_end = result.cancel_at_period_end
            subscription.last_event_at = utcnow()
            self._sync_user(db, user, subscription)

            plan = subscription.plan
            email = user.email
            db.commit()

        self._track(email, "subscription_reactivated", {
            "plan": plan,
            "subscription_id": result.id,
            "user_id": user_id,
        })
        return {"status": result.status, "cancel_at_period_end": result.cancel_at_period_end}

    def get_subscription(self, user_id: str) -> Dict[str, Any]:
        with self.session_factory() as db:
            user = self._get_user(db, user_id)
            subscription = self._active_subscription(db, user.id) or (
                db.query(Subscription)
                .filter(Subscription.user_id == user.id)
                .order_by(Subscription.created_at.desc(), Subscription.id.desc())
                .first()
            )
            return {
                "has_subscription": subscription is not None,
                "subscription": subscription.to_dict() if subscription else None,
                "user": user.billing_summary(),
            }

    def get_limits(self, user_id: str, feature: Optional[str] = None) -> Dict[str, Any]:
        with self.session_factory() as db:
            user = self._get_user(db, user_id)
            tier = user.subscription_tier.value
            result = {
                "tier": tier,
                "status": user.subscription_status.value,
                "is_paid": bool(user.is_paid),
                "limits": tier_limits(tier),
            }
        if feature:
            result["feature"] = feature
            result["access"] = check_feature_access(tier, feature)
        return result

    # ------------------------------------------------------------------
    # webhooks
    # ------------------------------------------------------------------

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:
        """Verify, parse and apply one webhook delivery.

        Verification happens before the body is even parsed, so a rejected
        delivery never touches the store.
        """
        self.billing.verify_webhook_signature(payload, signature)
        event = parse_event(payload)
        self.apply_event(event)
        return event

    def apply_event(self, event: WebhookEvent) -> None:
        handlers = {
            SubscriptionCreated: self._on_subscription_created,
            SubscriptionUpdated: self._on_subscription_updated,
            SubscriptionCanceled: self._on_subscription_canceled,
            PaymentSucceeded: self._on_payment,
            PaymentFailed: self._on_payment,
        }
        handler = handlers.get(type(event))
        if handler is None:
            logger.info(f"Unhandled webhook event type: {getattr(event, 'raw_type', event.type)}")
            return

        logger.info(f"Processing webhook event: {event.type} ({event.event_id or 'no id'})")
        with self.session_factory() as db:
            try:
                tracked = handler(db, event)
                db.commit()
            except Exception:
                db.rollback()
                logger.exception(f"Error handling webhook event {event.type}")
                raise

        if tracked:
            self._track(*tracked)

    def _on_subscription_created(self, db: Session, event: SubscriptionCreated):
        data = event.data
        user = self._user_for_customer(db, data.customer_id) or self._user_from_metadata(db, data)
        if not user:
            # may belong to a user whose customer id was never persisted
            logger.warning(f"No user for billing customer {data.customer_id}, dropping {event.type}")
            return None

        if not user.billing_customer_id and data.customer_id:
            user.billing_customer_id = data.customer_id

        subscription = self._upsert_subscription(db, data, event.occurred_at, user.id)
        self._sync_user(db, user, subscription)
        logger.info(f"Subscription {data.subscription_id} created for user {user.id}")
        return user.email, "subscription_created", {
            "plan": subscription.plan,
            "status": subscription.status,
            "subscription_id": data.subscription_id,
            "user_id": user.id,
        }

    def _on_subscription_updated(self, db: Session, event: SubscriptionUpdated):
        data = event.data
        existing = self._subscription_by_billing_id(db, data.subscription_id)
        user = None
        if existing and existing.user_id:
            user = db.get(User, existing.user_id)
        if not user:
            user = self._user_for_customer(db, data.customer_id) or self._user_from_metadata(db, data)
        if not existing:
            logger.info(f"Subscription {data.subscription_id} not seen yet, inserting from update")

        subscription = self._upsert_subscription(db, data, event.occurred_at, user.id if user else None)
        if user:
            self._sync_user(db, user, subscription)
        else:
            logger.warning(f"Subscription {data.subscription_id} updated with no known owner")
        logger.info(f"Subscription updated: {data.subscription_id} -> {subscription.status}")
        return None

    def _on_subscription_canceled(self, db: Session, event: SubscriptionCanceled):
        data = event.data
        existing = self._subscription_by_billing_id(db, data.subscription_id)
        user = self._user_for_customer(db, data.customer_id)
        if not user and existing and existing.user_id:
            user = db.get(User, existing.user_id)

        self._upsert_subscription(
            db,
            data,
            event.occurred_at,
            user.id if user else None,
            status="canceled",
            canceled_at=data.canceled_at or event.occurred_at,
            force=True,
        )

        if not user:
            logger.warning(f"No user for billing customer {data.customer_id} on cancel of {data.subscription_id}")
            return None

        if self._active_subscription(db, user.id, exclude=data.subscription_id):
            logger.info(f"User {user.id} still has another active subscription, keeping tier")
        else:
            user.demote_to_free(UserSubscriptionStatus.CANCELED)

        logger.info(f"Subscription canceled: {data.subscription_id}")
        return user.email, "subscription_canceled", {
            "subscription_id": data.subscription_id,
            "cancel_at_period_end": data.cancel_at_period_end,
            "user_id": user.id,
        }

    def _on_payment(self, db: Session, event):
        data = event.data
        succeeded = isinstance(event, PaymentSucceeded)

        subscription = self._subscription_by_billing_id(db, data.subscription_id) if data.subscription_id else None
        user_id = subscription.user_id if subscription else None
        if not user_id:
            user = self._user_for_customer(db, data.customer_id)
            user_id = user.id if user else None
        if not user_id:
            logger.warning(f"No user for payment {data.payment_id}, dropping {event.type}")
            return None

        stmt = _insert_for(db)(PaymentTransaction.__table__).values(
            user_id=user_id,
            subscription_id=subscription.id if subscription else None,
            billing_payment_id=data.payment_id,
            amount_cents=data.amount_cents,
            currency=data.currency,
            status="succeeded" if succeeded else "failed",
            transaction_type="subscription" if data.subscription_id else "one_time",
        ).on_conflict_do_nothing(index_elements=["billing_payment_id"])
        result = db.execute(stmt)

        if not result.rowcount:
            logger.info(f"Payment {data.payment_id} already recorded")
            return None

        logger.info(f"Payment {'succeeded' if succeeded else 'failed'}: {data.payment_id}")
        user = db.get(User, user_id)
        return user.email, "payment_succeeded" if succeeded else "payment_failed", {
            "payment_id": data.payment_id,
            "amount": data.amount_cents,
            "currency": data.currency,
            "subscription_id": data.subscription_id,
            "user_id": user_id,
        }

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _purchasable_plan(self, plan: str) -> Plan:
        plan_config = self.plans.get(plan)
        if not plan_config.price_id:
            logger.error(f"Price id not configured for plan {plan}")
            raise InternalError(f"Product configuration missing for {plan} plan")
        return plan_config

    def _get_user(self, db: Session, user_id: str) -> User:
        user = db.get(User, user_id) if user_id else None
        if not user:
            raise UserNotFound(user_id)
        return user

    def _active_subscription(self, db: Session, user_id: str, exclude: Optional[str] = None) -> Optional[Subscription]:
        query = db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status.in_(ACTIVE_STATUSES),
        )
        if exclude:
            query = query.filter(Subscription.billing_subscription_id != exclude)
        return query.order_by(Subscription.id.desc()).first()

    def _subscription_by_billing_id(self, db: Session, billing_subscription_id: str) -> Optional[Subscription]:
        return (
            db.query(Subscription)
            .populate_existing()
            .filter(Subscription.billing_subscription_id == billing_subscription_id)
            .first()
        )

    def _user_for_customer(self, db: Session, customer_id: Optional[str]) -> Optional[User]:
        if not customer_id:
            return None
        return db.query(User).filter(User.billing_customer_id == customer_id).first()

    def _user_from_metadata(self, db: Session, data: SubscriptionData) -> Optional[User]:
        if not data.user_id:
            return None
        user = db.get(User, data.user_id)
        if user and user.billing_customer_id and data.customer_id and user.billing_customer_id != data.customer_id:
            logger.warning(f"Metadata user {data.user_id} is bound to a different billing customer")
            return None
        return user

    def _ensure_customer(self, db: Session, user: User) -> str:
        if user.billing_customer_id:
            logger.info(f"Using existing billing customer {user.billing_customer_id}")
            return user.billing_customer_id

        # an earlier attempt may have created the customer and failed to save it
        customer_id = self.billing.find_customer_by_email(user.email, user.id)
        if not customer_id:
            customer_id = self.billing.create_customer(user.email, metadata={"user_id": user.id, "source": "dropaccess"})

        try:
            db.execute(
                update(User)
                .where(User.id == user.id, User.billing_customer_id.is_(None))
                .values(billing_customer_id=customer_id)
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.error(f"Billing customer {customer_id} is already linked to another user")
            raise ConflictError("Billing account is linked to another user")
        db.refresh(user)
        return user.billing_customer_id

    def _resolve_plan(self, data: SubscriptionData) -> Optional[str]:
        plan = self.plans.find(data.plan) or self.plans.by_price_id(data.price_id)
        return plan.key if plan else None

    def _upsert_subscription(
        self,
        db: Session,
        data: SubscriptionData,
        occurred_at,
        user_id: Optional[str],
        status: Optional[str] = None,
        canceled_at=None,
        force: bool = False,
    ) -> Subscription:
        """Insert or update the row for ``data.subscription_id``.

        An existing row is only overwritten when the incoming event is not
        older than the last one applied, so reordered deliveries cannot roll
        the status back. ``force`` skips that check for terminal states.
        """
        table = Subscription.__table__
        plan = self._resolve_plan(data)
        if not plan:
            logger.warning(f"Could not resolve plan for subscription {data.subscription_id}")

        insert = _insert_for(db)(table).values(
            user_id=user_id,
            plan=plan or UNKNOWN_PLAN,
            status=status or data.status,
            billing_customer_id=data.customer_id,
            billing_subscription_id=data.subscription_id,
            current_period_start=data.current_period_start,
            current_period_end=data.current_period_end,
            cancel_at_period_end=data.cancel_at_period_end,
            canceled_at=canceled_at or data.canceled_at,
            last_event_at=occurred_at,
        )
        excluded = insert.excluded
        changes = {
            "user_id": func.coalesce(table.c.user_id, excluded.user_id),
            "status": excluded.status,
            "billing_customer_id": func.coalesce(excluded.billing_customer_id, table.c.billing_customer_id),
            "current_period_start": func.coalesce(excluded.current_period_start, table.c.current_period_start),
            "current_period_end": func.coalesce(excluded.current_period_end, table.c.current_period_end),
            "cancel_at_period_end": excluded.cancel_at_period_end,
            "canceled_at": func.coalesce(excluded.canceled_at, table.c.canceled_at),
            "last_event_at": excluded.last_event_at,
            "updated_at": func.now(),
        }
        if plan:
            changes["plan"] = excluded.plan

        db.execute(insert.on_conflict_do_update(
            index_elements=["billing_subscription_id"],
            set_=changes,
            where=None if force else or_(table.c.last_event_at.is_(None), table.c.last_event_at <= excluded.last_event_at),
        ))

        if user_id:
            # a stale event can still supply the owner
            db.execute(
                update(Subscription)
                .where(Subscription.billing_subscription_id == data.subscription_id, Subscription.user_id.is_(None))
                .values(user_id=user_id)
            )

        return self._subscription_by_billing_id(db, data.subscription_id)

    def _sync_user(self, db: Session, user: User, subscription: Subscription) -> None:
        if subscription.is_active:
            plan = self.plans.find(subscription.plan)
            if not plan:
                logger.warning(f"Subscription {subscription.billing_subscription_id} has unknown plan "
                               f"{subscription.plan!r}, leaving user {user.id} unchanged")
                return
            user.apply_subscription_state(plan.tier, UserSubscriptionStatus.ACTIVE, subscription.current_period_end)
            return

        if self._active_subscription(db, user.id, exclude=subscription.billing_subscription_id):
            logger.info(f"User {user.id} keeps access through another active subscription")
            return

        status = user_status_for(subscription.status)
        if status == UserSubscriptionStatus.PAST_DUE:
            # keep the plan while the provider retries the payment
            user.apply_subscription_state(user.subscription_tier, status, subscription.current_period_end)
        else:
            user.demote_to_free(status)

    def _track(self, distinct_id: str, event: str, properties: Dict[str, Any]) -> None:
        try:
            self.events.capture(distinct_id, event, properties)
        except Exception as e:
            logger.warning(f"Analytics capture failed for {event}: {e}")
