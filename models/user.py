import uuid
from sqlalchemy import Column, Text, String, TIMESTAMP, Boolean, Enum, CheckConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from .base import Base


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class SubscriptionTier(enum.Enum):
    FREE = "free"
    INDIVIDUAL = "individual"
    BUSINESS = "business"


class UserSubscriptionStatus(enum.Enum):
    FREE = "free"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("is_paid = (subscription_status = 'active')", name="ck_users_is_paid_matches_status"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(Text, unique=True, nullable=False)
    billing_customer_id = Column(Text, unique=True, nullable=True)  # set on first checkout
    is_paid = Column(Boolean, nullable=False, default=False)
    subscription_status = Column(
        Enum(UserSubscriptionStatus, name="user_subscription_status", values_callable=_enum_values),
        nullable=False,
        default=UserSubscriptionStatus.FREE,
    )
    subscription_tier = Column(
        Enum(SubscriptionTier, name="subscription_tier", values_callable=_enum_values),
        nullable=False,
        default=SubscriptionTier.FREE,
    )
    subscription_ends_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    subscriptions = relationship("Subscription", back_populates="user")
    payment_transactions = relationship("PaymentTransaction", back_populates="user")

    @property
    def is_free_tier(self) -> bool:
        return self.subscription_tier == SubscriptionTier.FREE

    @property
    def has_billing_account(self) -> bool:
        return bool(self.billing_customer_id)

    def apply_subscription_state(self, tier: SubscriptionTier, status: UserSubscriptionStatus, ends_at=None):
        """Set tier and status together so is_paid always follows status."""
        self.subscription_tier = tier
        self.subscription_status = status
        self.is_paid = status == UserSubscriptionStatus.ACTIVE
        self.subscription_ends_at = ends_at

    def demote_to_free(self, status: UserSubscriptionStatus = UserSubscriptionStatus.CANCELED):
        self.apply_subscription_state(SubscriptionTier.FREE, status, None)

    def billing_summary(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "tier": self.subscription_tier.value,
            "status": self.subscription_status.value,
            "is_paid": bool(self.is_paid),
            "subscription_ends_at": self.subscription_ends_at.isoformat() if self.subscription_ends_at else None,
        }
