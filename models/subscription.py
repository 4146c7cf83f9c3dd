from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .base import Base

# Provider statuses that grant paid access
ACTIVE_STATUSES = ("active", "trialing")


class Subscription(Base):
    """One row per billing-provider subscription. Never deleted; canceled is a status."""

    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)  # null until the owner is known
    plan = Column(String, nullable=False)
    status = Column(String, nullable=False)  # raw provider status
    billing_customer_id = Column(Text, nullable=True, index=True)
    billing_subscription_id = Column(Text, unique=True, nullable=False)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    last_event_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")
    payment_transactions = relationship("PaymentTransaction", back_populates="subscription")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan": self.plan,
            "status": self.status,
            "billing_customer_id": self.billing_customer_id,
            "billing_subscription_id": self.billing_subscription_id,
            "current_period_start": self.current_period_start.isoformat() if self.current_period_start else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancel_at_period_end": bool(self.cancel_at_period_end),
            "canceled_at": self.canceled_at.isoformat() if self.canceled_at else None,
        }
