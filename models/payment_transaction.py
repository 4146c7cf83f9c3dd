from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .base import Base


class PaymentTransaction(Base):
    """Append-only payment ledger. billing_payment_id is the idempotency key."""

    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True)
    billing_payment_id = Column(Text, unique=True, nullable=False)
    amount_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=True)
    status = Column(String, nullable=False)  # succeeded | failed
    transaction_type = Column(String, nullable=False, default="subscription")  # subscription | one_time | refund
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="payment_transactions")
    subscription = relationship("Subscription", back_populates="payment_transactions")
