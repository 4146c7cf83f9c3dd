from .base import Base
from .user import User, SubscriptionTier, UserSubscriptionStatus
from .subscription import Subscription, ACTIVE_STATUSES
from .payment_transaction import PaymentTransaction
