"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from pixelbill.models.base import Base
from pixelbill.models.enums import EntitlementTier, SubscriptionStatus
from pixelbill.models.user import User
from pixelbill.models.subscription import Subscription
from pixelbill.models.stripe_event import StripeEvent

# Export all for convenience
__all__ = [
    "Base", "EntitlementTier", "SubscriptionStatus",
    "User", "Subscription", "StripeEvent"
]
