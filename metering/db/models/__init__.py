"""Re-export all models so Base.metadata sees them."""

from metering.db.models.stripe_event import StripeWebhookEvent
from metering.db.models.subscription import Subscription, SubscriptionStatus
from metering.db.models.usage_counter import UsageCounter
from metering.db.models.user import User

__all__ = [
    "StripeWebhookEvent",
    "Subscription",
    "SubscriptionStatus",
    "UsageCounter",
    "User",
]
