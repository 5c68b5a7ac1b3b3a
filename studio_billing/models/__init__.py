"""SQLAlchemy models for the billing core (PostgreSQL)."""

from .base import Base
from .user import User
from .plan import SubscriptionPlan
from .subscription import Subscription, SubscriptionStatus
from .payment import Payment, PaymentStatus
from .webhook_event import WebhookEvent
from .notification_log import NotificationLog, NotificationStatus

__all__ = [
    "Base",
    "User",
    "SubscriptionPlan",
    "Subscription",
    "SubscriptionStatus",
    "Payment",
    "PaymentStatus",
    "WebhookEvent",
    "NotificationLog",
    "NotificationStatus",
]
