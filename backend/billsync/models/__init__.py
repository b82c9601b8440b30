"""
Database Models Package
SQLAlchemy ORM models for billing state and webhook delivery log.
"""

from billsync.models.user import User
from billsync.models.subscription import Subscription, SubscriptionStatus
from billsync.models.subscription_history import HistoryChangeType, SubscriptionHistory
from billsync.models.payment import Payment, PaymentStatus
from billsync.models.webhook_event import WebhookEvent, WebhookStatus

__all__ = [
    "User",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionHistory",
    "HistoryChangeType",
    "Payment",
    "PaymentStatus",
    "WebhookEvent",
    "WebhookStatus",
]
