"""ORM models."""

from momo_payments.models.base import Base, TimestampMixin, UTCDateTime, utcnow
from momo_payments.models.notification import Notification
from momo_payments.models.order import Order
from momo_payments.models.payment import SESSION_STATUSES, PaymentSession, WebhookEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    "Notification",
    "Order",
    "PaymentSession",
    "WebhookEvent",
    "SESSION_STATUSES",
]
