"""SQLAlchemy ORM models."""

from billing_engine.models.base import Base, TimestampMixin, UTCDateTime, utcnow
from billing_engine.models.transaction import Transaction
from billing_engine.models.user import User
from billing_engine.models.webhook import ProcessedWebhook

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    "Transaction",
    "User",
    "ProcessedWebhook",
]
