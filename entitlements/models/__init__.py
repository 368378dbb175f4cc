"""
Database Models
===============

SQLAlchemy ORM models.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations.
"""

from entitlements.models.subscription import (
    Plan,
    Platform,
    SubscriptionHistory,
    SubscriptionRecord,
    SubscriptionStatus,
)

__all__ = [
    "Plan",
    "Platform",
    "SubscriptionHistory",
    "SubscriptionRecord",
    "SubscriptionStatus",
]
