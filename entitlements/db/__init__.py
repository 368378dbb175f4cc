"""
Database Module
===============

Provides database session management and base model.
"""

from entitlements.db.base import Base, TimestampMixin, UTCDateTime
from entitlements.db.session import get_session_factory, init_db, close_db

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "get_session_factory",
    "init_db",
    "close_db",
]
