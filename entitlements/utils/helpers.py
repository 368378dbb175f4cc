"""
Helper Functions
================

Common utility functions used across the application.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Get current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


def from_epoch_seconds(value: Optional[Union[int, float, str]]) -> Optional[datetime]:
    """Convert a Unix timestamp in seconds (Stripe) to an aware datetime."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def from_epoch_ms(value: Optional[Union[int, float, str]]) -> Optional[datetime]:
    """Convert a Unix timestamp in milliseconds (Apple) to an aware datetime."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format datetime to ISO 8601 string."""
    return dt.isoformat() if dt else None
