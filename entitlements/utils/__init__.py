"""
Utilities Module
================

Helper functions and utility classes.
"""

from entitlements.utils.helpers import from_epoch_ms, from_epoch_seconds, utc_now

__all__ = ["from_epoch_ms", "from_epoch_seconds", "utc_now"]
