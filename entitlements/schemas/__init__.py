"""
Pydantic Schemas
================

Request/response schemas for API validation and the normalized
reconciliation types.
"""

from entitlements.schemas.common import CamelModel, ErrorResponse
from entitlements.schemas.events import (
    EventKind,
    RecordSnapshot,
    ReconcileOutcome,
    ReconcileResult,
    SubscriptionEvent,
)

__all__ = [
    "CamelModel",
    "ErrorResponse",
    "EventKind",
    "RecordSnapshot",
    "ReconcileOutcome",
    "ReconcileResult",
    "SubscriptionEvent",
]
