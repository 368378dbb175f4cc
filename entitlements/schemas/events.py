"""
Reconciliation Schemas
======================

Normalized event produced by the platform adapters, the immutable record
snapshot returned by the entitlement store, and the engine's result type.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from entitlements.models.subscription import Plan, Platform, SubscriptionStatus


class EventKind(str, Enum):
    """Normalized subscription event kinds."""

    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIBED = "subscribed"
    RENEWED = "renewed"
    RENEWAL_FAILED = "renewal_failed"
    CANCELED = "canceled"
    EXPIRED = "expired"
    UNHANDLED = "unhandled"


CREATION_KINDS = frozenset({EventKind.CHECKOUT_COMPLETED, EventKind.SUBSCRIBED})


class SubscriptionEvent(BaseModel):
    """
    A verified platform event, consumed once by the reconciliation engine.

    ``user_id`` is only present when the platform payload names the user
    (Stripe checkout ``client_reference_id``, a receipt submitted by an
    authenticated user, a manual grant). ``soft`` marks a cancellation
    that only turns off auto-renew. ``optimistic`` marks a local echo of a
    user action: it carries no platform timestamp, so it is exempt from
    the stale check and does not advance ``last_event_at``.
    """

    model_config = ConfigDict(frozen=True)

    platform: Platform
    external_id: str
    event_id: Optional[str] = None
    kind: EventKind
    occurred_at: datetime
    plan: Optional[Plan] = None
    period_end_at: Optional[datetime] = None
    raw_payload_ref: Optional[str] = None
    user_id: Optional[str] = None
    soft: bool = False
    optimistic: bool = False

    @field_validator("occurred_at", "period_end_at")
    @classmethod
    def require_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            raise ValueError("event timestamps must be timezone-aware")
        return v

    @property
    def is_creation(self) -> bool:
        return self.kind in CREATION_KINDS


class RecordSnapshot(BaseModel):
    """Immutable copy of a ``SubscriptionRecord`` row."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    user_id: str
    plan: Plan
    status: SubscriptionStatus
    platform: Platform
    external_subscription_id: Optional[str] = None
    period_end_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    last_event_at: Optional[datetime] = None
    version: int = 1

    def is_entitled(self, now: datetime) -> bool:
        """Whether the user currently has premium access."""
        if self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.AT_RISK):
            return True
        if self.status == SubscriptionStatus.CANCELED:
            return self.period_end_at is not None and self.period_end_at > now
        return False


class ReconcileOutcome(str, Enum):
    """What the engine did with an event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    ORPHANED = "orphaned"
    IGNORED = "ignored"
    CONFLICT = "conflict"
    UNHANDLED = "unhandled"


class ReconcileResult(BaseModel):
    """Engine outcome plus the record as it stands afterwards."""

    model_config = ConfigDict(frozen=True)

    outcome: ReconcileOutcome
    record: Optional[RecordSnapshot] = None
    reason: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.outcome == ReconcileOutcome.APPLIED
