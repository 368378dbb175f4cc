"""
Subscription Models
===================

SQLAlchemy models for the per-user entitlement record and its audit trail.

``SubscriptionRecord`` is written only by the reconciliation engine, always
through a version-checked conditional update.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    Boolean,
    Enum as SQLEnum,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from entitlements.db.base import Base, TimestampMixin, UTCDateTime


class Plan(str, Enum):
    """Purchased plan."""
    NONE = "none"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


class SubscriptionStatus(str, Enum):
    """Lifecycle state of a subscription."""
    FREE = "free"
    PENDING = "pending"
    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"
    AT_RISK = "at_risk"


class Platform(str, Enum):
    """Source of truth for a record."""
    NONE = "none"
    STRIPE = "stripe"
    APPLE = "apple"
    MANUAL = "manual"


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class SubscriptionRecord(Base, TimestampMixin):
    """
    Entitlement record, one per user.

    ``version`` is bumped on every write and is the optimistic
    concurrency token for ``EntitlementStore.conditional_update``.
    """

    __tablename__ = "subscription_records"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    plan: Mapped[Plan] = mapped_column(
        SQLEnum(Plan, name="plan", values_callable=_enum_values),
        default=Plan.NONE,
        nullable=False,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(
            SubscriptionStatus,
            name="subscriptionstatus",
            values_callable=_enum_values,
        ),
        default=SubscriptionStatus.FREE,
        nullable=False,
    )
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform, name="platform", values_callable=_enum_values),
        default=Platform.NONE,
        nullable=False,
    )
    external_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    period_end_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,  # Null for lifetime or not yet established
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    last_event_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "platform",
            "external_subscription_id",
            name="uq_subscription_records_platform_external_id",
        ),
        Index("idx_subscription_records_status_period_end", "status", "period_end_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(user_id={self.user_id}, plan={self.plan}, "
            f"status={self.status}, platform={self.platform})>"
        )


class SubscriptionHistory(Base):
    """
    Subscription history model.

    One row per applied transition, written in the same transaction.
    """

    __tablename__ = "subscription_history"

    history_id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )

    event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    event_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    previous_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    previous_plan: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_plan: Mapped[str] = mapped_column(String(20), nullable=False)
    raw_payload_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionHistory(user_id={self.user_id}, kind={self.event_kind}, "
            f"{self.previous_status}->{self.new_status})>"
        )
