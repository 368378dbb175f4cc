"""
Entitlement Store
=================

Persistent per-user subscription records.

Every public method opens its own short-lived session and commits before
returning, so no database connection is held while the engine waits on
anything else. Writes are conditional on the record ``version``: a writer
that lost a race gets ``ConcurrencyConflict`` and is expected to re-read.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlements.core.errors import ConcurrencyConflict, TransientStoreError
from entitlements.models.subscription import (
    Platform,
    SubscriptionHistory,
    SubscriptionRecord,
    SubscriptionStatus,
)
from entitlements.schemas.events import RecordSnapshot

logger = logging.getLogger(__name__)

EXPIRABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.AT_RISK)


class EntitlementStore:
    """Version-checked access to ``subscription_records``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_by_user_id(self, user_id: str) -> Optional[RecordSnapshot]:
        return await self._fetch_one(SubscriptionRecord.user_id == user_id)

    async def get_by_external_id(
        self,
        platform: Platform,
        external_id: str,
    ) -> Optional[RecordSnapshot]:
        """
        Find the record bound to a platform subscription.

        The ``(platform, external_subscription_id)`` pair is unique, so the
        same id string on another platform never matches.
        """
        return await self._fetch_one(
            and_(
                SubscriptionRecord.platform == platform,
                SubscriptionRecord.external_subscription_id == external_id,
            )
        )

    async def list_expirable(
        self,
        now: datetime,
        include_canceled: bool = True,
    ) -> list[RecordSnapshot]:
        """
        Records whose paid period has ended without an expiry event.

        Args:
            now: Reference time.
            include_canceled: Also return ``canceled`` records past their
                period end.
        """
        statuses = list(EXPIRABLE_STATUSES)
        if include_canceled:
            statuses.append(SubscriptionStatus.CANCELED)

        stmt = select(SubscriptionRecord).where(
            and_(
                SubscriptionRecord.status.in_(statuses),
                SubscriptionRecord.period_end_at.is_not(None),
                SubscriptionRecord.period_end_at < now,
            )
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [
                    RecordSnapshot.model_validate(row)
                    for row in result.scalars().all()
                ]
        except SQLAlchemyError as exc:
            raise TransientStoreError(f"list_expirable failed: {exc}") from exc

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def insert(
        self,
        values: dict[str, Any],
        history: Optional[dict[str, Any]] = None,
    ) -> RecordSnapshot:
        """
        Create a record at version 1.

        Raises:
            ConcurrencyConflict: The user already has a record, or the
                external id is already bound.
        """
        record = SubscriptionRecord(**values, version=1)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(record)
                    if history:
                        session.add(SubscriptionHistory(**history))
                    await session.flush()
                    return RecordSnapshot.model_validate(record)
        except IntegrityError as exc:
            logger.info("Insert conflict for user=%s: %s", values.get("user_id"), exc.orig)
            raise ConcurrencyConflict(f"record insert conflict for {values.get('user_id')}") from exc
        except SQLAlchemyError as exc:
            raise TransientStoreError(f"insert failed: {exc}") from exc

    async def conditional_update(
        self,
        user_id: str,
        expected_version: int,
        patch: dict[str, Any],
        history: Optional[dict[str, Any]] = None,
    ) -> RecordSnapshot:
        """
        Apply ``patch`` only if the stored version still equals
        ``expected_version``. The history row is written in the same
        transaction.

        Raises:
            ConcurrencyConflict: Version moved on, or the patch would bind an
                external id owned by another record.
        """
        stmt = (
            update(SubscriptionRecord)
            .where(
                and_(
                    SubscriptionRecord.user_id == user_id,
                    SubscriptionRecord.version == expected_version,
                )
            )
            .values(**patch, version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    if result.rowcount != 1:
                        raise ConcurrencyConflict(
                            f"version {expected_version} is stale for {user_id}"
                        )
                    if history:
                        session.add(SubscriptionHistory(**history))
                    refreshed = await session.execute(
                        select(SubscriptionRecord).where(
                            SubscriptionRecord.user_id == user_id
                        )
                    )
                    return RecordSnapshot.model_validate(refreshed.scalar_one())
        except IntegrityError as exc:
            raise ConcurrencyConflict(f"update conflict for {user_id}") from exc
        except SQLAlchemyError as exc:
            raise TransientStoreError(f"update failed: {exc}") from exc

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _fetch_one(self, criterion) -> Optional[RecordSnapshot]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(SubscriptionRecord).where(criterion)
                )
                row = result.scalar_one_or_none()
                return RecordSnapshot.model_validate(row) if row else None
        except SQLAlchemyError as exc:
            raise TransientStoreError(f"read failed: {exc}") from exc
