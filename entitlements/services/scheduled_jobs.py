"""
Scheduled Jobs
==============

Background maintenance for subscription state:
- Expiry sweep: records whose paid period ended without any expiry event
  are moved to ``expired``. It is the safety net for missed webhooks.

``ExpirySweepWorker`` runs the sweep on an interval inside the API process.
The CLI runs it once on demand.
"""

import asyncio
import logging
from typing import Optional

from entitlements.config import settings
from entitlements.core.errors import TransientError
from entitlements.schemas.events import ReconcileOutcome
from entitlements.services.cache import CacheInvalidator
from entitlements.services.entitlement_store import EntitlementStore
from entitlements.services.reconciliation import ReconciliationEngine
from entitlements.utils.helpers import utc_now

logger = logging.getLogger(__name__)


class ScheduledJobService:
    """Service for scheduled background jobs."""

    def __init__(self, store: EntitlementStore, engine: ReconciliationEngine):
        self.store = store
        self.engine = engine

    async def check_expired_subscriptions(self) -> dict:
        """
        Expire active, at-risk and canceled records past their period end.

        Returns:
            Summary of processed records
        """
        now = utc_now()
        candidates = await self.store.list_expirable(now)

        processed = 0
        errors = []

        for record in candidates:
            try:
                result = await self.engine.expire_record(record.user_id)
            except TransientError as e:
                logger.error("Expiry sweep failed for user=%s: %s", record.user_id, e)
                errors.append({
                    "user_id": record.user_id,
                    "error": str(e),
                })
                continue

            if result.outcome == ReconcileOutcome.APPLIED:
                await CacheInvalidator.on_subscription_change(record.user_id)
                processed += 1

        if candidates:
            logger.info(
                "Expiry sweep: %d candidates, %d expired, %d errors",
                len(candidates),
                processed,
                len(errors),
            )

        return {
            "job": "check_expired_subscriptions",
            "processed": processed,
            "errors": errors,
            "run_at": now.isoformat(),
        }


class ExpirySweepWorker:
    """Runs the expiry sweep every ``interval_seconds`` until stopped."""

    def __init__(
        self,
        jobs: ScheduledJobService,
        interval_seconds: Optional[int] = None,
    ) -> None:
        self.jobs = jobs
        self.interval_seconds = interval_seconds or settings.EXPIRY_SWEEP_INTERVAL_SECONDS
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Start the sweep loop in the background."""
        self._running = True
        self._wakeup.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("ExpirySweepWorker started (interval=%ss)", self.interval_seconds)

    async def stop(self) -> None:
        """Signal the loop to stop and wait for it to finish."""
        self._running = False
        self._wakeup.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=10)
            except asyncio.TimeoutError:
                logger.warning("ExpirySweepWorker did not stop in time; cancelling")
                self._task.cancel()
            self._task = None
        logger.info("ExpirySweepWorker stopped")

    # -- main loop ---------------------------------------------------------

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.jobs.check_expired_subscriptions()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.exception("ExpirySweepWorker loop error: %s", exc)

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue


async def run_expiry_sweep(store: EntitlementStore) -> dict:
    """Run one sweep with a fresh engine. Used by the CLI."""
    jobs = ScheduledJobService(store, ReconciliationEngine(store))
    return await jobs.check_expired_subscriptions()
