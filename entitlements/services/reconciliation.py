"""
Reconciliation Engine
=====================

Applies one normalized ``SubscriptionEvent`` to the matching
``SubscriptionRecord``. The engine does not know which platform produced
an event beyond the ``(platform, external_id)`` lookup key.

Transitions (current status -> event -> new status):

    any / none                checkout_completed, subscribed  -> active
    pending, active, at_risk  renewed                         -> active
    canceled, expired         renewed                         -> active
    active                    renewal_failed                  -> at_risk
    active, at_risk           canceled (hard)                 -> canceled
    active, at_risk           canceled (soft)                 -> unchanged, cancel flag set
    active, canceled, at_risk expired                         -> expired

Everything else is logged and ignored. Stale, orphaned and ignored events
are normal outcomes, returned in ``ReconcileResult`` and never raised.

Writes are optimistic: read, compute, conditional update on ``version``,
and on ``ConcurrencyConflict`` re-read and try again.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

import newrelic.agent

from entitlements.config import settings
from entitlements.core.errors import (
    ConcurrencyConflict,
    OrphanedEventError,
    StaleEventError,
    TransientStoreError,
)
from entitlements.models.subscription import Plan, SubscriptionStatus
from entitlements.schemas.events import (
    EventKind,
    RecordSnapshot,
    ReconcileOutcome,
    ReconcileResult,
    SubscriptionEvent,
)
from entitlements.services.entitlement_store import EntitlementStore
from entitlements.utils.helpers import utc_now

logger = logging.getLogger(__name__)

_RENEWABLE = frozenset({
    SubscriptionStatus.PENDING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.AT_RISK,
    SubscriptionStatus.CANCELED,
    SubscriptionStatus.EXPIRED,
})
_CANCELABLE = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.AT_RISK})
_EXPIRABLE = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.CANCELED,
    SubscriptionStatus.AT_RISK,
})


class ReconciliationEngine:
    """Single writer of ``SubscriptionRecord`` state."""

    def __init__(
        self,
        store: EntitlementStore,
        max_retries: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.max_retries = max_retries or settings.RECONCILE_MAX_RETRIES
        self._clock = clock

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def apply(self, event: SubscriptionEvent) -> ReconcileResult:
        """
        Apply an event with bounded optimistic retries.

        Raises:
            TransientStoreError: Every attempt lost a write race, or the
                store is unavailable.
        """
        if event.kind == EventKind.UNHANDLED:
            return self._finish(
                event,
                ReconcileResult(
                    outcome=ReconcileOutcome.UNHANDLED,
                    reason=event.raw_payload_ref,
                ),
            )

        for attempt in range(1, self.max_retries + 1):
            try:
                result = await self._apply_once(event)
            except ConcurrencyConflict as exc:
                logger.info(
                    "Write conflict applying %s for %s:%s (attempt %d/%d): %s",
                    event.kind.value,
                    event.platform.value,
                    event.external_id,
                    attempt,
                    self.max_retries,
                    exc,
                )
                continue
            except OrphanedEventError as exc:
                result = ReconcileResult(outcome=ReconcileOutcome.ORPHANED, reason=str(exc))
            except StaleEventError as exc:
                result = ReconcileResult(
                    outcome=ReconcileOutcome.STALE,
                    record=exc.record,
                    reason=str(exc),
                )
            return self._finish(event, result)

        newrelic.agent.record_custom_event(
            "SubscriptionReconciliation",
            {
                "outcome": "retries_exhausted",
                "platform": event.platform.value,
                "kind": event.kind.value,
            },
        )
        raise TransientStoreError(
            f"gave up applying {event.kind.value} for "
            f"{event.platform.value}:{event.external_id} after {self.max_retries} attempts"
        )

    async def expire_record(self, user_id: str) -> ReconcileResult:
        """
        Expire a record whose paid period has ended with no event.

        Used by the expiry sweep. Re-checks the record under the same
        version guard, so a renewal that lands mid-sweep wins.
        """
        for _ in range(self.max_retries):
            now = self._clock()
            record = await self.store.get_by_user_id(user_id)
            if record is None or not _past_period_end(record, now):
                return ReconcileResult(
                    outcome=ReconcileOutcome.IGNORED,
                    record=record,
                    reason="not expirable",
                )
            if record.status not in _EXPIRABLE:
                return ReconcileResult(
                    outcome=ReconcileOutcome.IGNORED,
                    record=record,
                    reason=f"status {record.status.value}",
                )
            patch = {
                "status": SubscriptionStatus.EXPIRED,
                "cancel_at_period_end": False,
            }
            history = _history_row(
                record,
                patch,
                event_kind="sweep_expired",
                event_id=None,
                raw_payload_ref=None,
            )
            try:
                updated = await self.store.conditional_update(
                    record.user_id, record.version, patch, history
                )
            except ConcurrencyConflict:
                continue
            logger.info(
                "Sweep expired user=%s platform=%s period_end=%s",
                user_id,
                record.platform.value,
                record.period_end_at,
            )
            return ReconcileResult(outcome=ReconcileOutcome.APPLIED, record=updated)

        raise TransientStoreError(f"gave up expiring {user_id}")

    # -------------------------------------------------------------------------
    # Single attempt
    # -------------------------------------------------------------------------

    async def _apply_once(self, event: SubscriptionEvent) -> ReconcileResult:
        now = self._clock()
        record = await self.store.get_by_external_id(event.platform, event.external_id)

        if record is None:
            if not event.is_creation or not event.user_id:
                raise OrphanedEventError("no record for external id")
            record = await self.store.get_by_user_id(event.user_id)
            if record is None:
                return await self._create(event, now)
        elif event.is_creation and event.user_id and record.user_id != event.user_id:
            return ReconcileResult(
                outcome=ReconcileOutcome.CONFLICT,
                record=record,
                reason=f"external id bound to user {record.user_id}",
            )

        if self._is_stale(record, event):
            raise StaleEventError(
                f"occurred_at {event.occurred_at.isoformat()} <= "
                f"last_event_at {record.last_event_at.isoformat()}",
                record=record,
            )

        patch = self._transition(record, event, now)
        if patch is None:
            return ReconcileResult(
                outcome=ReconcileOutcome.IGNORED,
                record=record,
                reason=f"{event.kind.value} not valid from {record.status.value}",
            )

        if not event.optimistic:
            patch["last_event_at"] = event.occurred_at

        history = _history_row(
            record,
            patch,
            event_kind=event.kind.value,
            event_id=event.event_id,
            raw_payload_ref=event.raw_payload_ref,
            platform=event.platform.value,
            external_id=event.external_id,
        )
        updated = await self.store.conditional_update(
            record.user_id, record.version, patch, history
        )
        return ReconcileResult(outcome=ReconcileOutcome.APPLIED, record=updated)

    async def _create(self, event: SubscriptionEvent, now: datetime) -> ReconcileResult:
        values = {"user_id": event.user_id, **self._activation_patch(event, now)}
        if not event.optimistic:
            values["last_event_at"] = event.occurred_at
        history = {
            "user_id": event.user_id,
            "event_id": event.event_id,
            "event_kind": event.kind.value,
            "platform": event.platform.value,
            "external_id": event.external_id,
            "previous_status": None,
            "new_status": values["status"].value,
            "previous_plan": None,
            "new_plan": values["plan"].value,
            "raw_payload_ref": event.raw_payload_ref,
        }
        record = await self.store.insert(values, history)
        return ReconcileResult(outcome=ReconcileOutcome.APPLIED, record=record)

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    @staticmethod
    def _is_stale(record: RecordSnapshot, event: SubscriptionEvent) -> bool:
        """
        An event is stale when it targets the record's current platform
        subscription and is not strictly newer than the last applied one.
        """
        if event.optimistic or record.last_event_at is None:
            return False
        if (
            record.platform != event.platform
            or record.external_subscription_id != event.external_id
        ):
            return False
        return event.occurred_at <= record.last_event_at

    def _transition(
        self,
        record: RecordSnapshot,
        event: SubscriptionEvent,
        now: datetime,
    ) -> Optional[dict[str, Any]]:
        """Return the field patch for a legal transition, else None."""
        kind = event.kind
        status = record.status

        if event.is_creation:
            return self._activation_patch(event, now)

        if kind == EventKind.RENEWED and status in _RENEWABLE:
            plan = event.plan or record.plan
            period_end = event.period_end_at or record.period_end_at
            if plan != Plan.LIFETIME and (period_end is None or period_end <= now):
                return None
            return {
                "status": SubscriptionStatus.ACTIVE,
                "plan": plan,
                "period_end_at": period_end,
                "cancel_at_period_end": False,
            }

        if kind == EventKind.RENEWAL_FAILED and status == SubscriptionStatus.ACTIVE:
            return {"status": SubscriptionStatus.AT_RISK}

        if kind == EventKind.CANCELED and status in _CANCELABLE:
            if event.soft:
                return {"cancel_at_period_end": True}
            return {
                "status": SubscriptionStatus.CANCELED,
                "cancel_at_period_end": True,
            }

        if kind == EventKind.EXPIRED and status in _EXPIRABLE:
            return {
                "status": SubscriptionStatus.EXPIRED,
                "period_end_at": now,
                "cancel_at_period_end": False,
            }

        return None

    @staticmethod
    def _activation_patch(event: SubscriptionEvent, now: datetime) -> dict[str, Any]:
        """
        Fields for a creation event. Platform-reported plan and period
        always win over whatever the record held before.

        A paid period that is unknown yields ``pending``; one that already
        ended yields ``expired``. Only lifetime plans are active without an
        end date.
        """
        plan = event.plan or Plan.MONTHLY
        period_end = event.period_end_at
        if plan == Plan.LIFETIME:
            status = SubscriptionStatus.ACTIVE
            period_end = None
        elif period_end is None:
            status = SubscriptionStatus.PENDING
        elif period_end <= now:
            status = SubscriptionStatus.EXPIRED
        else:
            status = SubscriptionStatus.ACTIVE

        return {
            "plan": plan,
            "status": status,
            "platform": event.platform,
            "external_subscription_id": event.external_id,
            "period_end_at": period_end,
            "cancel_at_period_end": False,
        }

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    @staticmethod
    def _finish(event: SubscriptionEvent, result: ReconcileResult) -> ReconcileResult:
        user_id = result.record.user_id if result.record else event.user_id
        level = logging.INFO if result.outcome == ReconcileOutcome.APPLIED else logging.WARNING
        logger.log(
            level,
            "Reconcile %s: platform=%s external_id=%s kind=%s event_id=%s user=%s status=%s reason=%s",
            result.outcome.value,
            event.platform.value,
            event.external_id,
            event.kind.value,
            event.event_id,
            user_id,
            result.record.status.value if result.record else None,
            result.reason,
        )
        newrelic.agent.record_custom_event(
            "SubscriptionReconciliation",
            {
                "outcome": result.outcome.value,
                "platform": event.platform.value,
                "kind": event.kind.value,
                "eventId": event.event_id or "",
                "userId": user_id or "",
            },
        )
        return result


def _past_period_end(record: RecordSnapshot, now: datetime) -> bool:
    return record.period_end_at is not None and record.period_end_at < now


def _history_row(
    record: RecordSnapshot,
    patch: dict[str, Any],
    *,
    event_kind: str,
    event_id: Optional[str],
    raw_payload_ref: Optional[str],
    platform: Optional[str] = None,
    external_id: Optional[str] = None,
) -> dict[str, Any]:
    new_status = patch.get("status", record.status)
    new_plan = patch.get("plan", record.plan)
    return {
        "user_id": record.user_id,
        "event_id": event_id,
        "event_kind": event_kind,
        "platform": platform or record.platform.value,
        "external_id": external_id or record.external_subscription_id,
        "previous_status": record.status.value,
        "new_status": new_status.value,
        "previous_plan": record.plan.value,
        "new_plan": new_plan.value,
        "raw_payload_ref": raw_payload_ref,
    }
