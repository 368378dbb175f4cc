"""
Reconciliation Engine Tests
===========================

Tests for the transition table, stale/orphan handling, cross-platform
isolation and the optimistic write loop.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from entitlements.core.errors import ConcurrencyConflict, TransientStoreError
from entitlements.models.subscription import (
    Plan,
    Platform,
    SubscriptionHistory,
    SubscriptionStatus,
)
from entitlements.schemas.events import (
    EventKind,
    RecordSnapshot,
    ReconcileOutcome,
    SubscriptionEvent,
)
from entitlements.services.entitlement_store import EntitlementStore
from entitlements.services.reconciliation import ReconciliationEngine


NOW = datetime.now(timezone.utc).replace(microsecond=0)
USER_ID = "user-1"


def _event(**overrides) -> SubscriptionEvent:
    values = {
        "platform": Platform.STRIPE,
        "external_id": "sub_1",
        "event_id": "evt_default",
        "kind": EventKind.CHECKOUT_COMPLETED,
        "occurred_at": NOW - timedelta(minutes=10),
        "plan": Plan.MONTHLY,
        "period_end_at": NOW + timedelta(days=30),
        "user_id": USER_ID,
    }
    values.update(overrides)
    return SubscriptionEvent(**values)


@pytest.fixture
def engine(store) -> ReconciliationEngine:
    return ReconciliationEngine(store, clock=lambda: NOW)


async def _subscribe(engine, **overrides) -> RecordSnapshot:
    result = await engine.apply(_event(**overrides))
    assert result.outcome == ReconcileOutcome.APPLIED
    return result.record


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

class TestCreation:
    """Creation events (checkout_completed, subscribed)."""

    @pytest.mark.asyncio
    async def test_checkout_creates_active_record(self, engine, store, session_factory):
        result = await engine.apply(_event())

        assert result.outcome == ReconcileOutcome.APPLIED
        record = await store.get_by_user_id(USER_ID)
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.plan == Plan.MONTHLY
        assert record.platform == Platform.STRIPE
        assert record.external_subscription_id == "sub_1"
        assert record.period_end_at == NOW + timedelta(days=30)
        assert record.last_event_at == NOW - timedelta(minutes=10)
        assert record.cancel_at_period_end is False
        assert record.version == 1

        async with session_factory() as session:
            rows = (await session.execute(select(SubscriptionHistory))).scalars().all()
        assert len(rows) == 1
        assert rows[0].event_kind == "checkout_completed"
        assert rows[0].previous_status is None
        assert rows[0].new_status == "active"

    @pytest.mark.asyncio
    async def test_lifetime_has_no_period_end(self, engine):
        record = await _subscribe(engine, plan=Plan.LIFETIME, period_end_at=None, external_id="pi_1")

        assert record.status == SubscriptionStatus.ACTIVE
        assert record.plan == Plan.LIFETIME
        assert record.period_end_at is None

    @pytest.mark.asyncio
    async def test_unknown_period_is_pending(self, engine):
        record = await _subscribe(engine, period_end_at=None)

        assert record.status == SubscriptionStatus.PENDING

    @pytest.mark.asyncio
    async def test_period_already_ended_is_expired(self, engine):
        record = await _subscribe(engine, period_end_at=NOW - timedelta(days=1))

        assert record.status == SubscriptionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_external_id_owned_by_other_user_is_conflict(self, engine, store):
        await _subscribe(engine)

        result = await engine.apply(
            _event(user_id="user-2", event_id="evt_other", occurred_at=NOW - timedelta(minutes=1))
        )

        assert result.outcome == ReconcileOutcome.CONFLICT
        assert await store.get_by_user_id("user-2") is None
        assert (await store.get_by_user_id(USER_ID)).version == 1

    @pytest.mark.asyncio
    async def test_platform_switch_replaces_external_id(self, engine, store):
        await _subscribe(engine)

        record = await _subscribe(
            engine,
            platform=Platform.APPLE,
            external_id="1000000001",
            kind=EventKind.SUBSCRIBED,
            event_id="apple:receipt:1",
            occurred_at=NOW - timedelta(minutes=5),
            plan=Plan.YEARLY,
            period_end_at=NOW + timedelta(days=365),
        )

        assert record.platform == Platform.APPLE
        assert record.external_subscription_id == "1000000001"
        assert record.plan == Plan.YEARLY
        assert await store.get_by_external_id(Platform.STRIPE, "sub_1") is None

        # Later events for the old Stripe subscription no longer match
        stale = await engine.apply(
            _event(kind=EventKind.EXPIRED, event_id="evt_old", user_id=None, occurred_at=NOW)
        )
        assert stale.outcome == ReconcileOutcome.ORPHANED
        assert (await store.get_by_user_id(USER_ID)).status == SubscriptionStatus.ACTIVE


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

class TestTransitions:
    """Status changes for existing records."""

    @pytest.mark.asyncio
    async def test_renewal_failed_then_renewed(self, engine):
        await _subscribe(engine)

        failed = await engine.apply(
            _event(kind=EventKind.RENEWAL_FAILED, event_id="evt_2", user_id=None,
                   occurred_at=NOW - timedelta(minutes=5), plan=None, period_end_at=None)
        )
        assert failed.record.status == SubscriptionStatus.AT_RISK
        assert failed.record.period_end_at == NOW + timedelta(days=30)

        renewed = await engine.apply(
            _event(kind=EventKind.RENEWED, event_id="evt_3", user_id=None,
                   occurred_at=NOW - timedelta(minutes=1), period_end_at=NOW + timedelta(days=60))
        )
        assert renewed.record.status == SubscriptionStatus.ACTIVE
        assert renewed.record.period_end_at == NOW + timedelta(days=60)

    @pytest.mark.asyncio
    async def test_hard_cancel_sets_canceled(self, engine):
        await _subscribe(engine)

        result = await engine.apply(
            _event(kind=EventKind.CANCELED, event_id="evt_2", user_id=None,
                   occurred_at=NOW - timedelta(minutes=5))
        )

        assert result.record.status == SubscriptionStatus.CANCELED
        assert result.record.cancel_at_period_end is True
        assert result.record.period_end_at == NOW + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_soft_cancel_only_sets_flag(self, engine):
        await _subscribe(engine)

        result = await engine.apply(
            _event(kind=EventKind.CANCELED, soft=True, event_id="evt_2", user_id=None,
                   occurred_at=NOW - timedelta(minutes=5))
        )

        assert result.record.status == SubscriptionStatus.ACTIVE
        assert result.record.cancel_at_period_end is True

    @pytest.mark.asyncio
    async def test_expired_revokes_access(self, engine):
        await _subscribe(engine)

        result = await engine.apply(
            _event(kind=EventKind.EXPIRED, event_id="evt_2", user_id=None,
                   occurred_at=NOW - timedelta(minutes=5))
        )

        assert result.record.status == SubscriptionStatus.EXPIRED
        assert result.record.period_end_at == NOW
        assert result.record.is_entitled(NOW) is False

    @pytest.mark.asyncio
    async def test_renewal_failed_on_canceled_is_ignored(self, engine):
        await _subscribe(engine)
        await engine.apply(
            _event(kind=EventKind.CANCELED, event_id="evt_2", user_id=None,
                   occurred_at=NOW - timedelta(minutes=5))
        )

        result = await engine.apply(
            _event(kind=EventKind.RENEWAL_FAILED, event_id="evt_3", user_id=None,
                   occurred_at=NOW - timedelta(minutes=1))
        )

        assert result.outcome == ReconcileOutcome.IGNORED
        assert result.record.status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_renewed_with_past_period_is_ignored(self, engine):
        await _subscribe(engine)

        result = await engine.apply(
            _event(kind=EventKind.RENEWED, event_id="evt_2", user_id=None,
                   occurred_at=NOW - timedelta(minutes=5), period_end_at=NOW - timedelta(days=1))
        )

        assert result.outcome == ReconcileOutcome.IGNORED
        assert result.record.period_end_at == NOW + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_unhandled_never_touches_store(self):
        store = AsyncMock(spec=EntitlementStore)
        engine = ReconciliationEngine(store, clock=lambda: NOW)

        result = await engine.apply(_event(kind=EventKind.UNHANDLED, raw_payload_ref="stripe:customer.created:evt_9"))

        assert result.outcome == ReconcileOutcome.UNHANDLED
        store.get_by_external_id.assert_not_called()


# ---------------------------------------------------------------------------
# Ordering and isolation
# ---------------------------------------------------------------------------

class TestOrdering:
    """Stale and orphaned events."""

    @pytest.mark.asyncio
    async def test_out_of_order_renewal_is_stale(self, engine, store):
        await _subscribe(engine, occurred_at=NOW - timedelta(hours=3))
        t1, t2 = NOW - timedelta(hours=2), NOW - timedelta(hours=1)
        p1, p2 = NOW + timedelta(days=31), NOW + timedelta(days=61)

        newer = await engine.apply(
            _event(kind=EventKind.RENEWED, event_id="evt_t2", user_id=None, occurred_at=t2, period_end_at=p2)
        )
        older = await engine.apply(
            _event(kind=EventKind.RENEWED, event_id="evt_t1", user_id=None, occurred_at=t1, period_end_at=p1)
        )

        assert newer.outcome == ReconcileOutcome.APPLIED
        assert older.outcome == ReconcileOutcome.STALE
        record = await store.get_by_user_id(USER_ID)
        assert record.period_end_at == p2
        assert record.last_event_at == t2

    @pytest.mark.asyncio
    async def test_same_timestamp_is_stale(self, engine):
        created = await _subscribe(engine)

        result = await engine.apply(_event(event_id="checkout:cs_1"))

        assert result.outcome == ReconcileOutcome.STALE
        assert result.record.version == created.version

    @pytest.mark.asyncio
    async def test_event_without_record_is_orphaned(self, engine, store):
        result = await engine.apply(
            _event(kind=EventKind.RENEWED, user_id=None, external_id="sub_unknown")
        )

        assert result.outcome == ReconcileOutcome.ORPHANED
        assert result.record is None
        assert await store.get_by_user_id(USER_ID) is None

    @pytest.mark.asyncio
    async def test_same_id_on_other_platform_is_isolated(self, engine, store):
        await _subscribe(
            engine,
            platform=Platform.APPLE,
            external_id="sub_123",
            kind=EventKind.SUBSCRIBED,
        )

        result = await engine.apply(
            _event(platform=Platform.STRIPE, external_id="sub_123", kind=EventKind.EXPIRED,
                   user_id=None, event_id="evt_x", occurred_at=NOW)
        )

        assert result.outcome == ReconcileOutcome.ORPHANED
        record = await store.get_by_user_id(USER_ID)
        assert record.platform == Platform.APPLE
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.version == 1

    @pytest.mark.asyncio
    async def test_optimistic_event_keeps_last_event_at(self, engine):
        created = await _subscribe(engine)

        result = await engine.apply(
            _event(kind=EventKind.CANCELED, soft=True, optimistic=True, event_id=None,
                   user_id=None, occurred_at=NOW - timedelta(hours=1))
        )

        assert result.outcome == ReconcileOutcome.APPLIED
        assert result.record.cancel_at_period_end is True
        assert result.record.last_event_at == created.last_event_at


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class _LaggingStore(EntitlementStore):
    """Serves one empty read per lookup, as if a concurrent insert had not
    committed yet when this writer looked."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.lagging = {"external": True, "user": True}

    async def get_by_external_id(self, platform, external_id):
        if self.lagging["external"]:
            self.lagging["external"] = False
            return None
        return await super().get_by_external_id(platform, external_id)

    async def get_by_user_id(self, user_id):
        if self.lagging["user"]:
            self.lagging["user"] = False
            return None
        return await super().get_by_user_id(user_id)


class TestConcurrency:
    """Optimistic write loop."""

    @pytest.mark.asyncio
    async def test_lost_insert_race_resolves_as_stale(self, engine, session_factory, store):
        webhook = _event(event_id="evt_1")
        await engine.apply(webhook)

        lagging = ReconciliationEngine(_LaggingStore(session_factory), clock=lambda: NOW)
        result = await lagging.apply(_event(event_id="checkout:cs_test_1"))

        assert result.outcome == ReconcileOutcome.STALE
        record = await store.get_by_user_id(USER_ID)
        assert record.version == 1
        assert record.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_version_conflict_is_retried(self, engine, store):
        await _subscribe(engine)
        real_update = store.conditional_update
        calls = {"n": 0}

        async def flaky_update(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConcurrencyConflict("version moved")
            return await real_update(*args, **kwargs)

        store.conditional_update = flaky_update
        result = await engine.apply(
            _event(kind=EventKind.RENEWAL_FAILED, event_id="evt_2", user_id=None, occurred_at=NOW)
        )

        assert result.outcome == ReconcileOutcome.APPLIED
        assert result.record.status == SubscriptionStatus.AT_RISK
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_transient_error(self, engine, store):
        await _subscribe(engine)
        store.conditional_update = AsyncMock(side_effect=ConcurrencyConflict("always"))

        with pytest.raises(TransientStoreError):
            await engine.apply(
                _event(kind=EventKind.RENEWAL_FAILED, event_id="evt_2", user_id=None, occurred_at=NOW)
            )

        assert store.conditional_update.await_count == engine.max_retries


# ---------------------------------------------------------------------------
# Sweep expiry
# ---------------------------------------------------------------------------

class TestExpireRecord:
    """``expire_record`` used by the expiry sweep."""

    @pytest.mark.asyncio
    async def test_expires_past_period(self, engine, store):
        await _subscribe(engine, period_end_at=NOW + timedelta(days=1))
        later = ReconciliationEngine(store, clock=lambda: NOW + timedelta(days=2))

        result = await later.expire_record(USER_ID)

        assert result.outcome == ReconcileOutcome.APPLIED
        assert result.record.status == SubscriptionStatus.EXPIRED
        assert result.record.period_end_at == NOW + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_current_period_is_left_alone(self, engine):
        await _subscribe(engine)

        result = await engine.expire_record(USER_ID)

        assert result.outcome == ReconcileOutcome.IGNORED
        assert result.record.status == SubscriptionStatus.ACTIVE
