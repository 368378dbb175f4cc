"""
Subscription Service
====================

Command/query façade over the reconciliation core. The HTTP layer, the
admin CLI and any other collaborator go through this class; nothing else
calls the engine.

Every state change, whether it comes from a webhook, a redirect
confirmation, a receipt or a manual grant, runs through the same
Deduplicator -> Engine path.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Mapping, Optional

from entitlements.config import settings
from entitlements.core.errors import (
    BadRequestError,
    ConflictError,
    ErrorCodes,
    NotFoundError,
    ValidationError,
    VerificationError,
)
from entitlements.models.subscription import Plan, Platform, SubscriptionStatus
from entitlements.schemas.events import (
    EventKind,
    RecordSnapshot,
    ReconcileOutcome,
    ReconcileResult,
    SubscriptionEvent,
)
from entitlements.services.apple_adapter import AppleAdapter
from entitlements.services.cache import CacheInvalidator, CacheKeys, CacheManager
from entitlements.services.deduplicator import EventDeduplicator
from entitlements.services.entitlement_store import EntitlementStore
from entitlements.services.reconciliation import ReconciliationEngine
from entitlements.services.stripe_adapter import StripeAdapter
from entitlements.utils.helpers import format_datetime, utc_now

logger = logging.getLogger(__name__)

PREMIUM = "premium"
BILLING_PERIODS = (Plan.MONTHLY.value, Plan.YEARLY.value, Plan.LIFETIME.value)


class SubscriptionService:
    """Entry point for subscription queries and commands."""

    def __init__(
        self,
        store: EntitlementStore,
        engine: ReconciliationEngine,
        deduplicator: EventDeduplicator,
        stripe_adapter: StripeAdapter,
        apple_adapter: AppleAdapter,
    ):
        self.store = store
        self.engine = engine
        self.deduplicator = deduplicator
        self.stripe = stripe_adapter
        self.apple = apple_adapter

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_status(self, user_id: str) -> dict[str, Any]:
        """
        Current entitlement for a user.

        Returns:
            ``{plan, isActive, expiresAt, cancelAtPeriodEnd, billingPeriod}``
            where ``plan`` is ``"premium"`` or ``"free"``.
        """
        cache_key = CacheKeys.subscription_status(user_id)
        cached = await CacheManager.get(cache_key)
        if cached:
            return cached

        now = utc_now()
        record = await self.store.get_by_user_id(user_id)
        payload = status_payload(record, now)

        ttl = CacheManager.TTL_SHORT
        if payload["isActive"] and record.period_end_at is not None:
            remaining = int((record.period_end_at - now).total_seconds())
            ttl = max(1, min(ttl, remaining))
        await CacheManager.set(cache_key, payload, ttl=ttl)
        return payload

    # =========================================================================
    # Stripe checkout
    # =========================================================================

    async def start_checkout(
        self,
        user_id: str,
        plan: str,
        billing_period: str,
    ) -> str:
        """
        Validate the requested plan and return a Stripe Checkout URL.

        The store is not touched here. The subscription only becomes active
        once the ``checkout_completed`` event is reconciled.

        Raises:
            ValidationError: Unknown plan or billing period.
        """
        if plan != PREMIUM:
            raise ValidationError(f"Unsupported plan: {plan}", field="plan")
        if billing_period not in BILLING_PERIODS:
            raise ValidationError(
                f"Unsupported billing period: {billing_period}",
                field="billingPeriod",
            )
        if billing_period == Plan.LIFETIME.value and not settings.STRIPE_PRICE_LIFETIME:
            raise ValidationError(
                "Lifetime plan is not available",
                field="billingPeriod",
            )

        return await self.stripe.create_checkout_session(user_id, plan, billing_period)

    async def confirm_checkout(self, session_id: str) -> Optional[RecordSnapshot]:
        """
        Reconcile a checkout right after the redirect back from Stripe.

        Produces the same ``checkout_completed`` event as the webhook, so
        whichever arrives second is a duplicate or stale no-op.

        Returns:
            The user's record after reconciliation, if any.
        """
        event = await self.stripe.retrieve_checkout_event(session_id)
        result = await self._reconcile(event)
        if result.record is not None:
            return result.record
        if event.user_id:
            return await self.store.get_by_user_id(event.user_id)
        return None

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def cancel(self, user_id: str) -> dict[str, Any]:
        """
        Cancel at period end, dispatching on the record's platform.

        Stripe is told first; the local record is then updated with an
        optimistic soft cancel. Apple and manual records are local only.

        Returns:
            ``{"message", "effectiveDate"}``

        Raises:
            BadRequestError: No active subscription, a lifetime plan, or a
                subscription that is already canceling.
        """
        now = utc_now()
        record = await self.store.get_by_user_id(user_id)

        if record is None or not record.is_entitled(now):
            raise BadRequestError(
                ErrorCodes.SUB_NO_ACTIVE_SUB,
                "No active subscription to cancel",
            )
        if record.plan == Plan.LIFETIME:
            raise BadRequestError(
                ErrorCodes.SUB_LIFETIME_NOT_CANCELLABLE,
                "Lifetime purchases cannot be canceled",
            )
        if record.cancel_at_period_end or record.status == SubscriptionStatus.CANCELED:
            raise BadRequestError(
                ErrorCodes.SUB_ALREADY_CANCELLED,
                "Subscription is already set to cancel",
            )

        effective_date = record.period_end_at
        if record.platform == Platform.STRIPE:
            effective_date = (
                await self.stripe.cancel_at_period_end(record.external_subscription_id)
                or effective_date
            )
            message = (
                "Your subscription will remain active until "
                f"{_display_date(effective_date)}."
            )
        elif record.platform == Platform.APPLE:
            message = (
                "Apple subscriptions are managed by the App Store. Turn off "
                "auto-renew in Settings > Apple ID > Subscriptions. Access "
                f"continues until {_display_date(effective_date)}."
            )
        else:
            message = (
                "Your plan will not renew and stays active until "
                f"{_display_date(effective_date)}."
            )

        event = SubscriptionEvent(
            platform=record.platform,
            external_id=record.external_subscription_id or f"manual:{user_id}",
            kind=EventKind.CANCELED,
            occurred_at=now,
            raw_payload_ref=f"local:cancel:{user_id}",
            soft=True,
            optimistic=True,
        )
        result = await self.engine.apply(event)
        if result.outcome != ReconcileOutcome.APPLIED:
            logger.warning(
                "Local cancel for user=%s not applied: %s",
                user_id,
                result.reason,
            )
            raise BadRequestError(
                ErrorCodes.SUB_NO_ACTIVE_SUB,
                "No active subscription to cancel",
            )

        await CacheInvalidator.on_subscription_change(user_id)
        logger.info(
            "Subscription canceled at period end: user=%s platform=%s until=%s",
            user_id,
            record.platform.value,
            effective_date,
        )
        return {"message": message, "effectiveDate": effective_date}

    # =========================================================================
    # Inbound platform events
    # =========================================================================

    async def process_webhook(
        self,
        platform: Platform,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> ReconcileOutcome:
        """
        Verify and apply one webhook delivery.

        Business outcomes (stale, orphaned, ignored...) all return normally
        so the platform stops retrying.

        Raises:
            VerificationError: Signature or payload rejected.
            TransientError: Store or platform unavailable.
        """
        if platform == Platform.STRIPE:
            signature = _header(headers, "stripe-signature")
            event = await self.stripe.parse_webhook(raw_body, signature)
        elif platform == Platform.APPLE:
            event = self.apple.parse_server_notification(_signed_payload(raw_body))
        else:
            raise ValueError(f"No webhook adapter for platform {platform.value}")

        result = await self._reconcile(event)
        return result.outcome

    async def verify_receipt(
        self,
        user_id: str,
        product_id: Optional[str],
        receipt: str,
    ) -> dict[str, Any]:
        """
        Validate an App Store receipt for the current user.

        Raises:
            VerificationError: Apple rejected the receipt.
            ConflictError: The purchase already belongs to another account.
        """
        event = await self.apple.verify_receipt(receipt, user_id=user_id, product_id=product_id)
        record = await self._apply_user_event(event, user_id)
        now = utc_now()
        entitled = record is not None and record.is_entitled(now)
        return {
            "success": entitled,
            "plan": record.plan.value if record else Plan.NONE.value,
            "expiresAt": record.period_end_at if record else None,
        }

    async def restore_purchases(self, user_id: str, receipt: str) -> dict[str, Any]:
        """
        Re-verify the latest receipt and restore access.

        Raises:
            NotFoundError: The receipt holds no active subscription.
        """
        event = await self.apple.verify_receipt(receipt, user_id=user_id)
        record = await self._apply_user_event(event, user_id)
        if record is None or not record.is_entitled(utc_now()):
            raise NotFoundError(
                code=ErrorCodes.SUB_NO_PURCHASES,
                message="No active subscriptions found to restore",
            )
        return {
            "success": True,
            "plan": record.plan.value,
            "expiresAt": record.period_end_at,
        }

    async def grant_manual_plan(
        self,
        user_id: str,
        plan: Plan,
        period_end_at: Optional[datetime] = None,
    ) -> Optional[RecordSnapshot]:
        """Grant a plan outside any store (support, testing)."""
        event = SubscriptionEvent(
            platform=Platform.MANUAL,
            external_id=f"manual:{user_id}",
            event_id=f"manual:{uuid.uuid4()}",
            kind=EventKind.SUBSCRIBED,
            occurred_at=utc_now(),
            plan=plan,
            period_end_at=None if plan == Plan.LIFETIME else period_end_at,
            raw_payload_ref=f"manual:grant:{plan.value}",
            user_id=user_id,
        )
        result = await self._reconcile(event)
        return result.record

    # =========================================================================
    # Internal
    # =========================================================================

    async def _reconcile(self, event: SubscriptionEvent) -> ReconcileResult:
        """Deduplicator check, engine apply, mark processed, invalidate cache."""
        if not await self.deduplicator.should_process(event):
            logger.info(
                "Duplicate %s event %s for %s ignored",
                event.platform.value,
                self.deduplicator.key_for(event),
                event.external_id,
            )
            return ReconcileResult(outcome=ReconcileOutcome.DUPLICATE)

        result = await self.engine.apply(event)
        await self.deduplicator.mark_processed(event)

        if result.changed and result.record is not None:
            await CacheInvalidator.on_subscription_change(result.record.user_id)
        return result

    async def _apply_user_event(
        self,
        event: SubscriptionEvent,
        user_id: str,
    ) -> Optional[RecordSnapshot]:
        result = await self._reconcile(event)
        if result.outcome == ReconcileOutcome.CONFLICT:
            raise ConflictError(
                ErrorCodes.SUB_OWNED_BY_OTHER_USER,
                "This purchase is linked to another account",
            )
        if result.record is not None and result.record.user_id == user_id:
            return result.record
        return await self.store.get_by_user_id(user_id)


def status_payload(record: Optional[RecordSnapshot], now: datetime) -> dict[str, Any]:
    """Serialize a record (or its absence) into the status response shape."""
    if record is None:
        return {
            "plan": "free",
            "isActive": False,
            "expiresAt": None,
            "cancelAtPeriodEnd": False,
            "billingPeriod": None,
        }

    entitled = record.is_entitled(now)
    return {
        "plan": PREMIUM if entitled and record.plan != Plan.NONE else "free",
        "isActive": entitled,
        "expiresAt": format_datetime(record.period_end_at),
        "cancelAtPeriodEnd": record.cancel_at_period_end,
        "billingPeriod": record.plan.value if entitled else None,
    }


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _signed_payload(raw_body: bytes) -> str:
    """Extract ``signedPayload`` from an App Store notification body."""
    try:
        body = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise VerificationError("MALFORMED_PAYLOAD", "Notification body is not JSON") from exc
    signed = body.get("signedPayload") if isinstance(body, dict) else None
    if not isinstance(signed, str) or not signed:
        raise VerificationError("MALFORMED_PAYLOAD", "Missing signedPayload")
    return signed


def _display_date(value: Optional[datetime]) -> str:
    if value is None:
        return "the end of the current period"
    return value.strftime("%B %d, %Y")
