"""
Stripe Adapter
==============

Translates Stripe payloads into ``SubscriptionEvent`` objects and wraps the
few Stripe API calls the subscription flow needs.

Handles:
- Webhook signature verification (``Stripe-Signature`` HMAC)
- Event type mapping (checkout, subscription lifecycle, invoice failures)
- Checkout session creation and re-fetch for redirect confirmation
- Cancel-at-period-end on the platform side

The adapter never touches the entitlement store. The Stripe SDK is
synchronous, so every API call runs in a worker thread bounded by
``PLATFORM_REQUEST_TIMEOUT_SECONDS``.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Optional

import stripe

from entitlements.config import settings
from entitlements.core.errors import TransientNetworkError, VerificationError
from entitlements.models.subscription import Plan, Platform
from entitlements.schemas.events import EventKind, SubscriptionEvent
from entitlements.utils.helpers import from_epoch_seconds

logger = logging.getLogger(__name__)

CHECKOUT_EVENT_PREFIX = "checkout:"


def _to_dict(obj: Any) -> dict:
    """Convert a Stripe object (or a plain dict) into a plain dictionary."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    for attr in ("to_dict_recursive", "to_dict"):
        converter = getattr(obj, attr, None)
        if callable(converter):
            return converter()
    return dict(obj)


def _object_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _to_dict(value).get("id")


class StripeAdapter:
    """Stripe webhook parser and API client."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.timeout = timeout or settings.PLATFORM_REQUEST_TIMEOUT_SECONDS
        self.price_plans = settings.stripe_price_plans
        stripe.api_key = self.secret_key

    # -------------------------------------------------------------------------
    # Stripe API
    # -------------------------------------------------------------------------

    async def _call(self, fn: Callable[..., Any], *args, **kwargs) -> dict:
        """Run a blocking Stripe SDK call with a timeout."""
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Stripe API timeout calling %s", getattr(fn, "__qualname__", fn))
            raise TransientNetworkError("Stripe API timed out") from exc
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
            logger.error("Stripe API unavailable: %s", exc)
            raise TransientNetworkError(f"Stripe API unavailable: {exc}") from exc
        except stripe.InvalidRequestError as exc:
            logger.warning("Stripe rejected request: %s", exc)
            raise VerificationError("STRIPE_INVALID_REQUEST", str(exc)) from exc
        return _to_dict(result)

    async def create_checkout_session(
        self,
        user_id: str,
        plan: str,
        billing_period: str,
    ) -> str:
        """
        Create a new Checkout Session and return its hosted URL.

        Every call creates a fresh session; the caller guards against
        double submission.

        Args:
            user_id: Authenticated user, echoed back as ``client_reference_id``.
            plan: Product tier requested by the client (``premium``).
            billing_period: ``monthly``, ``yearly`` or ``lifetime``.
        """
        price_id = self._price_for(billing_period)
        metadata = {
            "userId": user_id,
            "plan": plan,
            "billingPeriod": billing_period,
        }
        params: dict[str, Any] = {
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": (
                f"{settings.FRONTEND_URL}/subscription/success"
                "?session_id={CHECKOUT_SESSION_ID}"
            ),
            "cancel_url": f"{settings.FRONTEND_URL}/subscription",
            "client_reference_id": user_id,
            "metadata": metadata,
        }
        if billing_period == Plan.LIFETIME.value:
            params["mode"] = "payment"
            params["payment_intent_data"] = {"metadata": metadata}
        else:
            params["mode"] = "subscription"
            subscription_data: dict[str, Any] = {"metadata": metadata}
            if settings.STRIPE_TRIAL_DAYS > 0:
                subscription_data["trial_period_days"] = settings.STRIPE_TRIAL_DAYS
            params["subscription_data"] = subscription_data

        session = await self._call(stripe.checkout.Session.create, **params)
        logger.info(
            "Created checkout session %s for user=%s period=%s",
            session.get("id"),
            user_id,
            billing_period,
        )
        return session["url"]

    async def retrieve_checkout_event(self, session_id: str) -> SubscriptionEvent:
        """
        Re-fetch a checkout session and build the same ``checkout_completed``
        event the webhook would produce.

        Raises:
            VerificationError: The session is unknown or not complete.
        """
        session = await self._call(stripe.checkout.Session.retrieve, session_id)
        if session.get("status") != "complete":
            raise VerificationError(
                "CHECKOUT_INCOMPLETE",
                f"Checkout session {session_id} is not complete",
            )
        return await self._checkout_event(
            session,
            event_id=f"{CHECKOUT_EVENT_PREFIX}{session_id}",
            raw_payload_ref=f"stripe:checkout.session:{session_id}",
        )

    async def cancel_at_period_end(self, external_subscription_id: str) -> Optional[datetime]:
        """
        Flag the Stripe subscription to cancel at the end of its period.

        Returns:
            The period end reported by Stripe.
        """
        subscription = await self._call(
            stripe.Subscription.modify,
            external_subscription_id,
            cancel_at_period_end=True,
        )
        logger.info("Stripe subscription %s set to cancel at period end", external_subscription_id)
        return self._period_end(subscription)

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    async def parse_webhook(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
    ) -> SubscriptionEvent:
        """
        Verify and translate a Stripe webhook delivery.

        Raises:
            VerificationError: Missing or invalid signature, or a payload
                that cannot be parsed.
        """
        if not signature_header:
            raise VerificationError("SIGNATURE_MISSING", "Missing Stripe-Signature header")

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise VerificationError("MALFORMED_PAYLOAD", "Payload is not UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe signature verification failed: %s", exc)
            raise VerificationError("SIGNATURE_MISMATCH", "Invalid Stripe signature") from exc

        try:
            event = json.loads(payload)
            event_id = event["id"]
            event_type = event["type"]
            obj = event["data"]["object"]
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            raise VerificationError("MALFORMED_PAYLOAD", "Invalid Stripe event payload") from exc

        occurred_at = from_epoch_seconds(event.get("created"))
        if occurred_at is None:
            raise VerificationError("MALFORMED_PAYLOAD", "Stripe event has no created time")

        raw_ref = f"stripe:{event_type}:{event_id}"
        logger.info("Stripe webhook received: type=%s id=%s", event_type, event_id)

        if event_type == "checkout.session.completed":
            return await self._checkout_event(obj, event_id=event_id, raw_payload_ref=raw_ref)
        if event_type == "customer.subscription.updated":
            return self._subscription_updated_event(obj, event_id, occurred_at, raw_ref)
        if event_type == "customer.subscription.deleted":
            return SubscriptionEvent(
                platform=Platform.STRIPE,
                external_id=obj["id"],
                event_id=event_id,
                kind=EventKind.EXPIRED,
                occurred_at=occurred_at,
                raw_payload_ref=raw_ref,
            )
        if event_type == "invoice.payment_failed":
            subscription_id = self._invoice_subscription_id(obj)
            if subscription_id:
                return SubscriptionEvent(
                    platform=Platform.STRIPE,
                    external_id=subscription_id,
                    event_id=event_id,
                    kind=EventKind.RENEWAL_FAILED,
                    occurred_at=occurred_at,
                    raw_payload_ref=raw_ref,
                )

        return self._unhandled(obj, event_id, occurred_at, raw_ref)

    # -------------------------------------------------------------------------
    # Mapping helpers
    # -------------------------------------------------------------------------

    async def _checkout_event(
        self,
        session: dict,
        *,
        event_id: str,
        raw_payload_ref: str,
    ) -> SubscriptionEvent:
        """
        Build ``checkout_completed`` from a session.

        ``occurred_at`` is the session's own creation time so the webhook
        and the redirect confirmation produce identical timestamps.
        """
        metadata = _to_dict(session.get("metadata"))
        user_id = session.get("client_reference_id") or metadata.get("userId")
        if not user_id:
            raise VerificationError(
                "MISSING_USER_REFERENCE",
                "Checkout session has no user reference",
            )

        occurred_at = from_epoch_seconds(session.get("created"))
        if occurred_at is None:
            raise VerificationError("MALFORMED_PAYLOAD", "Checkout session has no created time")

        if session.get("mode") == "payment":
            if session.get("payment_status") != "paid":
                raise VerificationError("CHECKOUT_UNPAID", "Lifetime checkout is not paid")
            payment_intent_id = _object_id(session.get("payment_intent"))
            if not payment_intent_id:
                raise VerificationError("MALFORMED_PAYLOAD", "Checkout has no payment intent")
            return SubscriptionEvent(
                platform=Platform.STRIPE,
                external_id=payment_intent_id,
                event_id=event_id,
                kind=EventKind.CHECKOUT_COMPLETED,
                occurred_at=occurred_at,
                plan=Plan.LIFETIME,
                period_end_at=None,
                raw_payload_ref=raw_payload_ref,
                user_id=str(user_id),
            )

        subscription_ref = session.get("subscription")
        subscription_id = _object_id(subscription_ref)
        if not subscription_id:
            raise VerificationError("MALFORMED_PAYLOAD", "Checkout has no subscription")

        if isinstance(subscription_ref, str):
            subscription = await self._call(stripe.Subscription.retrieve, subscription_id)
        else:
            subscription = _to_dict(subscription_ref)

        plan = self._plan_for(subscription) or self._plan_from_metadata(metadata)
        if plan is None:
            raise VerificationError("UNKNOWN_PRICE", "Subscription price is not configured")

        return SubscriptionEvent(
            platform=Platform.STRIPE,
            external_id=subscription_id,
            event_id=event_id,
            kind=EventKind.CHECKOUT_COMPLETED,
            occurred_at=occurred_at,
            plan=plan,
            period_end_at=self._period_end(subscription),
            raw_payload_ref=raw_payload_ref,
            user_id=str(user_id),
        )

    def _subscription_updated_event(
        self,
        subscription: dict,
        event_id: str,
        occurred_at: datetime,
        raw_ref: str,
    ) -> SubscriptionEvent:
        status = subscription.get("status")
        base = {
            "platform": Platform.STRIPE,
            "external_id": subscription["id"],
            "event_id": event_id,
            "occurred_at": occurred_at,
            "raw_payload_ref": raw_ref,
        }

        if status in ("active", "trialing"):
            if subscription.get("cancel_at_period_end"):
                return SubscriptionEvent(**base, kind=EventKind.CANCELED, soft=True)
            return SubscriptionEvent(
                **base,
                kind=EventKind.RENEWED,
                plan=self._plan_for(subscription),
                period_end_at=self._period_end(subscription),
            )
        if status == "past_due":
            return SubscriptionEvent(**base, kind=EventKind.RENEWAL_FAILED)
        if status in ("canceled", "unpaid"):
            return SubscriptionEvent(**base, kind=EventKind.CANCELED, soft=False)
        if status == "incomplete_expired":
            return SubscriptionEvent(**base, kind=EventKind.EXPIRED)

        return SubscriptionEvent(**base, kind=EventKind.UNHANDLED)

    @staticmethod
    def _unhandled(
        obj: dict,
        event_id: str,
        occurred_at: datetime,
        raw_ref: str,
    ) -> SubscriptionEvent:
        return SubscriptionEvent(
            platform=Platform.STRIPE,
            external_id=str(obj.get("id") or ""),
            event_id=event_id,
            kind=EventKind.UNHANDLED,
            occurred_at=occurred_at,
            raw_payload_ref=raw_ref,
        )

    @staticmethod
    def _invoice_subscription_id(invoice: dict) -> Optional[str]:
        """Invoices reference their subscription at the top level on older
        API versions and under ``parent.subscription_details`` on newer ones."""
        subscription_id = _object_id(invoice.get("subscription"))
        if subscription_id:
            return subscription_id
        parent = _to_dict(invoice.get("parent"))
        details = _to_dict(parent.get("subscription_details"))
        return _object_id(details.get("subscription"))

    @staticmethod
    def _period_end(subscription: dict) -> Optional[datetime]:
        """``current_period_end`` lives on the subscription or, on newer
        API versions, on its items."""
        period_end = subscription.get("current_period_end")
        if period_end is None:
            items = _to_dict(subscription.get("items")).get("data") or []
            if items:
                period_end = _to_dict(items[0]).get("current_period_end")
        return from_epoch_seconds(period_end)

    def _plan_for(self, subscription: dict) -> Optional[Plan]:
        items = _to_dict(subscription.get("items")).get("data") or []
        for item in items:
            price_id = _object_id(_to_dict(item).get("price"))
            plan = self.price_plans.get(price_id)
            if plan:
                return Plan(plan)
        return None

    @staticmethod
    def _plan_from_metadata(metadata: dict) -> Optional[Plan]:
        period = metadata.get("billingPeriod")
        if period in (Plan.MONTHLY.value, Plan.YEARLY.value):
            return Plan(period)
        return None

    @staticmethod
    def _price_for(billing_period: str) -> str:
        prices = {
            Plan.MONTHLY.value: settings.STRIPE_PRICE_MONTHLY,
            Plan.YEARLY.value: settings.STRIPE_PRICE_YEARLY,
            Plan.LIFETIME.value: settings.STRIPE_PRICE_LIFETIME,
        }
        price_id = prices.get(billing_period)
        if not price_id:
            raise ValueError(f"No Stripe price configured for {billing_period!r}")
        return price_id
