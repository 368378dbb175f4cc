"""
Webhooks API Endpoints
======================

Inbound platform notifications (Stripe, App Store Server Notifications v2).

Authentication:
    Stripe signs the raw body; the signature is in ``Stripe-Signature``.
    Apple signs the notification itself (JWS with an ``x5c`` chain rooted
    in the Apple root CA). Both are verified by the platform adapters.

Responses:
    ``{"received": true}`` for every verified delivery, whatever the
    reconciliation outcome, so the platform stops retrying. A rejected
    signature or payload returns 400; a store or network failure returns
    503 and the platform retries later.
"""

import logging

from fastapi import APIRouter, Request

from entitlements.dependencies import SubscriptionServiceDep
from entitlements.models.subscription import Platform
from entitlements.schemas.common import ErrorResponse
from entitlements.schemas.subscription import WebhookAck

logger = logging.getLogger(__name__)

router = APIRouter()

_ERRORS = {
    400: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


@router.post("/webhook/stripe", response_model=WebhookAck, responses=_ERRORS)
async def stripe_webhook(
    request: Request,
    service: SubscriptionServiceDep,
):
    """
    Handle Stripe webhook events.

    Events handled:
    - checkout.session.completed
    - customer.subscription.updated
    - customer.subscription.deleted
    - invoice.payment_failed

    Anything else is acknowledged and dropped.
    """
    body = await request.body()
    outcome = await service.process_webhook(Platform.STRIPE, body, request.headers)
    return WebhookAck(received=True, outcome=outcome.value)


@router.post("/apple/webhook", response_model=WebhookAck, responses=_ERRORS)
async def apple_webhook(
    request: Request,
    service: SubscriptionServiceDep,
):
    """
    Handle App Store Server Notifications v2.

    Body: ``{"signedPayload": "<JWS>"}``.

    Notification types handled:
    - SUBSCRIBED, DID_RENEW
    - DID_FAIL_TO_RENEW
    - DID_CHANGE_RENEWAL_STATUS
    - EXPIRED, REFUND, REVOKE
    """
    body = await request.body()
    outcome = await service.process_webhook(Platform.APPLE, body, request.headers)
    return WebhookAck(received=True, outcome=outcome.value)
