"""
Subscription API Endpoints
==========================

Status, Stripe checkout, cancellation and iOS purchase endpoints.

All state changes go through ``SubscriptionService``; handlers only
validate input and shape the response.
"""

import logging

from fastapi import APIRouter, Query

from entitlements.dependencies import CurrentUserId, SubscriptionServiceDep
from entitlements.schemas.common import ErrorResponse
from entitlements.schemas.subscription import (
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    IosPurchaseRequest,
    IosPurchaseResponse,
    IosRestoreRequest,
    ProcessCheckoutResponse,
    SubscriptionStatusResponse,
)
from entitlements.utils.helpers import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()

_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


@router.get(
    "/subscription/status",
    response_model=SubscriptionStatusResponse,
    responses=_ERRORS,
)
async def get_subscription_status(
    user_id: CurrentUserId,
    service: SubscriptionServiceDep,
):
    """Get the current user's entitlement."""
    payload = await service.get_status(user_id)
    return SubscriptionStatusResponse.model_validate(payload)


@router.post(
    "/create-checkout-session",
    response_model=CheckoutResponse,
    responses=_ERRORS,
)
async def create_checkout_session(
    data: CheckoutRequest,
    user_id: CurrentUserId,
    service: SubscriptionServiceDep,
):
    """
    Start a Stripe Checkout for ``plan`` / ``billingPeriod``.

    The subscription is activated later, by the webhook or the
    process-checkout confirmation, never by this call.
    """
    url = await service.start_checkout(user_id, data.plan, data.billing_period)
    return CheckoutResponse(url=url)


@router.get(
    "/subscription/process-checkout",
    response_model=ProcessCheckoutResponse,
    responses=_ERRORS,
)
async def process_checkout(
    service: SubscriptionServiceDep,
    session_id: str = Query(min_length=1),
):
    """
    Confirm a checkout after Stripe redirects back to the app.

    Runs the same reconciliation as the ``checkout.session.completed``
    webhook, so the UI does not have to wait for it.
    """
    record = await service.confirm_checkout(session_id)
    success = record is not None and record.is_entitled(utc_now())
    logger.info("Checkout %s confirmed: success=%s", session_id, success)
    return ProcessCheckoutResponse(success=success)


@router.post(
    "/cancel-subscription",
    response_model=CancelResponse,
    responses=_ERRORS,
)
async def cancel_subscription(
    user_id: CurrentUserId,
    service: SubscriptionServiceDep,
):
    """Cancel the current subscription at the end of its paid period."""
    result = await service.cancel(user_id)
    return CancelResponse(
        success=True,
        message=result["message"],
        end_date=result["effectiveDate"],
    )


# =============================================================================
# iOS
# =============================================================================

@router.post(
    "/ios/purchase",
    response_model=IosPurchaseResponse,
    responses={**_ERRORS, 409: {"model": ErrorResponse}},
)
async def ios_purchase(
    data: IosPurchaseRequest,
    user_id: CurrentUserId,
    service: SubscriptionServiceDep,
):
    """Validate a StoreKit receipt and activate the purchased plan."""
    result = await service.verify_receipt(user_id, data.product_id, data.receipt_data)
    return IosPurchaseResponse(
        success=result["success"],
        plan=result["plan"],
        expires_at=result["expiresAt"],
    )


@router.post(
    "/ios/restore-purchases",
    response_model=IosPurchaseResponse,
    responses={**_ERRORS, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def ios_restore_purchases(
    data: IosRestoreRequest,
    user_id: CurrentUserId,
    service: SubscriptionServiceDep,
):
    """Restore an App Store subscription on a new device or account."""
    result = await service.restore_purchases(user_id, data.receipt_data)
    return IosPurchaseResponse(
        success=result["success"],
        plan=result["plan"],
        expires_at=result["expiresAt"],
    )
