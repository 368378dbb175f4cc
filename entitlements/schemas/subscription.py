"""
Subscription Schemas
====================

Pydantic schemas for subscription endpoints. Keys are camelCase on the
wire to match the web and iOS clients.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import Field

from entitlements.schemas.common import CamelModel


# ─── Status ──────────────────────────────────────────────────────────────────


class SubscriptionStatusResponse(CamelModel):
    """Entitlement summary for the current user."""

    plan: Literal["premium", "free"]
    is_active: bool
    expires_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    billing_period: Optional[str] = None


# ─── Checkout ────────────────────────────────────────────────────────────────


class CheckoutRequest(CamelModel):
    """Request schema for a Stripe checkout session."""

    plan: str
    billing_period: str


class CheckoutResponse(CamelModel):
    url: str


class ProcessCheckoutResponse(CamelModel):
    success: bool


# ─── Cancel ──────────────────────────────────────────────────────────────────


class CancelResponse(CamelModel):
    """Response schema for subscription cancellation."""

    success: bool = True
    message: str
    end_date: Optional[datetime] = None


# ─── Webhooks ────────────────────────────────────────────────────────────────


class WebhookAck(CamelModel):
    received: bool = True
    outcome: Optional[str] = None


# ─── iOS ─────────────────────────────────────────────────────────────────────


class IosPurchaseRequest(CamelModel):
    """Receipt submitted by the iOS app after a StoreKit purchase."""

    product_id: str = Field(min_length=1)
    receipt_data: str = Field(min_length=1)


class IosRestoreRequest(CamelModel):
    receipt_data: str = Field(min_length=1)


class IosPurchaseResponse(CamelModel):
    success: bool = True
    plan: str
    expires_at: Optional[datetime] = None
