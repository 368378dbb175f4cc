"""
Common Dependencies
===================

Shared dependencies used across the API routers.
"""

import logging
from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from entitlements.core.errors import AuthenticationError, ErrorCodes
from entitlements.core.security import decode_token
from entitlements.db.session import get_session_factory
from entitlements.services.apple_adapter import AppleAdapter
from entitlements.services.deduplicator import EventDeduplicator
from entitlements.services.entitlement_store import EntitlementStore
from entitlements.services.reconciliation import ReconciliationEngine
from entitlements.services.stripe_adapter import StripeAdapter
from entitlements.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

# Security scheme for JWT authentication
security = HTTPBearer(auto_error=False)


# =============================================================================
# Authentication
# =============================================================================

async def get_current_user_id(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> str:
    """
    Resolve the authenticated user id from the bearer token.

    Account management lives outside this service; the token subject is
    the opaque user id.

    Raises:
        AuthenticationError: Missing, invalid or expired token.
    """
    if credentials is None:
        raise AuthenticationError()

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_CREDENTIALS,
            message="Invalid or expired token",
        )

    if payload.get("type") != "access" or not payload.get("sub"):
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_CREDENTIALS,
            message="Invalid token",
        )

    return str(payload["sub"])


CurrentUserId = Annotated[str, Depends(get_current_user_id)]


# =============================================================================
# Services
# =============================================================================

def build_subscription_service(
    session_factory=None,
) -> SubscriptionService:
    """Wire the façade with its store, engine, deduplicator and adapters."""
    store = EntitlementStore(session_factory or get_session_factory())
    return SubscriptionService(
        store=store,
        engine=ReconciliationEngine(store),
        deduplicator=EventDeduplicator(),
        stripe_adapter=StripeAdapter(),
        apple_adapter=AppleAdapter(),
    )


@lru_cache
def get_subscription_service() -> SubscriptionService:
    """Process-wide façade instance."""
    return build_subscription_service()


SubscriptionServiceDep = Annotated[SubscriptionService, Depends(get_subscription_service)]
