"""
Entitlements API - Main Application
===================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from entitlements.config import settings
from entitlements.core.errors import setup_exception_handlers
from entitlements.db.session import close_db, init_db
from entitlements.dependencies import get_subscription_service
from entitlements.services.cache import close_redis, init_redis
from entitlements.services.scheduled_jobs import ExpirySweepWorker, ScheduledJobService

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that enriches every New Relic transaction with
    custom attributes for filtering and alerting.

    Raw ASGI keeps the handler in the same task, so New Relic's
    contextvars-based spans for Redis, the database and platform calls
    stay attached to the transaction.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500  # until the response starts

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            txn = newrelic.agent.current_transaction()
            if txn:
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round(duration_ms, 2)),
                    ("environment", settings.ENVIRONMENT),
                ])


_sweep_worker: ExpirySweepWorker | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events for:
    - Database connection
    - Redis connection (cache and processed-event keys)
    - Expiry sweep background worker
    """
    global _sweep_worker

    logger.info("Starting Entitlements API (%s)", settings.ENVIRONMENT)

    # Continue startup even if a dependency is down, so health checks answer
    try:
        await init_db()
    except Exception as e:
        logger.warning("Database connection failed: %s", e)

    try:
        await init_redis()
    except Exception as e:
        logger.warning("Redis connection failed: %s", e)

    if settings.EXPIRY_SWEEP_ENABLED:
        service = get_subscription_service()
        _sweep_worker = ExpirySweepWorker(
            ScheduledJobService(service.store, service.engine)
        )
        await _sweep_worker.start()

    yield

    logger.info("Shutting down Entitlements API")
    if _sweep_worker is not None:
        await _sweep_worker.stop()
        _sweep_worker = None
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title="Entitlements API",
    description="""
## Subscription Entitlements Service

Keeps each user's premium entitlement consistent across Stripe, the Apple
App Store and manual grants.

### Features
- **Status**: current plan, expiry and cancel flag per user
- **Stripe**: Checkout sessions, redirect confirmation, signed webhooks
- **Apple**: receipt validation and App Store Server Notifications v2
- **Expiry sweep**: periodic safety net for missed expiry events
    """,
    version=API_VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        400: {"description": "Validation or verification error"},
        401: {"description": "Not authenticated"},
        409: {"description": "Purchase owned by another account"},
        500: {"description": "Internal server error"},
        503: {"description": "Store or platform temporarily unavailable"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# New Relic transaction enrichment (adds custom attrs to every transaction)
app.add_middleware(NewRelicTransactionMiddleware)

# Setup exception handlers
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns the current status of the API.
    """
    return {
        "status": "healthy",
        "version": API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Entitlements API",
        "version": API_VERSION,
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from entitlements.api import subscription, webhooks
app.include_router(subscription.router, prefix="/api", tags=["Subscription"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
