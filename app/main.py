"""
Steady Steps Entitlement API - Main Application
===============================================

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

from app.config import settings
from app.db.session import close_db, get_session_factory, init_db
from app.services.cache import close_redis, init_redis
from app.services.entitlement_sessions import (
    EntitlementSessionManager,
    get_session_manager,
    set_session_manager,
)
from app.core.errors import setup_exception_handlers

logger = logging.getLogger(__name__)


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that enriches every New Relic transaction with
    custom attributes for filtering, alerting, and dashboarding.

    Raw ASGI keeps the route handler in the same task, so New Relic's
    contextvars-based span propagation reaches DB, Redis and RevenueCat
    calls.

    Captures: response status, latency, HTTP method, route pattern, and
    user ID (when authenticated).
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500

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

                # Set by the auth dependency
                state = scope.get("state") or {}
                user_id = state.get("user_id") if isinstance(state, dict) else None
                if user_id:
                    newrelic.agent.add_custom_attribute("enduser.id", str(user_id))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown of:
    - Database connection
    - Redis connection
    - Entitlement sessions (closed on shutdown)
    """
    logger.info("Starting Steady Steps Entitlement API...")

    if settings.auth_disabled:
        logger.warning("Authentication is DISABLED (DEV_AUTH_DISABLED=true)")
        logger.warning("All requests will use the development test user.")

    # Continue startup even if DB/Redis fail (for health checks)
    try:
        await init_db()
        set_session_manager(EntitlementSessionManager.for_service(get_session_factory()))
    except Exception as e:
        logger.error("Database connection failed: %s", e)

    try:
        await init_redis()
    except Exception as e:
        logger.error("Redis connection failed: %s", e)

    yield

    logger.info("Shutting down Steady Steps Entitlement API...")
    try:
        await get_session_manager().close_all()
    except ValueError:
        # Database was never configured, so no session was opened
        pass
    set_session_manager(None)
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title="Steady Steps Entitlement API",
    description="""
## Steady Steps Subscription Entitlements

Decides whether a user is entitled to paid features.

### Features
- **Verification**: store receipts validated through RevenueCat
- **Entitlement sessions**: per-user reconciliation with grace period
- **Webhooks**: RevenueCat events applied by verification time
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        401: {"description": "Not authenticated"},
        403: {"description": "Permission denied or feature locked"},
        404: {"description": "Resource not found"},
        422: {"description": "Validation error"},
        500: {"description": "Internal server error"},
        503: {"description": "Subscription could not be confirmed right now"},
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
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Steady Steps Entitlement API",
        "version": "1.0.0",
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from app.api.v1 import features, subscription, webhooks
app.include_router(subscription.router, prefix="/api/v1/subscription", tags=["Subscription"])
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
app.include_router(features.router, prefix="/api/v1/features", tags=["Features"])
