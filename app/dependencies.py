"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.security import user_id_from_token
from app.db.session import get_db
from app.services.entitlement_reconciler import EntitlementReconciler
from app.services.entitlement_sessions import EntitlementSessionManager, get_session_manager
from app.services.revenuecat import RevenueCatService

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Security scheme for JWT authentication
security = HTTPBearer(auto_error=False)

# Development test user ID
DEV_USER_ID = "00000000-0000-0000-0000-000000000001"


# =============================================================================
# User resolution
# =============================================================================

async def get_current_user_id(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str:
    """
    Get the authenticated caller's user id.

    Raises 401 if not authenticated or token is invalid.
    In development with DEV_AUTH_DISABLED=True, returns the dev user id.
    """
    if settings.auth_disabled:
        request.state.user_id = DEV_USER_ID
        return DEV_USER_ID

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": "AUTH_002",
                "message": "Not authenticated",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = user_id_from_token(credentials.credentials)

    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": "AUTH_002",
                "message": "Invalid or expired token",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )

    request.state.user_id = user_id
    return user_id


# Type alias for authenticated user dependency
CurrentUserId = Annotated[str, Depends(get_current_user_id)]


# =============================================================================
# Entitlement sessions
# =============================================================================

SessionManager = Annotated[EntitlementSessionManager, Depends(get_session_manager)]


async def get_entitlement_session(
    user_id: CurrentUserId,
    manager: SessionManager,
) -> EntitlementReconciler:
    """
    The caller's live entitlement session, started on first use.

    Login is idempotent, so endpoints may rely on this without an explicit
    ``POST /subscription/session``.
    """
    session = manager.get(user_id)
    if session is None:
        session = await manager.login(user_id)
    return session


EntitlementSession = Annotated[EntitlementReconciler, Depends(get_entitlement_session)]


# =============================================================================
# External services
# =============================================================================

def get_revenuecat_service() -> RevenueCatService:
    """RevenueCat client for request handlers."""
    return RevenueCatService()


RevenueCat = Annotated[RevenueCatService, Depends(get_revenuecat_service)]
