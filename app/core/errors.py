"""
Error Handling
==============

Standardized error codes, HTTP exceptions and exception handlers, plus the
entitlement error taxonomy raised by the verifier and reconciler.

Entitlement errors are plain exceptions (not HTTP exceptions) so the core
services stay independent of FastAPI. API endpoints translate them into
``AppException`` subclasses where a response is needed.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Authentication (AUTH_001 - AUTH_010)
    AUTH_INVALID_CREDENTIALS = "AUTH_001"
    AUTH_TOKEN_EXPIRED = "AUTH_002"
    AUTH_INVALID_TOKEN = "AUTH_005"

    # Subscription (SUB_001 - SUB_010)
    SUB_MALFORMED_RECEIPT = "SUB_001"
    SUB_RECEIPT_REJECTED = "SUB_002"
    SUB_VERIFICATION_PENDING = "SUB_003"
    SUB_NO_RECORD = "SUB_004"
    SUB_PERSISTENCE_FAILED = "SUB_005"
    SUB_USER_MISMATCH = "SUB_006"
    SUB_NO_SESSION = "SUB_007"
    SUB_UNKNOWN_SUBSCRIBER = "SUB_008"
    SUB_NOT_VERIFIED = "SUB_009"

    # Feature (FEATURE_001 - FEATURE_010)
    FEATURE_LOCKED = "FEATURE_001"

    # Webhooks
    WEBHOOK_UNAUTHORIZED = "WEBHOOK_001"
    WEBHOOK_INVALID_PAYLOAD = "WEBHOOK_002"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


# =============================================================================
# Entitlement Errors
# =============================================================================

class UserVisible:
    """How an entitlement failure is surfaced to the user."""

    PENDING = "pending"  # "can't confirm subscription right now"
    NOT_SUBSCRIBED = "not_subscribed"


class EntitlementError(Exception):
    """Base class for entitlement subsystem failures."""

    code: str = ErrorCodes.INTERNAL_ERROR
    user_visible: str = UserVisible.PENDING

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class VerificationError(EntitlementError):
    """A receipt could not be turned into a trustworthy record."""


class MalformedReceipt(VerificationError):
    """Empty or malformed receipt. Terminal, no network call is made."""

    code = ErrorCodes.SUB_MALFORMED_RECEIPT
    user_visible = UserVisible.NOT_SUBSCRIBED


class TransientVerificationFailure(VerificationError):
    """Network, timeout or upstream 5xx. Retried; entitlement unchanged."""

    code = ErrorCodes.SUB_VERIFICATION_PENDING
    user_visible = UserVisible.PENDING

    def __init__(self, message: str = "", attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class ReceiptRejected(VerificationError):
    """Definitive denial (invalid, revoked or refunded). Never retried."""

    code = ErrorCodes.SUB_RECEIPT_REJECTED
    user_visible = UserVisible.NOT_SUBSCRIBED

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or "receipt rejected")
        self.reason = reason


class PersistenceFailure(EntitlementError):
    """Profile Store write failed; the in-memory record stays authoritative."""

    code = ErrorCodes.SUB_PERSISTENCE_FAILED
    user_visible = UserVisible.PENDING


# =============================================================================
# HTTP Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        **extra,
    ):
        self.code = code
        self.field = field
        self.extra = extra

        detail = {
            "code": code,
            "message": message,
        }

        if field:
            detail["field"] = field

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail)


class AuthenticationError(AppException):
    """Authentication-related errors."""

    def __init__(
        self,
        code: str = ErrorCodes.AUTH_INVALID_TOKEN,
        message: str = "Authentication failed",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            **extra,
        )


class NotFoundError(AppException):
    """Resource not found errors."""

    def __init__(
        self,
        code: str = ErrorCodes.NOT_FOUND,
        message: str = "Resource not found",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=code,
            message=message,
            **extra,
        )


class ForbiddenError(AppException):
    """Permission/feature access errors."""

    def __init__(
        self,
        code: str = ErrorCodes.FEATURE_LOCKED,
        message: str = "Access denied",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code=code,
            message=message,
            **extra,
        )


class ValidationError(AppException):
    """Validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: str = ErrorCodes.VALIDATION_ERROR,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=message,
            field=field,
            **extra,
        )


class ServiceUnavailableError(AppException):
    """External service unavailable errors."""

    def __init__(
        self,
        code: str,
        message: str = "Service temporarily unavailable",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=code,
            message=message,
            **extra,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handler for AppException."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
        },
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handler for standard HTTPException."""
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
        },
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for request validation errors."""
    errors = exc.errors() if hasattr(exc, "errors") else []
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        message = first_error.get("msg", "Validation error")
    else:
        field = None
        message = str(exc) or "Validation error"

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VALIDATION_ERROR,
                "message": message,
                "field": field,
            },
        },
    )


async def entitlement_exception_handler(
    request: Request,
    exc: EntitlementError,
) -> JSONResponse:
    """Handler for entitlement errors that escape an endpoint."""
    if isinstance(exc, (TransientVerificationFailure, PersistenceFailure)):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_400_BAD_REQUEST

    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {
                "code": exc.code,
                "message": exc.message,
                "user_visible": exc.user_visible,
            },
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled error: %s: %s", type(exc).__name__, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.INTERNAL_ERROR,
                "message": "An unexpected error occurred",
            },
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from app.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(EntitlementError, entitlement_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
