"""
Error Handling
==============

Standardized error codes, domain exceptions and exception handlers.

Two families live here:

- ``AppException`` and subclasses are HTTP-facing and carry a structured
  ``{"code", "message"}`` detail.
- Reconciliation errors (``VerificationError``, ``TransientStoreError``...)
  are raised by adapters, the store and the engine. The handlers below map
  the ones that can reach a request to the same error envelope.
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

    # Subscription (SUB_001 - SUB_010)
    SUB_NO_ACTIVE_SUB = "SUB_004"
    SUB_ALREADY_CANCELLED = "SUB_005"
    SUB_NO_PURCHASES = "SUB_006"
    SUB_LIFETIME_NOT_CANCELLABLE = "SUB_007"
    SUB_OWNED_BY_OTHER_USER = "SUB_009"

    # Platform verification (VERIFY_001 - VERIFY_010)
    VERIFY_FAILED = "VERIFY_001"

    # Transient failures
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    PLATFORM_UNAVAILABLE = "PLATFORM_UNAVAILABLE"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


# =============================================================================
# Custom Exceptions
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
        code: str = ErrorCodes.AUTH_TOKEN_EXPIRED,
        message: str = "Not authenticated",
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


class BadRequestError(AppException):
    """Request understood but rejected by a business rule."""

    def __init__(
        self,
        code: str,
        message: str,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
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
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCodes.VALIDATION_ERROR,
            message=message,
            field=field,
            **extra,
        )


class ConflictError(AppException):
    """The request conflicts with state owned by another account."""

    def __init__(
        self,
        code: str,
        message: str,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            code=code,
            message=message,
            **extra,
        )


# =============================================================================
# Reconciliation Exceptions
# =============================================================================

class ConfigurationError(RuntimeError):
    """A required setting is missing or invalid. Raised at startup only."""


class ReconciliationError(Exception):
    """Base class for errors raised while reconciling platform state."""


class VerificationError(ReconciliationError):
    """
    A platform payload failed signature, receipt or shape verification.

    ``code`` is a short machine-readable reason (``SIGNATURE_MISMATCH``,
    an App Store status code such as ``21003``...).
    """

    def __init__(self, code: str, message: Optional[str] = None):
        self.code = code
        self.message = message or f"Verification failed: {code}"
        super().__init__(self.message)


class OrphanedEventError(ReconciliationError):
    """A verified event matched no record and cannot create one."""


class StaleEventError(ReconciliationError):
    """A verified event is older than the last one applied to its record."""

    def __init__(self, message: str, record=None):
        self.record = record
        super().__init__(message)


class ConcurrencyConflict(ReconciliationError):
    """A conditional write lost the race against a concurrent update."""


class TransientError(ReconciliationError):
    """Retryable failure. Surfaced as 503 so the platform retries."""


class TransientStoreError(TransientError):
    """The entitlement store or dedup store is unavailable or contended."""


class TransientNetworkError(TransientError):
    """A platform API call timed out or could not connect."""


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


async def verification_exception_handler(
    request: Request,
    exc: VerificationError,
) -> JSONResponse:
    """Rejected platform payloads never change state and return 400."""
    logger.warning(
        "Verification failed on %s: code=%s %s",
        request.url.path,
        exc.code,
        exc.message,
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VERIFY_FAILED,
                "message": exc.message,
                "reason": exc.code,
            },
        },
    )


async def transient_exception_handler(
    request: Request,
    exc: TransientError,
) -> JSONResponse:
    """Transient failures return 503 so callers and platforms retry."""
    logger.error("Transient failure on %s: %s", request.url.path, exc)
    code = (
        ErrorCodes.PLATFORM_UNAVAILABLE
        if isinstance(exc, TransientNetworkError)
        else ErrorCodes.STORE_UNAVAILABLE
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "success": False,
            "error": {
                "code": code,
                "message": "Service temporarily unavailable",
            },
        },
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    from pydantic import ValidationError as PydanticValidationError
    from fastapi.exceptions import RequestValidationError

    if isinstance(exc, (PydanticValidationError, RequestValidationError)):
        errors = exc.errors()
        if errors:
            first_error = errors[0]
            field = ".".join(str(loc) for loc in first_error.get("loc", []))
            message = first_error.get("msg", "Validation error")
        else:
            field = None
            message = "Validation error"

        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "error": {
                    "code": ErrorCodes.VALIDATION_ERROR,
                    "message": message,
                    "field": field,
                },
            },
        )

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VALIDATION_ERROR,
                "message": str(exc),
            },
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception(
        "Unhandled error on %s: %s: %s",
        request.url.path,
        type(exc).__name__,
        exc,
    )

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
        from entitlements.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from pydantic import ValidationError as PydanticValidationError
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(VerificationError, verification_exception_handler)
    app.add_exception_handler(TransientError, transient_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
