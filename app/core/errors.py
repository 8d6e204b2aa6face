"""
Standardized Error Handling for the ERP API.

Every error leaving the service, whether raised by a handler or written
by a middleware stage, has the same JSON shape:

    {"error": "<human message>", "code": "<STABLE_CODE>"}

with an optional "details" member for field-level validation errors.
"""

import logging
from enum import Enum
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


# =============================================================================
# Stable Error Codes
# =============================================================================

class ErrorCode(str, Enum):
    """Stable codes clients may branch on."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNSUPPORTED_MEDIA_TYPE = "UNSUPPORTED_MEDIA_TYPE"
    REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"
    INVALID_QUERY_PARAMS = "INVALID_QUERY_PARAMS"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    RATE_LIMIT_PENALTY = "RATE_LIMIT_PENALTY"
    IP_BLOCKED = "IP_BLOCKED"
    IP_NOT_ALLOWED = "IP_NOT_ALLOWED"
    CSRF_VALIDATION_FAILED = "CSRF_VALIDATION_FAILED"
    INVALID_API_KEY = "INVALID_API_KEY"
    ORIGIN_NOT_ALLOWED = "ORIGIN_NOT_ALLOWED"
    # Handler-level codes
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def error_response(
    message: str,
    code: ErrorCode | str,
    status_code: int,
    headers: dict[str, str] | None = None,
    details: Any = None,
) -> JSONResponse:
    """Build the standard error body used by handlers and middleware alike."""
    content: dict[str, Any] = {
        "error": message,
        "code": code.value if isinstance(code, ErrorCode) else code,
    }
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


# =============================================================================
# Custom Exceptions
# =============================================================================

class ErpError(Exception):
    """Base exception for errors surfaced to API clients."""

    def __init__(
        self,
        message: str,
        code: ErrorCode | str = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: Any = None,
        headers: dict[str, str] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details
        self.headers = headers
        super().__init__(message)


class ValidationError(ErpError):
    """Request data failed validation."""

    def __init__(self, message: str, details: dict[str, str] | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details,
        )


class AuthenticationError(ErpError):
    """Authentication failed."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            code=ErrorCode.AUTHENTICATION_REQUIRED,
            status_code=401,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(ErpError):
    """Authenticated but not permitted."""

    def __init__(self, message: str = "Permission denied"):
        super().__init__(message=message, code=ErrorCode.PERMISSION_DENIED, status_code=403)


class NotFoundError(ErpError):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} '{identifier}' not found"
        super().__init__(message=message, code=ErrorCode.NOT_FOUND, status_code=404)


class ConflictError(ErpError):
    """Resource conflict (e.g., duplicate)."""

    def __init__(self, message: str = "Resource conflict"):
        super().__init__(message=message, code=ErrorCode.CONFLICT, status_code=409)


class RateLimitError(ErpError):
    """Rate limit exceeded inside a handler."""

    def __init__(self, retry_after: int = 60):
        super().__init__(
            message=f"Rate limit exceeded. Retry after {retry_after} seconds.",
            code=ErrorCode.RATE_LIMIT_EXCEEDED,
            status_code=429,
            headers={"Retry-After": str(retry_after)},
        )


class ServiceUnavailableError(ErpError):
    """Dependent service unavailable."""

    def __init__(self, service: str = "External service"):
        super().__init__(
            message=f"{service} is temporarily unavailable",
            code=ErrorCode.SERVICE_UNAVAILABLE,
            status_code=503,
        )


class ShutdownError(Exception):
    """Aggregate of every failure collected during a shutdown run."""

    def __init__(self, errors: list[Exception]):
        self.errors = list(errors)
        summary = "; ".join(str(e) for e in self.errors)
        super().__init__(f"{len(self.errors)} shutdown hook(s) failed: {summary}")


# =============================================================================
# Exception Handlers
# =============================================================================

_STATUS_CODES = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.AUTHENTICATION_REQUIRED,
    403: ErrorCode.PERMISSION_DENIED,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.METHOD_NOT_ALLOWED,
    409: ErrorCode.CONFLICT,
    413: ErrorCode.REQUEST_TOO_LARGE,
    415: ErrorCode.UNSUPPORTED_MEDIA_TYPE,
    429: ErrorCode.RATE_LIMIT_EXCEEDED,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


async def erp_error_handler(request: Request, exc: ErpError) -> JSONResponse:
    """Handle ErpError subclasses raised by handlers."""
    code = exc.code.value if isinstance(exc.code, ErrorCode) else exc.code
    logger.warning(
        "ErpError: %s - %s",
        code,
        exc.message,
        extra={"error_code": code, "path": request.url.path},
    )
    return error_response(exc.message, exc.code, exc.status_code, headers=exc.headers, details=exc.details)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle standard HTTP exceptions (404 from routing, 405, etc.)."""
    code = _STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = str(exc.detail) if exc.detail else f"HTTP {exc.status_code}"
    return error_response(message, code, exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle pydantic request validation errors as field-level 400s."""
    details: dict[str, str] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", []) if part not in ("body", "query", "path")]
        details[".".join(loc) or "body"] = error.get("msg", "")

    logger.info("Validation error on %s: %d issues", request.url.path, len(details))
    return error_response("Request validation failed", ErrorCode.VALIDATION_ERROR, 400, details=details)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without leaking internals."""
    logger.error(
        "Unhandled exception on %s: %s",
        request.url.path,
        exc,
        exc_info=True,
        extra={"path": request.url.path, "method": request.method},
    )
    return error_response("An unexpected error occurred", ErrorCode.INTERNAL_ERROR, 500)


def setup_exception_handlers(app: FastAPI) -> None:
    """
    Register all exception handlers with the FastAPI app.

    Call during app initialization:
        setup_exception_handlers(app)
    """
    app.add_exception_handler(ErpError, erp_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


__all__ = [
    "ErrorCode",
    "error_response",
    "ErpError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitError",
    "ServiceUnavailableError",
    "ShutdownError",
    "setup_exception_handlers",
]
