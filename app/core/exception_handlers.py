"""Global exception handlers for consistent error responses.

Design:
- AppError subclasses → mapped HTTP status (400, 403, 404, 429, 503)
- Unexpected Exception → generic 500 (safety net)
- All responses include request_id for distributed tracing
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from app.core.config import settings
from app.core.errors import (
    AppError,
    AuthenticationAppError,
    NotFoundAppError,
    RateLimiterClosedError,
    RateLimitExceededAppError,
    ValidationAppError,
)
from app.core.logging import get_request_id

logger = logging.getLogger(__name__)

# Most specific first; AppError itself falls back to 400
_STATUS_BY_ERROR: tuple[tuple[type[AppError], int], ...] = (
    (RateLimitExceededAppError, 429),
    (AuthenticationAppError, 403),
    (NotFoundAppError, 404),
    (RateLimiterClosedError, 503),
    (ValidationAppError, 400),
)


def status_for_error(exc: AppError) -> int:
    if isinstance(exc, RateLimitExceededAppError):
        return exc.status_code
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


def _rate_limit_headers(exc: RateLimitExceededAppError) -> dict[str, str]:
    """Build Retry-After (always) and X-RateLimit-* (when enabled) headers."""
    details = exc.details or {}
    headers = {"Retry-After": str(details.get("retry_after", 1))}
    if settings.app.rate_limit_include_headers:
        if "limit" in details:
            headers["X-RateLimit-Limit"] = str(details["limit"])
        headers["X-RateLimit-Remaining"] = "0"
        if "reset_at" in details:
            headers["X-RateLimit-Reset"] = str(details["reset_at"])
    return headers


async def app_error_handler(request: Request, exc: AppError) -> Response:
    """Handle domain application errors with consistent JSON format.

    All responses include:
    - error.code: Machine-readable error code
    - error.message: Human-readable message
    - error.request_id: For distributed tracing
    - error.details: Optional structured context

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with appropriate status code and error details, or the
        prebuilt response carried by a RateLimitExceededAppError.
    """
    status_code = status_for_error(exc)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_path": request.url.path,
        },
    )

    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    if exc.details:
        error_content["details"] = exc.details

    headers = None
    if isinstance(exc, RateLimitExceededAppError):
        headers = _rate_limit_headers(exc)
        if exc.response is not None:
            for name, value in headers.items():
                exc.response.headers.setdefault(name, value)
            return exc.response

    return JSONResponse(
        status_code=status_code,
        content={"error": error_content},
        headers=headers,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors.

    Logs the failure for debugging while returning a generic message, so no
    stack trace or exception text reaches the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with the FastAPI app.

    Args:
        app: FastAPI application instance.
    """
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
