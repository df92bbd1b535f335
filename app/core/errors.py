"""Application-level exception types.

Domain errors shared by the admission engine and the HTTP layer. Refusing a
request is a normal engine outcome; it only becomes an exception
(``RateLimitExceededAppError``) at the HTTP seam.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    field: str
    value: Any
    limit: int
    retry_after: int
    reset_at: int
    key: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class InvalidPolicyError(ValidationAppError):
    """Raised when a rate limit policy has a non-positive window or quota."""


class AuthenticationAppError(AppError):
    """Raised when authentication/authorization fails."""


class NotFoundAppError(AppError):
    """Raised when a requested resource is not tracked."""


@dataclass
class RateLimitExceededAppError(AppError):
    """Raised by the HTTP layer when the engine refuses a request.

    Attributes:
        status_code: HTTP status of the default JSON error response.
        response: Prebuilt response to send instead of the JSON error.
    """

    status_code: int = 429
    response: Any = field(default=None, repr=False, compare=False)


class RateLimiterClosedError(AppError):
    """Raised when a destroyed limiter is asked for a decision."""
