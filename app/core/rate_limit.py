"""Admission control dependencies for FastAPI routes.

This module wires the admission engine into the HTTP layer.

Design goals:
- Minimal coupling: routes depend on a dependency built by ``rate_limit()``.
- Swap-friendly: the engine lives on ``app.state`` behind
  ``AbstractRateLimiter`` and is resolved through ``get_rate_limiter``, so
  tests can override it.
- Refusals never reach the handler: the dependency raises
  ``RateLimitExceededAppError``, rendered as 429 (or the configured
  status or custom response) with ``Retry-After``.

Keys are namespaced strings: ``ip:<addr>``, ``api_key:<fingerprint>``,
``user:<id>``, optionally prefixed with a scope (``auth:ip:10.0.0.1``) so
different route groups keep independent quotas.
"""

from __future__ import annotations

import logging
import math
from typing import Annotated, Awaitable, Callable

from fastapi import Depends, Request, Response
from fastapi.responses import RedirectResponse

from app.adapters.rate_limit.base import AbstractRateLimiter, RateLimitPolicy, RateLimitResult
from app.core.config import settings
from app.core.errors import RateLimiterClosedError, RateLimitExceededAppError
from app.core.logging import hash_identifier

logger = logging.getLogger(__name__)

KeyFunc = Callable[[Request], str]
SkipFunc = Callable[[Request], bool]
RefusedHandler = Callable[[Request, RateLimitResult], Response]

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

AUTH_POLICY = RateLimitPolicy(
    window_ms=15 * MINUTE_MS,
    max_requests=5,
    message="Too many login attempts, please try again later",
)
API_POLICY = RateLimitPolicy(
    window_ms=15 * MINUTE_MS,
    max_requests=100,
    message="Too many API requests, please try again later",
)
GENERAL_POLICY = RateLimitPolicy(
    window_ms=15 * MINUTE_MS,
    max_requests=1000,
)
PASSWORD_RESET_POLICY = RateLimitPolicy(
    window_ms=HOUR_MS,
    max_requests=3,
    message="Too many password reset attempts, please try again later",
)
EMAIL_POLICY = RateLimitPolicy(
    window_ms=HOUR_MS,
    max_requests=10,
    message="Too many emails sent, please try again later",
)
UPLOAD_POLICY = RateLimitPolicy(
    window_ms=HOUR_MS,
    max_requests=50,
    message="Too many file uploads, please try again later",
)
CREATE_ACCOUNT_POLICY = RateLimitPolicy(
    window_ms=HOUR_MS,
    max_requests=3,
    message="Too many account creation attempts, please try again later",
)


def get_rate_limiter(request: Request) -> AbstractRateLimiter:
    """Return the engine owned by the running application.

    Raises:
        RateLimiterClosedError: If the app has no engine (e.g. after shutdown).
    """

    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise RateLimiterClosedError(
            code="rate_limiter_unavailable",
            message="Admission control is not available",
        )
    return limiter


def client_ip(request: Request) -> str:
    """Client address, honouring CF-Connecting-IP only when configured to."""

    if settings.app.rate_limit_trust_proxy_header:
        forwarded = request.headers.get("CF-Connecting-IP", "").strip()
        if forwarded:
            return forwarded
    return request.client.host if request.client else "unknown"


def key_by_ip(request: Request) -> str:
    return f"ip:{client_ip(request)}"


def key_by_api_key_or_ip(request: Request) -> str:
    """Key by API key fingerprint when present, else by client IP.

    The raw API key never becomes a store key or a log field.
    """

    api_key = request.headers.get("X-API-Key")
    if api_key:
        return f"api_key:{hash_identifier(api_key)}"
    return key_by_ip(request)


def _user_id(request: Request) -> str | None:
    # Set by verify_api_key; absent for unauthenticated requests
    return getattr(request.state, "user_id", None) or None


def key_by_user_or_ip(request: Request) -> str:
    user_id = _user_id(request)
    if user_id:
        return f"user:{user_id}"
    return key_by_ip(request)


def _reset_epoch_seconds(result: RateLimitResult) -> int:
    return math.ceil(result.reset_at / 1000)


def _apply_headers(response: Response, result: RateLimitResult) -> None:
    response.headers["X-RateLimit-Limit"] = str(result.limit)
    response.headers["X-RateLimit-Remaining"] = str(result.remaining)
    response.headers["X-RateLimit-Reset"] = str(_reset_epoch_seconds(result))


def rate_limit(
    policy: RateLimitPolicy,
    *,
    scope: str | None = None,
    key_func: KeyFunc = key_by_ip,
    skip: SkipFunc | None = None,
    status_code: int = 429,
    on_refused: RefusedHandler | None = None,
) -> Callable[..., Awaitable[None]]:
    """Build a FastAPI dependency enforcing ``policy``.

    Usage:
        @router.post("/login", dependencies=[Depends(rate_limit(AUTH_POLICY, scope="auth"))])

    Per-user keys (``key_by_user_or_ip``) only see the authenticated user,
    so list ``verify_api_key`` before the limiter in ``dependencies``.

    Args:
        policy: Window and quota applied to every request through this dependency.
        scope: Optional prefix so route groups keep independent quotas.
        key_func: Derives the identity from the request (default: client IP).
        skip: Predicate; when it returns True the request is not counted.
        status_code: HTTP status of the default JSON refusal.
        on_refused: Builds the refusal response instead of the JSON error
            (e.g. a redirect back to a form). Retry-After is still added.

    Returns:
        Async dependency that raises RateLimitExceededAppError when refused.
    """

    policy.validate()
    if not 400 <= status_code <= 599:
        raise ValueError("status_code must be a 4xx or 5xx HTTP status")

    async def enforce_rate_limit(
        request: Request,
        response: Response,
        limiter: Annotated[AbstractRateLimiter, Depends(get_rate_limiter)],
    ) -> None:
        if not settings.app.rate_limit_enabled:
            return
        if skip is not None and skip(request):
            return

        key = key_func(request)
        if scope:
            key = f"{scope}:{key}"

        result = limiter.check(key, policy)
        if settings.app.rate_limit_include_headers:
            _apply_headers(response, result)
        if result.allowed:
            return

        retry_after = result.retry_after_seconds or 1
        logger.warning(
            "rate_limit.rejected",
            extra={
                "key": key,
                "method": request.method,
                "path": request.url.path,
                "limit": result.limit,
                "retry_after_s": retry_after,
            },
        )
        raise RateLimitExceededAppError(
            code="rate_limit_exceeded",
            message=policy.message,
            details={
                "limit": result.limit,
                "retry_after": retry_after,
                "reset_at": _reset_epoch_seconds(result),
            },
            status_code=status_code,
            response=on_refused(request, result) if on_refused is not None else None,
        )

    return enforce_rate_limit


def redirect_on_refused(path: str) -> RefusedHandler:
    """Refusal handler sending form posts back to ``path`` with an error flag."""

    def _redirect(_request: Request, _result: RateLimitResult) -> Response:
        return RedirectResponse(f"{path}?error=rate_limited", status_code=303)

    return _redirect


def user_rate_limit(
    max_requests: int = 100,
    window_ms: int = 15 * MINUTE_MS,
) -> Callable[..., Awaitable[None]]:
    """Per-user quota for authenticated routes; anonymous requests are not counted."""

    return rate_limit(
        RateLimitPolicy(window_ms=window_ms, max_requests=max_requests),
        key_func=key_by_user_or_ip,
        skip=lambda request: _user_id(request) is None,
    )


def custom_rate_limit(
    key: str,
    max_requests: int = 100,
    window_ms: int = 15 * MINUTE_MS,
) -> Callable[..., Awaitable[None]]:
    """Quota shared by every caller under one fixed key."""

    return rate_limit(
        RateLimitPolicy(window_ms=window_ms, max_requests=max_requests),
        key_func=lambda _request: key,
    )


auth_rate_limit = rate_limit(AUTH_POLICY, scope="auth")
api_rate_limit = rate_limit(API_POLICY, scope="api", key_func=key_by_api_key_or_ip)
general_rate_limit = rate_limit(GENERAL_POLICY)
# Counts every admin request per client IP, including failed API key guesses
admin_ip_rate_limit = rate_limit(GENERAL_POLICY, scope="admin")
password_reset_rate_limit = rate_limit(PASSWORD_RESET_POLICY, scope="password_reset")
email_rate_limit = rate_limit(EMAIL_POLICY, scope="email", key_func=key_by_user_or_ip)
upload_rate_limit = rate_limit(UPLOAD_POLICY, scope="upload", key_func=key_by_user_or_ip)
create_account_rate_limit = rate_limit(CREATE_ACCOUNT_POLICY, scope="create_account")
