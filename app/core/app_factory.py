"""Application factory for the FastAPI app.

Centralizes app construction (logging, admission engine, middleware,
handlers, routers) so tests can build isolated apps with their own engine.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.adapters.rate_limit.base import AbstractRateLimiter
from app.adapters.rate_limit.in_memory import InMemorySlidingWindowRateLimiter
from app.api.routes import health_router, rate_limits_router
from app.core.config import settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware

logger = logging.getLogger(__name__)


def build_rate_limiter() -> AbstractRateLimiter:
    """Create the admission engine from settings."""

    return InMemorySlidingWindowRateLimiter(
        reaper_interval_seconds=settings.app.rate_limit_reaper_interval_seconds,
        grace_period_ms=settings.app.rate_limit_grace_period_seconds * 1000,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    if getattr(app.state, "rate_limiter", None) is None:
        app.state.rate_limiter = build_rate_limiter()
    try:
        yield
    finally:
        limiter = app.state.rate_limiter
        app.state.rate_limiter = None
        if limiter is not None:
            limiter.destroy()
        logger.info("app.shutdown", extra={"rate_limiter_destroyed": limiter is not None})


def create_app(rate_limiter: AbstractRateLimiter | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        rate_limiter: Engine to use. When omitted it is built from settings
            at startup, so importing the app starts no reaper thread. The
            app owns the engine and destroys it on shutdown.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Admission Gate",
        description=(
            "In-memory sliding-window admission control. Guarded routes answer "
            "429 with Retry-After once a key exhausts its quota; administrative "
            "endpoints expose per-key status, reset and sweep."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.rate_limiter = rate_limiter

    app.middleware("http")(request_id_middleware)
    setup_exception_handlers(app)

    app.include_router(rate_limits_router, prefix="/v1")
    app.include_router(health_router)

    return app
