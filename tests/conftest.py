"""Pytest configuration and fixtures shared across all test modules.

Environment defaults are set before anything imports ``app.core.config`` so
the global settings object is built from them.
"""

import os

import pytest

os.environ["APP_ENV"] = "testing"
os.environ.setdefault("APP_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_API_KEYS", "test-api-key-123,test-api-key-456")
os.environ.setdefault("APP_RATE_LIMIT_ENABLED", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from app.adapters.rate_limit.in_memory import InMemorySlidingWindowRateLimiter  # noqa: E402


class FakeClock:
    """Deterministic epoch-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock):
    """Limiter without a reaper thread; sweeps are triggered explicitly."""
    instance = InMemorySlidingWindowRateLimiter(
        reaper_interval_seconds=None,
        grace_period_ms=60_000,
        clock=clock,
    )
    yield instance
    instance.destroy()
