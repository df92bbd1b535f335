"""Rate limiting adapters.

A small abstraction layer so the service can run with the in-memory
sliding-window engine and later move to a shared store without changing the
API layer.
"""

from app.adapters.rate_limit.base import (
    AbstractRateLimiter,
    AdmissionRecord,
    RateLimitPolicy,
    RateLimitResult,
)
from app.adapters.rate_limit.in_memory import InMemorySlidingWindowRateLimiter

__all__ = [
    "AbstractRateLimiter",
    "AdmissionRecord",
    "InMemorySlidingWindowRateLimiter",
    "RateLimitPolicy",
    "RateLimitResult",
]
