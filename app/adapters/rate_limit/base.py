"""Rate limiter interfaces and value types.

The HTTP layer depends on ``AbstractRateLimiter`` only, so the in-memory
engine can later be replaced by a shared store without touching the routes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from app.core.errors import InvalidPolicyError

DEFAULT_MESSAGE = "Too many requests, please try again later"


def _require_positive_int(field: str, value: object, minimum: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise InvalidPolicyError(
            code="invalid_policy",
            message=f"{field} must be an integer >= {minimum}",
            details={"field": field, "value": value},
        )


@dataclass(frozen=True)
class RateLimitPolicy:
    """Admission policy supplied by the caller on every check.

    Attributes:
        window_ms: Length of the sliding window in milliseconds.
        max_requests: Requests admitted per window.
        message: Message returned to clients when refused.
        skip_successful_requests: Hint for the HTTP layer; not enforced here.
        skip_failed_requests: Hint for the HTTP layer; not enforced here.
    """

    window_ms: int
    max_requests: int
    message: str = DEFAULT_MESSAGE
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise InvalidPolicyError unless window_ms > 0 and max_requests >= 1."""
        _require_positive_int("window_ms", self.window_ms, 1)
        _require_positive_int("max_requests", self.max_requests, 1)


@dataclass(frozen=True)
class RateLimitResult:
    """Result of an admission check.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        remaining: Remaining requests in the current window (0 when blocked).
        reset_at: Epoch milliseconds when the key's window fully elapses.
        retry_after_seconds: Suggested wait time in seconds when blocked.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int | None = None


@dataclass(frozen=True)
class AdmissionRecord:
    """Read-only snapshot of the state tracked for one key.

    Attributes:
        window_requests: Admitted request timestamps (epoch ms), oldest first.
            Not pruned when snapshotted, so it may contain expired entries.
        window_reset_at: Epoch ms when the newest admitted request ages out.
        total_count: Requests admitted since the record was created. Never
            decreases when the window log is pruned.
    """

    window_requests: tuple[int, ...]
    window_reset_at: int
    total_count: int

    @property
    def in_window(self) -> int:
        return len(self.window_requests)


class AbstractRateLimiter(ABC):
    """Interface for admission engines."""

    @abstractmethod
    def check(self, key: str, policy: RateLimitPolicy) -> RateLimitResult:
        """Decide whether one more request for ``key`` fits ``policy``.

        Args:
            key: Identity the quota is tracked for (e.g. ``ip:127.0.0.1``).
            policy: Window length and quota.

        Returns:
            RateLimitResult describing whether it was allowed.
        """
        raise NotImplementedError

    @abstractmethod
    def reset(self, key: str) -> None:
        """Forget everything tracked for ``key``. No error when absent."""
        raise NotImplementedError

    @abstractmethod
    def reset_all(self) -> None:
        """Forget every tracked key."""
        raise NotImplementedError

    @abstractmethod
    def get_status(self, key: str) -> AdmissionRecord | None:
        """Return a snapshot for ``key`` without pruning, or None."""
        raise NotImplementedError

    @abstractmethod
    def size(self) -> int:
        """Return the number of tracked keys."""
        raise NotImplementedError

    @abstractmethod
    def sweep(self) -> int:
        """Evict stale keys and return how many were removed."""
        raise NotImplementedError

    @abstractmethod
    def destroy(self) -> None:
        """Release background resources and drop all state."""
        raise NotImplementedError
