"""In-memory sliding-window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: a short store lock guards the key map and every key carries its
  own lock, so checks for different keys never wait on each other.
- A background reaper thread evicts keys whose window has fully elapsed.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from app.adapters.rate_limit.base import (
    AbstractRateLimiter,
    AdmissionRecord,
    RateLimitPolicy,
    RateLimitResult,
)
from app.core.errors import RateLimiterClosedError, ValidationAppError

logger = logging.getLogger(__name__)

DEFAULT_REAPER_INTERVAL_SECONDS = 300.0
DEFAULT_GRACE_PERIOD_MS = 60_000


def epoch_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(eq=False)
class _KeyEntry:
    window_reset_at: int
    requests: deque[int] = field(default_factory=deque)
    total_count: int = 0
    evicted: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def prune(self, now: int, window_ms: int) -> None:
        requests = self.requests
        while requests and now - requests[0] >= window_ms:
            requests.popleft()

    def snapshot(self) -> AdmissionRecord:
        return AdmissionRecord(
            window_requests=tuple(self.requests),
            window_reset_at=self.window_reset_at,
            total_count=self.total_count,
        )


class InMemorySlidingWindowRateLimiter(AbstractRateLimiter):
    """Admission engine keeping an exact log of admitted requests per key.

    Each key keeps the timestamps of its admitted requests. A request is
    admitted when fewer than ``policy.max_requests`` of them are younger than
    ``policy.window_ms``, so bursts are counted against the true elapsed
    time rather than calendar buckets.

    ``window_reset_at`` is the instant the newest admitted request ages out.
    Past that point the key holds no live quota and the reaper may drop it
    once ``grace_period_ms`` has also elapsed.

    Important:
        This limiter is per-process only. If the API runs with multiple workers
        (e.g., multiple Uvicorn/Gunicorn workers), each worker will enforce its
        own independent limits.
    """

    def __init__(
        self,
        *,
        reaper_interval_seconds: float | None = DEFAULT_REAPER_INTERVAL_SECONDS,
        grace_period_ms: int = DEFAULT_GRACE_PERIOD_MS,
        clock: Callable[[], int] = epoch_ms,
    ) -> None:
        """Initialize the limiter and start the reaper.

        Args:
            reaper_interval_seconds: Seconds between background sweeps. None
                disables the reaper thread; ``sweep()`` can still be called.
            grace_period_ms: Extra time a fully elapsed key is kept.
            clock: Time source returning epoch milliseconds.

        Raises:
            ValueError: If the interval or grace period are invalid.
        """
        if reaper_interval_seconds is not None and reaper_interval_seconds <= 0:
            raise ValueError("reaper_interval_seconds must be > 0")
        if grace_period_ms < 0:
            raise ValueError("grace_period_ms must be >= 0")

        self._grace_period_ms = grace_period_ms
        self._reaper_interval = reaper_interval_seconds
        self._clock = clock
        self._store: dict[str, _KeyEntry] = {}
        self._store_lock = threading.Lock()
        self._closed = False

        self._stop_event = threading.Event()
        self._reaper: threading.Thread | None = None
        if reaper_interval_seconds is not None:
            self._start_reaper()

    def __enter__(self) -> InMemorySlidingWindowRateLimiter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.destroy()

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: object) -> bool:
        with self._store_lock:
            return key in self._store

    @property
    def reaper_running(self) -> bool:
        return bool(self._reaper and self._reaper.is_alive())

    # -- admission ---------------------------------------------------------

    def _acquire_entry(self, key: str, now: int, window_ms: int) -> _KeyEntry:
        """Return the live entry for key with its lock held."""
        while True:
            with self._store_lock:
                if self._closed:
                    raise RateLimiterClosedError(
                        code="rate_limiter_closed",
                        message="Rate limiter has been destroyed",
                    )
                entry = self._store.get(key)
                if entry is None:
                    entry = _KeyEntry(window_reset_at=now + window_ms)
                    self._store[key] = entry
            entry.lock.acquire()
            if not entry.evicted:
                return entry
            # Reset or reaped between lookup and lock; start over with a fresh entry
            entry.lock.release()

    def check(self, key: str, policy: RateLimitPolicy) -> RateLimitResult:
        """Admit or refuse one request for ``key`` under ``policy``.

        Refusal is a normal outcome reported in the result, not an error.

        Args:
            key: Non-empty identity the quota is tracked for.
            policy: Window length and quota.

        Returns:
            RateLimitResult with the decision and quota metadata.

        Raises:
            ValidationAppError: If key is empty.
            InvalidPolicyError: If the policy window or quota is not positive.
            RateLimiterClosedError: If the limiter was destroyed.
        """
        if not isinstance(key, str) or not key:
            raise ValidationAppError(
                code="invalid_key",
                message="key must be a non-empty string",
            )
        policy.validate()

        now = self._clock()
        window_ms = policy.window_ms
        entry = self._acquire_entry(key, now, window_ms)
        try:
            entry.prune(now, window_ms)
            in_window = len(entry.requests)

            if in_window >= policy.max_requests:
                oldest = entry.requests[0]
                # Bounded above as well in case the wall clock stepped backwards
                retry_after = min(
                    math.ceil(window_ms / 1000),
                    max(1, math.ceil((oldest + window_ms - now) / 1000)),
                )
                reset_at = entry.window_reset_at
            else:
                entry.requests.append(now)
                entry.total_count += 1
                entry.window_reset_at = now + window_ms
                return RateLimitResult(
                    allowed=True,
                    limit=policy.max_requests,
                    remaining=policy.max_requests - len(entry.requests),
                    reset_at=entry.window_reset_at,
                )
        finally:
            entry.lock.release()

        logger.warning(
            "rate_limit.exceeded",
            extra={
                "key": key,
                "requests": in_window,
                "max_requests": policy.max_requests,
                "retry_after_s": retry_after,
            },
        )
        return RateLimitResult(
            allowed=False,
            limit=policy.max_requests,
            remaining=0,
            reset_at=reset_at,
            retry_after_seconds=retry_after,
        )

    # -- key store ---------------------------------------------------------

    def reset(self, key: str) -> None:
        with self._store_lock:
            entry = self._store.pop(key, None)
        if entry is not None:
            with entry.lock:
                entry.evicted = True

    def reset_all(self) -> None:
        with self._store_lock:
            entries = list(self._store.values())
            self._store.clear()
        for entry in entries:
            with entry.lock:
                entry.evicted = True

    def get_status(self, key: str) -> AdmissionRecord | None:
        with self._store_lock:
            entry = self._store.get(key)
        if entry is None:
            return None
        with entry.lock:
            if entry.evicted:
                return None
            return entry.snapshot()

    def size(self) -> int:
        with self._store_lock:
            return len(self._store)

    # -- reaper ------------------------------------------------------------

    def sweep(self) -> int:
        """Evict keys idle past their window plus the grace period.

        Returns:
            Number of keys evicted.
        """
        now = self._clock()
        with self._store_lock:
            candidates = list(self._store.items())

        evicted = 0
        for key, entry in candidates:
            with entry.lock:
                if entry.evicted or now <= entry.window_reset_at + self._grace_period_ms:
                    continue
                entry.evicted = True
                with self._store_lock:
                    if self._store.get(key) is entry:
                        del self._store[key]
                evicted += 1

        if evicted:
            logger.warning(
                "rate_limit.reaper_cleanup",
                extra={"evicted": evicted, "remaining_keys": self.size()},
            )
        return evicted

    def _start_reaper(self) -> None:
        self._stop_event.clear()
        thread = threading.Thread(
            target=self._run_reaper,
            name="rate-limit-reaper",
            daemon=True,
        )
        thread.start()
        self._reaper = thread
        logger.info(
            "rate_limit.reaper_started",
            extra={
                "interval_s": self._reaper_interval,
                "grace_period_ms": self._grace_period_ms,
            },
        )

    def _run_reaper(self) -> None:
        interval = self._reaper_interval or DEFAULT_REAPER_INTERVAL_SECONDS
        while not self._stop_event.wait(interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("rate_limit.reaper_failed")

    def destroy(self, *, join_timeout_seconds: float = 3.0) -> None:
        """Stop the reaper and drop all tracked keys.

        Safe to call more than once. Any later ``check`` raises
        RateLimiterClosedError.
        """
        self._stop_event.set()
        thread = self._reaper
        self._reaper = None
        if thread is not None:
            thread.join(timeout=join_timeout_seconds)
            logger.info("rate_limit.reaper_stopped")

        with self._store_lock:
            self._closed = True
        self.reset_all()
