"""In-process rate limiting.

- ``RateLimiter``: per-key sliding window used by the send path
  (100 sends per project per 60 s by default).
- ``TokenBucket``: throughput cap for a worker process, independent of how
  many jobs it runs concurrently.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field

# Tolerance for float drift when comparing refilled tokens
TOKEN_EPSILON = 1e-9


@dataclass(frozen=True)
class RateLimitInfo:
    """Outcome of one rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_after: float


@dataclass
class RateLimiter:
    """Thread-safe in-memory rate limiter using sliding window."""

    max_requests: int = 100
    window_seconds: float = 60.0
    clock: Callable[[], float] = time.monotonic
    _requests: dict[str, list[float]] = field(default_factory=lambda: defaultdict(list))
    _lock: threading.Lock = field(default_factory=threading.Lock)

    @staticmethod
    def project_key(project_id: str) -> str:
        return f"project:{project_id}"

    def _clean_old_requests(self, key: str, now: float) -> None:
        """Remove requests outside the time window."""
        self._requests[key] = [
            t for t in self._requests[key] if now - t < self.window_seconds
        ]
        if not self._requests[key]:
            del self._requests[key]

    def check(self, key: str) -> RateLimitInfo:
        """Count a request against ``key`` if the window has room."""
        with self._lock:
            now = self.clock()
            self._clean_old_requests(key, now)

            recent = self._requests.get(key, [])
            if len(recent) >= self.max_requests:
                return RateLimitInfo(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    reset_after=max(0.0, recent[0] + self.window_seconds - now),
                )

            self._requests[key].append(now)
            window = self._requests[key]
            return RateLimitInfo(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - len(window),
                reset_after=window[0] + self.window_seconds - now,
            )

    def is_allowed(self, key: str) -> bool:
        return self.check(key).allowed


class TokenBucket:
    """Token bucket refilled at ``rate`` tokens per second up to ``capacity``.

    Example:
        bucket = TokenBucket(rate=100, capacity=100)
        await bucket.acquire()  # waits when the bucket is empty
    """

    def __init__(
        self,
        rate: float,
        capacity: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.capacity = capacity if capacity is not None else rate
        self._clock = clock
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    def try_acquire(self, tokens: float = 1.0) -> float:
        """Take tokens if available.

        Returns:
            0.0 on success, otherwise the seconds to wait before retrying.
        """
        with self._lock:
            self._refill()
            if self._tokens + TOKEN_EPSILON >= tokens:
                self._tokens = max(0.0, self._tokens - tokens)
                return 0.0
            return (tokens - self._tokens) / self.rate

    async def acquire(self, tokens: float = 1.0) -> None:
        """Wait until ``tokens`` are available and take them."""
        while True:
            wait = self.try_acquire(tokens)
            if wait == 0.0:
                return
            await asyncio.sleep(wait)
