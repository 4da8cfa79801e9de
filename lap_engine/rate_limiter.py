"""
Lap Engine - Rate Limiter.

============================================================
PURPOSE
============================================================
Token bucket applied between per-worker ledger operations.

Workers are processed one at a time; the bucket decides how
long the next one waits. Disabled limiters never wait, which
keeps tests fast without touching phase code.

============================================================
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import RateLimitConfig


logger = logging.getLogger(__name__)


class TokenBucketRateLimiter:
    """
    Async token bucket.

    Tokens refill continuously at `rate_per_second` up to `burst`.
    acquire() takes one token, sleeping until one is available.
    """

    def __init__(
        self,
        rate_per_second: float,
        burst: int = 1,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        if enabled and rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")

        self._rate = rate_per_second
        self._capacity = float(burst)
        self._enabled = enabled
        self._clock = clock
        self._sleep = sleep or asyncio.sleep

        self._tokens = float(burst)
        self._last_refill = clock()
        self._lock = asyncio.Lock()

        self._acquired = 0
        self._total_wait_seconds = 0.0

    @classmethod
    def from_config(cls, config: RateLimitConfig) -> "TokenBucketRateLimiter":
        return cls(
            rate_per_second=config.operations_per_second,
            burst=config.burst,
            enabled=config.enabled,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._last_refill = now

    def try_acquire(self) -> bool:
        """Take a token without waiting. Returns False when empty."""
        if not self._enabled:
            self._acquired += 1
            return True
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            self._acquired += 1
            return True
        return False

    async def acquire(self) -> float:
        """
        Take one token, waiting as needed.

        Returns:
            Seconds spent waiting
        """
        if not self._enabled:
            self._acquired += 1
            return 0.0

        waited = 0.0
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    self._acquired += 1
                    self._total_wait_seconds += waited
                    return waited

                wait = (1 - self._tokens) / self._rate
                await self._sleep(wait)
                waited += wait

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self._enabled,
            "rate_per_second": self._rate,
            "burst": int(self._capacity),
            "acquired": self._acquired,
            "total_wait_seconds": round(self._total_wait_seconds, 3),
        }
