"""Pacing rate limiter for external API calls."""

from __future__ import annotations

import asyncio
import time

from oracle.core.logging import get_logger


logger = get_logger("core.rate_limiter")


class RateLimiter:
    """
    Token bucket rate limiter for API calls.

    With ``burst_size=1`` it degenerates into a fixed minimum delay between
    calls, which is how market data lookups are paced when the provider has
    no batch endpoint.
    """

    def __init__(
        self,
        name: str,
        calls_per_second: float = 1.0,
        burst_size: int = 1,
    ):
        """
        Initialize rate limiter.

        Args:
            name: Identifier for logging
            calls_per_second: Sustained rate limit
            burst_size: Maximum burst of calls allowed
        """
        self.name = name
        self.calls_per_second = calls_per_second
        self.burst_size = burst_size
        self.tokens = float(burst_size)
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    @classmethod
    def from_min_interval(cls, name: str, min_interval_seconds: float) -> "RateLimiter | None":
        """Build a serializing limiter, or None when no pacing is wanted."""
        if min_interval_seconds <= 0:
            return None
        return cls(name, calls_per_second=1.0 / min_interval_seconds, burst_size=1)

    def _refill(self) -> None:
        """Refill tokens based on time elapsed."""
        now = time.monotonic()
        elapsed = now - self.last_update
        self.tokens = min(
            self.burst_size,
            self.tokens + elapsed * self.calls_per_second
        )
        self.last_update = now

    async def acquire(self, timeout: float = 30.0) -> bool:
        """
        Acquire a token asynchronously, waiting if necessary.

        Args:
            timeout: Maximum time to wait for a token

        Returns:
            True if token acquired, False if timeout
        """
        start = time.monotonic()

        while True:
            async with self._lock:
                self._refill()

                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return True

                wait_time = (1.0 - self.tokens) / self.calls_per_second

            if time.monotonic() - start + wait_time > timeout:
                logger.warning(f"Rate limiter {self.name} timeout after {timeout}s")
                return False

            logger.debug(f"Rate limiter {self.name} waiting {wait_time:.2f}s")
            await asyncio.sleep(min(wait_time, 0.5))
