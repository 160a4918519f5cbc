"""Client-side throttling so bulk runs stay under each platform's rate limits."""

import asyncio
import threading
import time
from typing import Callable


class RateLimiter:
    """Token bucket limiter shared by the sync and async transport paths."""

    def __init__(
        self,
        requests_per_second: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize rate limiter.

        Args:
            requests_per_second: Sustained request rate; also the burst size
            clock: Monotonic time source
        """
        self.requests_per_second = requests_per_second
        self.capacity = max(requests_per_second, 1.0)
        self._clock = clock
        self._tokens = self.capacity
        self._last_update = clock()
        self._lock = threading.Lock()

    def _reserve(self) -> float:
        """Take one token, returning how long the caller must wait for it."""
        with self._lock:
            now = self._clock()
            elapsed = now - self._last_update
            self._last_update = now
            self._tokens = min(
                self.capacity, self._tokens + elapsed * self.requests_per_second
            )
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.requests_per_second

    def acquire_sync(self) -> None:
        """Block until a request may be sent."""
        wait = self._reserve()
        if wait > 0:
            time.sleep(wait)

    async def acquire(self) -> None:
        """Wait (without blocking the loop) until a request may be sent."""
        wait = self._reserve()
        if wait > 0:
            await asyncio.sleep(wait)
