"""Token bucket limiter shared by the worker slots of one pool."""
from __future__ import annotations

import asyncio
import time
from typing import Optional


class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Allows ``max_ops`` operations per ``duration`` seconds: tokens refill
    continuously at max_ops / duration per second up to a burst of max_ops.
    """

    def __init__(self, max_ops: int = 10, duration: float = 1.0):
        if max_ops < 1 or duration <= 0:
            raise ValueError("rate limit needs max_ops >= 1 and duration > 0")
        self.max_ops = max_ops
        self.duration = duration
        self.rate = max_ops / duration
        self.burst = max_ops
        self._tokens: float = float(max_ops)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: Optional[float] = None) -> bool:
        """Take one token, waiting up to ``timeout`` seconds (forever if None)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
                wait = (1.0 - self._tokens) / self.rate
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            await asyncio.sleep(wait)

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._last_refill = now
