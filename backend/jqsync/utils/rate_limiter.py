import asyncio
import time
from typing import Optional


class RateLimiter:
    """
    Token bucket limiter shared by all requests of one client.

    Enforces both a per-minute budget and a minimum spacing between requests.
    """

    def __init__(self, requests_per_minute: int = 60, min_interval: float = 1.0):
        self.capacity = max(1, requests_per_minute)
        self.refill_rate = self.capacity / 60.0  # tokens per second
        self.min_interval = max(0.0, min_interval)
        self.tokens = float(self.capacity)
        self.last_refill = time.monotonic()
        self.last_request: Optional[float] = None
        self._lock = asyncio.Lock()

    def _refill(self, now: float):
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self):
        """Wait until a request may be sent"""
        async with self._lock:
            while True:
                now = time.monotonic()
                self._refill(now)

                wait = 0.0
                if self.last_request is not None:
                    wait = max(wait, self.min_interval - (now - self.last_request))
                if self.tokens < 1:
                    wait = max(wait, (1 - self.tokens) / self.refill_rate)

                if wait <= 0:
                    self.tokens -= 1
                    self.last_request = now
                    return

                await asyncio.sleep(wait)
