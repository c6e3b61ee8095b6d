from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from oscwatch.utils.time import utc_now_s

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]

# float slack so a refill that lands a hair under one token still counts
_EPS = 1e-6


class TokenBucket:
    """
    Token bucket with an injectable clock and sleep function.

    rate_per_sec tokens are added per second up to `burst`. acquire() takes one
    token, sleeping (via the injected sleeper) until one is available.
    penalize(seconds) blocks every acquire() until now + seconds, used after an
    explicit rate-limit answer from upstream.

    Tests pass a fake clock whose sleeper advances it, so no real time passes.
    """

    def __init__(
        self,
        rate_per_sec: float,
        burst: int = 1,
        *,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ):
        if rate_per_sec <= 0:
            raise ValueError("rate_per_sec must be > 0")
        self.rate = float(rate_per_sec)
        self.capacity = max(1, int(burst))
        self._clock = clock or utc_now_s
        self._sleep = sleep or asyncio.sleep
        self.tokens = float(self.capacity)
        self.updated = self._clock()
        self.blocked_until = 0.0
        self._lock = asyncio.Lock()

    @classmethod
    def from_min_interval(cls, min_interval_s: float, **kw) -> "TokenBucket":
        """One call per min_interval_s, no bursting."""
        return cls(rate_per_sec=1.0 / max(min_interval_s, 1e-6), burst=1, **kw)

    def _refill(self, now: float) -> None:
        self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
        self.updated = now

    def wait_time(self) -> float:
        """Seconds acquire() would wait right now (0 if a token is ready)."""
        now = self._clock()
        tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
        wait = max(0.0, self.blocked_until - now)
        if tokens < 1.0 - _EPS:
            wait = max(wait, (1.0 - tokens) / self.rate)
        return wait

    async def acquire(self) -> float:
        """Take one token. Returns the number of seconds spent waiting."""
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._refill(now)
                if now < self.blocked_until:
                    delay = self.blocked_until - now
                elif self.tokens < 1.0 - _EPS:
                    delay = (1.0 - self.tokens) / self.rate
                else:
                    self.tokens = max(0.0, self.tokens - 1.0)
                    return waited
                await self._sleep(delay)
                waited += delay

    def penalize(self, seconds: float) -> None:
        now = self._clock()
        self.blocked_until = max(self.blocked_until, now + max(0.0, seconds))
