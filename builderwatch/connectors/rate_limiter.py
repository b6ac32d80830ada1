"""Rate limiting for upstream RPC calls.

Two mechanisms:
  - TokenBucket: requests-per-second ceiling with burst, applied to every
    HTTP request sent to the ledger RPC.
  - BatchThrottle: a mandatory quiet period between consecutive batch calls.
    The next batch never starts before ``delay_secs`` has elapsed since the
    previous batch finished.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from threading import Lock
from typing import Awaitable, Callable

Sleeper = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


@dataclass
class BucketConfig:
    """Configuration for a single rate-limit bucket."""
    tokens_per_second: float
    max_burst: int
    name: str = ""


class TokenBucket:
    """Thread-safe token bucket rate limiter."""

    def __init__(
        self,
        config: BucketConfig,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        self._config = config
        self._clock = clock
        self._sleep = sleep
        self._tokens: float = float(config.max_burst)
        self._last_refill: float = clock()
        self._lock = Lock()
        self._total_requests: int = 0
        self._total_waits: int = 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self._tokens = min(
            float(self._config.max_burst),
            self._tokens + elapsed * self._config.tokens_per_second,
        )
        self._last_refill = now

    def try_acquire(self) -> bool:
        """Try to acquire a token without blocking. Returns True if acquired."""
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                self._total_requests += 1
                return True
            return False

    def wait_time(self) -> float:
        """Return seconds until a token is available."""
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                return 0.0
            deficit = 1.0 - self._tokens
            return deficit / self._config.tokens_per_second

    async def acquire(self) -> None:
        """Acquire a token, waiting if necessary."""
        while True:
            wt = self.wait_time()
            if wt <= 0:
                if self.try_acquire():
                    return
            else:
                self._total_waits += 1
                await self._sleep(wt)

    @property
    def stats(self) -> dict[str, int]:
        return {
            "total_requests": self._total_requests,
            "total_waits": self._total_waits,
        }


class BatchThrottle:
    """Enforce a minimum gap between the end of one batch and the next."""

    def __init__(
        self,
        delay_secs: float,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.delay_secs = max(0.0, delay_secs)
        self._clock = clock
        self._sleep = sleep
        self._last_batch_end: float | None = None
        self._lock = asyncio.Lock()
        self.total_waited: float = 0.0

    async def wait(self) -> None:
        """Block until the inter-batch delay since the last batch has elapsed."""
        async with self._lock:
            if self._last_batch_end is None:
                return
            remaining = self._last_batch_end + self.delay_secs - self._clock()
            if remaining > 0:
                self.total_waited += remaining
                await self._sleep(remaining)

    def mark(self) -> None:
        """Record that a batch call just finished (successfully or not)."""
        self._last_batch_end = self._clock()
