"""
Outbound dial pacing.

Twilio caps calls-per-second per account. Every dial request the
dispatcher makes spends one token; tokens come back at
`calls_per_second` up to `burst`.
"""
from __future__ import annotations

import asyncio
import time
from typing import Callable

from config.settings import DispatcherConfig


class DialRateLimiter:
    """
    Usage:
        limiter = DialRateLimiter.from_config(settings.dispatcher)
        if await limiter.acquire(timeout=5):
            await gateway.place_call(...)
    """

    def __init__(self, calls_per_second: float = 1.0, burst: int = 5,
                 monotonic: Callable[[], float] = time.monotonic):
        if calls_per_second <= 0:
            raise ValueError("calls_per_second must be positive")
        self.calls_per_second = calls_per_second
        self.burst = max(burst, 1)
        self._monotonic = monotonic
        self._tokens = float(self.burst)
        self._stamp = monotonic()
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: DispatcherConfig) -> "DialRateLimiter":
        return cls(calls_per_second=config.calls_per_second, burst=config.burst)

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def try_acquire(self) -> bool:
        """Spend a token if one is available right now."""
        self._refill()
        if self._tokens < 1.0:
            return False
        self._tokens -= 1.0
        return True

    def seconds_until_next(self) -> float:
        self._refill()
        return max(0.0, (1.0 - self._tokens) / self.calls_per_second)

    async def acquire(self, timeout: float = 5.0) -> bool:
        """Wait up to `timeout` seconds for a dial slot."""
        deadline = self._monotonic() + timeout
        while True:
            async with self._lock:
                if self.try_acquire():
                    return True
                wait = self.seconds_until_next()
            remaining = deadline - self._monotonic()
            if remaining <= 0 or wait > remaining:
                return False
            await asyncio.sleep(wait)

    def _refill(self) -> None:
        now = self._monotonic()
        self._tokens = min(float(self.burst), self._tokens + (now - self._stamp) * self.calls_per_second)
        self._stamp = now
