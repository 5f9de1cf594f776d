"""
Token bucket rate limiter for platform APIs.

One bucket per platform adapter. Callers await until_ready() before every
request; the bucket refills continuously at quota.requests / quota.period
and never holds more than quota.requests tokens.

CONSTRAINT: a waiter that is cancelled while suspended consumes no token.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field

log = logging.getLogger(__name__)


_PERIODS = {
    "second": 1.0,
    "minute": 60.0,
    "hour": 3600.0,
}

_QUOTA_PATTERN = re.compile(r"^\s*(\d+)\s*/\s*(?:(second|minute|hour)|(\d+(?:\.\d+)?)\s*s)\s*$")


@dataclass(frozen=True)
class Quota:
    """N requests per period (seconds)."""

    requests: int
    period: float

    def __post_init__(self):
        if self.requests < 1:
            raise ValueError(f"Quota needs at least one request, got {self.requests}")
        if self.period <= 0:
            raise ValueError(f"Quota period must be positive, got {self.period}")

    @classmethod
    def per_second(cls, requests: int) -> "Quota":
        return cls(requests, 1.0)

    @classmethod
    def per_minute(cls, requests: int) -> "Quota":
        return cls(requests, 60.0)

    @classmethod
    def parse(cls, value: str) -> "Quota":
        """
        Parse "30/minute", "5/second", "100/hour" or "10/2.5s".

        Raises:
            ValueError: If the string is not a quota
        """
        match = _QUOTA_PATTERN.match(value)
        if match is None:
            raise ValueError(f"Invalid rate limit quota: {value!r}")
        requests, unit, seconds = match.groups()
        period = _PERIODS[unit] if unit else float(seconds)
        return cls(int(requests), period)

    @property
    def rate(self) -> float:
        """Tokens per second."""
        return self.requests / self.period


@dataclass
class TokenBucket:
    """
    Token bucket rate limiter.

    Allows a burst of `capacity` requests, then `rate` requests per second.
    Waiters are served in arrival order.
    """

    rate: float  # Tokens per second
    capacity: int  # Max burst size
    name: str = "bucket"
    _tokens: float = field(default=0, init=False)
    _last_update: float = field(default=0, init=False)
    _lock: asyncio.Lock = field(default=None, init=False)
    _stats: dict = field(default=None, init=False)

    def __post_init__(self):
        self._tokens = float(self.capacity)
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()
        self._stats = {"acquired": 0, "waited": 0, "wait_seconds": 0.0}

    @classmethod
    def from_quota(cls, quota: Quota, name: str = "bucket") -> "TokenBucket":
        return cls(rate=quota.rate, capacity=quota.requests, name=name)

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_update
        self._last_update = now
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)

    async def until_ready(self) -> None:
        """Wait for a token and take it."""
        await self.acquire(1)

    async def acquire(self, tokens: int = 1) -> None:
        """
        Acquire tokens, waiting if necessary.

        Args:
            tokens: Number of tokens to acquire
        """
        if tokens > self.capacity:
            raise ValueError(f"Cannot acquire {tokens} tokens from a bucket of {self.capacity}")

        async with self._lock:
            started = time.monotonic()
            waited = False
            while True:
                self._refill()

                if self._tokens >= tokens:
                    self._tokens -= tokens
                    self._stats["acquired"] += tokens
                    if waited:
                        self._stats["waited"] += 1
                        self._stats["wait_seconds"] += time.monotonic() - started
                    return

                if not waited:
                    log.info(f"[RATELIMIT] Source {self.name} is ratelimited. Waiting...")
                    waited = True

                # Tokens are only deducted after the sleep, so cancellation here is free
                needed = tokens - self._tokens
                await asyncio.sleep(needed / self.rate)

    def check(self) -> bool:
        """True if a token is available right now. Does not consume it."""
        return self.available_tokens >= 1

    @property
    def available_tokens(self) -> float:
        """Get current available tokens without acquiring."""
        now = time.monotonic()
        elapsed = now - self._last_update
        return min(self.capacity, self._tokens + elapsed * self.rate)

    def get_stats(self) -> dict:
        """Get rate limiting statistics."""
        return dict(self._stats)
