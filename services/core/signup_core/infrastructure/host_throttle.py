"""Per-hostname concurrency throttle and retry backoff for provider calls.

Registration runs for many families can target the same provider at the
same time (a popular camp opening at 9:00). The throttle caps how many
reserve/finalize calls are in flight against one hostname, using a Redis
counter so the cap holds across API and worker processes. The cap comes
from the hostname's trust record (``max_concurrent``).

Usage:
    throttle = HostThrottle(redis_client, "app.jackrabbitclass.com", max_concurrent=3)
    async with throttle:
        result = await adapter.reserve(ctx, candidate)
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

INFLIGHT_TTL_SECONDS = 300


class AsyncRedisProtocol(Protocol):
    """Subset of the async Redis client the throttle needs."""

    async def get(self, key: str) -> Optional[bytes]: ...
    async def incr(self, key: str) -> int: ...
    async def decr(self, key: str) -> int: ...
    async def expire(self, key: str, seconds: int) -> bool: ...


class HostThrottleExceeded(Exception):
    """Raised when no inflight slot could be acquired for a hostname."""


@dataclass
class BackoffStrategy:
    """Exponential backoff for retrying idempotent provider requests.

    Attributes:
        base_delay: Initial delay in seconds.
        max_delay: Cap on any single delay.
        multiplier: Growth factor per attempt.
        jitter: Add +/-25% random jitter.
        max_retries: Retries allowed for 5xx responses.
    """

    base_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    max_retries: int = 3

    _status_delays: dict[int, float] = field(default_factory=lambda: {
        429: 5.0,
        502: 2.0,
        503: 5.0,
        504: 2.0,
    })

    def _apply(self, base: float, attempt: int) -> float:
        delay = base * (self.multiplier ** (attempt - 1))
        if self.jitter:
            spread = delay * 0.25
            delay += random.uniform(-spread, spread)
        return max(0.05, min(delay, self.max_delay))

    def get_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return self._apply(self.base_delay, attempt)

    def get_delay_for_status(
        self,
        status_code: int,
        attempt: int,
        retry_after: Optional[int] = None,
    ) -> float:
        """Delay before retrying a response with ``status_code``.

        A Retry-After header wins when it asks for longer than the backoff.
        """
        if retry_after is not None:
            return max(float(retry_after), self.get_delay(attempt))
        return self._apply(self._status_delays.get(status_code, self.base_delay), attempt)

    def should_retry(self, status_code: int, attempt: int) -> bool:
        """429 and 5xx are retried up to ``max_retries``; other 4xx never are."""
        if status_code == 429 or 500 <= status_code < 600:
            return attempt <= self.max_retries
        return False


class HostThrottle:
    """Redis-backed inflight limiter keyed by provider hostname.

    Uses Redis key ``throttle:{hostname}:inflight``.
    """

    def __init__(
        self,
        redis: AsyncRedisProtocol,
        hostname: str,
        max_concurrent: int = 3,
        slot_ttl: int = INFLIGHT_TTL_SECONDS,
    ):
        self.redis = redis
        self.hostname = hostname
        self.max_concurrent = max(1, max_concurrent)
        self.slot_ttl = slot_ttl
        self._inflight_key = f"throttle:{hostname}:inflight"

    async def acquire_slot(self) -> bool:
        """Try once to take an inflight slot."""
        count = await self.redis.incr(self._inflight_key)
        # Expiry keeps a crashed process from leaking slots forever
        await self.redis.expire(self._inflight_key, self.slot_ttl)

        if count > self.max_concurrent:
            await self.redis.decr(self._inflight_key)
            return False
        return True

    async def release(self) -> None:
        await self.redis.decr(self._inflight_key)

    async def acquire(self, wait: bool = True, timeout: float = 30.0) -> bool:
        """Take a slot, optionally polling with backoff until ``timeout``."""
        started = time.monotonic()
        backoff = BackoffStrategy(base_delay=0.1, max_delay=2.0)
        attempt = 0

        while True:
            attempt += 1
            if await self.acquire_slot():
                return True
            if not wait or time.monotonic() - started >= timeout:
                return False
            await asyncio.sleep(backoff.get_delay(attempt))

    async def inflight(self) -> int:
        raw = await self.redis.get(self._inflight_key)
        return int(raw) if raw else 0

    async def __aenter__(self) -> "HostThrottle":
        if not await self.acquire():
            raise HostThrottleExceeded(
                f"Too many concurrent requests in flight for {self.hostname}"
            )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.release()
