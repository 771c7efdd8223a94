"""Unit tests for the per-hostname throttle and backoff strategy.

Tests cover:
- Inflight slot accounting in Redis
- Waiting acquisition and the async context manager
- Backoff delays and retry decisions for 429/5xx
"""

from unittest.mock import AsyncMock, patch

import pytest

from signup_core.infrastructure.host_throttle import (
    BackoffStrategy,
    HostThrottle,
    HostThrottleExceeded,
)

HOST = "app.jackrabbitclass.com"
KEY = f"throttle:{HOST}:inflight"


class TestHostThrottle:
    """Tests for inflight slot accounting."""

    async def test_slots_up_to_cap(self, mock_async_redis):
        throttle = HostThrottle(mock_async_redis, HOST, max_concurrent=2)

        assert await throttle.acquire_slot() is True
        assert await throttle.acquire_slot() is True
        assert await throttle.acquire_slot() is False
        assert await throttle.inflight() == 2

    async def test_slot_key_gets_expiry(self, mock_async_redis):
        throttle = HostThrottle(mock_async_redis, HOST, slot_ttl=120)

        await throttle.acquire_slot()

        mock_async_redis.expire.assert_awaited_with(KEY, 120)

    async def test_release_frees_slot(self, mock_async_redis):
        throttle = HostThrottle(mock_async_redis, HOST, max_concurrent=1)
        await throttle.acquire_slot()

        await throttle.release()

        assert await throttle.inflight() == 0
        assert await throttle.acquire_slot() is True

    async def test_cap_is_at_least_one(self, mock_async_redis):
        assert HostThrottle(mock_async_redis, HOST, max_concurrent=0).max_concurrent == 1

    async def test_inflight_empty(self, mock_async_redis):
        assert await HostThrottle(mock_async_redis, HOST).inflight() == 0

    async def test_hosts_are_independent(self, mock_async_redis):
        first = HostThrottle(mock_async_redis, HOST, max_concurrent=1)
        second = HostThrottle(mock_async_redis, "camp.myshopify.com", max_concurrent=1)

        assert await first.acquire_slot() is True
        assert await second.acquire_slot() is True


class TestAcquire:
    """Tests for waiting acquisition."""

    async def test_no_wait_fails_fast(self, mock_async_redis):
        throttle = HostThrottle(mock_async_redis, HOST, max_concurrent=1)
        await throttle.acquire_slot()

        assert await throttle.acquire(wait=False) is False

    async def test_waits_until_slot_frees(self, mock_async_redis):
        throttle = HostThrottle(mock_async_redis, HOST, max_concurrent=1)
        await throttle.acquire_slot()

        async def release_during_sleep(_delay):
            mock_async_redis.store[KEY] = 0

        with patch(
            "signup_core.infrastructure.host_throttle.asyncio.sleep",
            AsyncMock(side_effect=release_during_sleep),
        ) as sleep:
            assert await throttle.acquire(timeout=5.0) is True

        sleep.assert_awaited_once()

    async def test_times_out(self, mock_async_redis):
        throttle = HostThrottle(mock_async_redis, HOST, max_concurrent=1)
        await throttle.acquire_slot()

        with patch("signup_core.infrastructure.host_throttle.asyncio.sleep", AsyncMock()):
            assert await throttle.acquire(timeout=0.0) is False

    async def test_context_manager_releases(self, mock_async_redis):
        throttle = HostThrottle(mock_async_redis, HOST, max_concurrent=1)

        async with throttle:
            assert await throttle.inflight() == 1

        assert await throttle.inflight() == 0

    async def test_context_manager_releases_on_error(self, mock_async_redis):
        throttle = HostThrottle(mock_async_redis, HOST, max_concurrent=1)

        with pytest.raises(RuntimeError):
            async with throttle:
                raise RuntimeError("provider blew up")

        assert await throttle.inflight() == 0

    async def test_context_manager_raises_when_full(self, mock_async_redis):
        throttle = HostThrottle(mock_async_redis, HOST, max_concurrent=1)

        with patch.object(throttle, "acquire", AsyncMock(return_value=False)):
            with pytest.raises(HostThrottleExceeded, match=HOST):
                async with throttle:
                    pass

        mock_async_redis.decr.assert_not_awaited()


class TestBackoffStrategy:
    """Tests for BackoffStrategy."""

    def test_exponential_without_jitter(self):
        backoff = BackoffStrategy(base_delay=1.0, jitter=False)

        assert [backoff.get_delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_delay_is_capped(self):
        backoff = BackoffStrategy(base_delay=1.0, max_delay=5.0, jitter=False)

        assert backoff.get_delay(10) == 5.0

    def test_jitter_stays_within_quarter(self):
        backoff = BackoffStrategy(base_delay=4.0, jitter=True)

        for _ in range(20):
            assert 3.0 <= backoff.get_delay(1) <= 5.0

    def test_status_specific_base(self):
        backoff = BackoffStrategy(jitter=False)

        assert backoff.get_delay_for_status(429, 1) == 5.0
        assert backoff.get_delay_for_status(502, 2) == 4.0

    def test_retry_after_wins_when_longer(self):
        backoff = BackoffStrategy(base_delay=1.0, jitter=False)

        assert backoff.get_delay_for_status(429, 1, retry_after=30) == 30.0

    @pytest.mark.parametrize(
        "status,attempt,expected",
        [
            (429, 1, True),
            (503, 3, True),
            (500, 4, False),
            (404, 1, False),
            (401, 1, False),
        ],
    )
    def test_should_retry(self, status, attempt, expected):
        assert BackoffStrategy(max_retries=3).should_retry(status, attempt) is expected
