"""Unit tests for series locks."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
import redis.asyncio as redis

from backoffice.services.series_lock import (
    LocalSeriesLock,
    RedisSeriesLock,
    get_series_lock
)
from backoffice.settings import settings


@pytest.mark.unit
class TestLocalSeriesLock:
    """Test the in-process lock."""

    @pytest.mark.asyncio
    async def test_same_series_is_serialized(self):
        """Test holders of one series period never overlap."""
        lock = LocalSeriesLock()
        events = []

        async def worker(name):
            async with lock.hold("DEL", "2025"):
                events.append(f"{name}:enter")
                await asyncio.sleep(0.01)
                events.append(f"{name}:exit")

        await asyncio.gather(worker("a"), worker("b"))

        assert events in (
            ["a:enter", "a:exit", "b:enter", "b:exit"],
            ["b:enter", "b:exit", "a:enter", "a:exit"],
        )

    @pytest.mark.asyncio
    async def test_different_periods_run_concurrently(self):
        """Test distinct series periods do not block each other."""
        lock = LocalSeriesLock()
        inside = asyncio.Event()

        async def first():
            async with lock.hold("DEL", "2025"):
                await asyncio.wait_for(inside.wait(), timeout=1)

        async def second():
            async with lock.hold("DEL", "2026"):
                inside.set()

        await asyncio.gather(first(), second())
        assert inside.is_set()


@pytest.mark.unit
class TestRedisSeriesLock:
    """Test the Redis lock with a mocked client."""

    @pytest.fixture
    def redis_client(self):
        client = AsyncMock()
        client.set.return_value = True
        client.eval.return_value = 1
        return client

    @pytest.fixture
    def lock(self, redis_client):
        lock = RedisSeriesLock("redis://localhost:6379/1", ttl_seconds=5, wait_seconds=0.05, poll_interval=0.01)
        lock._redis = redis_client
        return lock

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, lock, redis_client):
        """Test the lock is taken with NX/EX and released by token."""
        async with lock.hold("IE-DE", "07"):
            pass

        set_call = redis_client.set.await_args
        assert set_call.args[0] == "lock:series:IE-DE:07"
        assert set_call.kwargs == {"nx": True, "ex": 5}
        token = set_call.args[1]
        redis_client.eval.assert_awaited_once()
        assert redis_client.eval.await_args.args[2:] == ("lock:series:IE-DE:07", token)

    @pytest.mark.asyncio
    async def test_busy_lock_times_out_and_proceeds(self, lock, redis_client):
        """Test a lock that stays busy is skipped after the wait."""
        redis_client.set.return_value = None
        entered = False

        async with lock.hold("DEL", "2025"):
            entered = True

        assert entered
        assert redis_client.set.await_count >= 2
        redis_client.eval.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backend_error_proceeds_without_lock(self, lock, redis_client):
        """Test Redis outages do not block allocation."""
        redis_client.set.side_effect = redis.ConnectionError("refused")
        entered = False

        async with lock.hold("DEL", "2025"):
            entered = True

        assert entered
        redis_client.eval.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_release_error_is_tolerated(self, lock, redis_client):
        """Test a failed release leaves the lock to expire."""
        redis_client.eval.side_effect = redis.TimeoutError("slow")

        async with lock.hold("DEL", "2025"):
            pass

        redis_client.eval.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close(self, lock, redis_client):
        """Test close drops the client."""
        await lock.close()

        redis_client.close.assert_awaited_once()
        assert lock._redis is None


@pytest.mark.unit
class TestSeriesLockSelection:
    """Test backend selection."""

    def test_local_backend_by_default(self):
        """Test the in-process lock is used unless Redis is configured."""
        assert isinstance(get_series_lock(), LocalSeriesLock)

    def test_redis_backend(self):
        """Test the Redis lock is used when selected and configured."""
        with patch.object(settings, "SEQUENCE_LOCK_BACKEND", "redis"), \
             patch.object(settings, "REDIS_URL", "redis://localhost:6379/1"):
            assert isinstance(get_series_lock(), RedisSeriesLock)
