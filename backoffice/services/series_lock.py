# ==== SERIES LOCK SERVICE ==== #

"""
Single-writer discipline for identifier series.

Allocation for a ``(series_tag, period_key)`` pair runs inside ``hold``.
The local backend serializes coroutines of one process with an
``asyncio.Lock`` per key; the Redis backend uses ``SET NX EX`` so several
instances share the discipline. The counter compare-and-swap remains the
uniqueness guarantee, so a lock that cannot be obtained in time is logged
and allocation proceeds without it.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Tuple
from uuid import uuid4

import redis.asyncio as redis

from backoffice.observability.logging import get_logger
from backoffice.observability.tracing import get_tracer
from backoffice.settings import settings


logger = get_logger(__name__)
tracer = get_tracer(__name__)

# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class SeriesLock(ABC):
    """Mutual exclusion per identifier series and period."""

    @abstractmethod
    def hold(self, series_tag: str, period_key: str):
        """Async context manager holding the lock for the series period."""


# ==== IN-PROCESS LOCK ==== #


class LocalSeriesLock(SeriesLock):
    """One ``asyncio.Lock`` per ``(series_tag, period_key)`` in this process."""

    def __init__(self):
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, series_tag: str, period_key: str) -> asyncio.Lock:
        key = (series_tag, period_key)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, series_tag: str, period_key: str) -> AsyncIterator[None]:
        async with self._lock_for(series_tag, period_key):
            yield


# ==== DISTRIBUTED LOCK ==== #


class RedisSeriesLock(SeriesLock):
    """
    Redis lock shared by every instance allocating from the same database.

    Acquisition polls ``SET key token NX EX ttl`` until ``wait_seconds``
    elapse. Release is token-checked so an expired and re-acquired lock is
    never deleted by its previous holder.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        ttl_seconds: int | None = None,
        wait_seconds: float | None = None,
        poll_interval: float = 0.05
    ):
        self.redis_url = redis_url or settings.REDIS_URL
        self.ttl_seconds = ttl_seconds or settings.SEQUENCE_LOCK_TIMEOUT_SECONDS
        self.wait_seconds = wait_seconds if wait_seconds is not None else float(self.ttl_seconds)
        self.poll_interval = poll_interval
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            ssl_config = {}
            if self.redis_url.startswith('rediss://'):
                ssl_config = {
                    'ssl_cert_reqs': None,
                    'ssl_check_hostname': False,
                    'ssl_ca_certs': None
                }

            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                **ssl_config
            )
        return self._redis

    @staticmethod
    def _lock_key(series_tag: str, period_key: str) -> str:
        return f"lock:series:{series_tag}:{period_key}"

    async def acquire(self, series_tag: str, period_key: str) -> Optional[str]:
        """
        Try to take the lock within ``wait_seconds``.

        Returns:
            Optional[str]: Ownership token, or None if the lock stayed busy
        """
        with tracer.start_as_current_span("series_lock_acquire") as span:
            span.set_attribute("series_tag", series_tag)
            span.set_attribute("period_key", period_key)

            redis_client = await self._get_redis()
            lock_key = self._lock_key(series_tag, period_key)
            token = uuid4().hex
            deadline = time.monotonic() + self.wait_seconds

            while True:
                result = await redis_client.set(
                    lock_key,
                    token,
                    nx=True,
                    ex=self.ttl_seconds
                )
                if result is True:
                    span.set_attribute("lock_acquired", True)
                    return token
                if time.monotonic() >= deadline:
                    span.set_attribute("lock_acquired", False)
                    return None
                await asyncio.sleep(self.poll_interval)

    async def release(self, series_tag: str, period_key: str, token: str) -> None:
        """Release the lock if ``token`` still owns it."""
        redis_client = await self._get_redis()
        await redis_client.eval(
            _RELEASE_SCRIPT, 1, self._lock_key(series_tag, period_key), token
        )

    @asynccontextmanager
    async def hold(self, series_tag: str, period_key: str) -> AsyncIterator[None]:
        token = None
        try:
            token = await self.acquire(series_tag, period_key)
        except redis.RedisError as e:
            logger.warning(
                "Series lock backend unavailable, allocating without lock",
                series_tag=series_tag,
                period_key=period_key,
                error=str(e)
            )
        else:
            if token is None:
                logger.warning(
                    "Series lock wait exceeded, allocating without lock",
                    series_tag=series_tag,
                    period_key=period_key,
                    wait_seconds=self.wait_seconds
                )

        try:
            yield
        finally:
            if token is not None:
                try:
                    await self.release(series_tag, period_key, token)
                except redis.RedisError as e:
                    # Lock expires on its own after ttl_seconds
                    logger.warning(
                        "Failed to release series lock",
                        series_tag=series_tag,
                        period_key=period_key,
                        error=str(e)
                    )

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.close()
            self._redis = None


# ==== GLOBAL LOCK INSTANCE ==== #


_series_lock: Optional[SeriesLock] = None


def get_series_lock() -> SeriesLock:
    """
    Get global series lock for the configured backend.

    Returns:
        SeriesLock: Redis lock when ``SEQUENCE_LOCK_BACKEND=redis`` and a
        Redis URL is configured, in-process lock otherwise
    """
    global _series_lock
    if _series_lock is None:
        if settings.SEQUENCE_LOCK_BACKEND == "redis" and settings.REDIS_URL:
            _series_lock = RedisSeriesLock()
        else:
            _series_lock = LocalSeriesLock()
    return _series_lock
