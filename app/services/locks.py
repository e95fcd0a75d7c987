"""
Per-Key Lock Manager

Serializes checkout creation for one order across concurrent requests.

Two backends:
    - LocalKeyedLock: asyncio locks in this process. Correct only while the
      service runs as a single instance.
    - RedisKeyedLock: Redis locks with a TTL, shared by every instance.

Either way the lock is a scoped context manager, released on every exit
path, and the entry for a key disappears once nobody holds or waits for it.
The database compare-and-swap on orders.checkout_session_id stays the last
line of defence behind both.

Usage:
    lock = get_checkout_lock()
    async with lock.hold(f"checkout:{order_id}", timeout=15):
        ...
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
from redis.exceptions import LockError

from app.core.config import LockBackend, get_settings
from app.core.exceptions import CheckoutInProgress

logger = logging.getLogger(__name__)


class BaseKeyedLock(ABC):
    """Mutual exclusion keyed by an arbitrary string."""

    @property
    @abstractmethod
    def backend_name(self) -> str:
        pass

    @abstractmethod
    def hold(self, key: str, timeout: float) -> AsyncIterator[None]:
        """
        Hold the lock for `key` for the duration of an `async with` block.

        Raises:
            CheckoutInProgress: The lock could not be acquired within `timeout`
        """

    async def aclose(self) -> None:
        return None


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


async def acquire_within(lock: asyncio.Lock, timeout: float) -> bool:
    """
    Acquire `lock` within `timeout` seconds.

    Returns True with the lock held, or False with it untouched. An acquire
    that completes as the timeout fires counts as acquired, so the lock is
    never taken and then dropped.
    """
    waiter = asyncio.ensure_future(lock.acquire())
    try:
        await asyncio.wait({waiter}, timeout=timeout)
    except asyncio.CancelledError:
        waiter.cancel()
        waiter.add_done_callback(
            lambda task: lock.release() if not task.cancelled() and task.result() else None
        )
        raise
    if not waiter.done():
        waiter.cancel()
        await asyncio.wait({waiter})
    return not waiter.cancelled() and waiter.result()


class LocalKeyedLock(BaseKeyedLock):
    """In-process keyed lock for single-instance deployments."""

    def __init__(self):
        self._entries: dict[str, _Entry] = {}

    @property
    def backend_name(self) -> str:
        return "local"

    def __len__(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def hold(self, key: str, timeout: float) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            if not await acquire_within(entry.lock, timeout):
                logger.warning(f"Lock {key} not acquired within {timeout}s")
                raise CheckoutInProgress(f"Timed out waiting for lock {key}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(key, None)


class RedisKeyedLock(BaseKeyedLock):
    """
    Redis-backed keyed lock for multi-instance deployments.

    The TTL bounds how long a crashed holder can block other instances.
    """

    def __init__(
        self,
        redis_url: str,
        ttl: float = 30.0,
        prefix: str = "lock:",
        client: Optional[aioredis.Redis] = None,
    ):
        self._redis = client if client is not None else aioredis.Redis.from_url(redis_url)
        self._ttl = ttl
        self._prefix = prefix

    @property
    def backend_name(self) -> str:
        return "redis"

    @asynccontextmanager
    async def hold(self, key: str, timeout: float) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"{self._prefix}{key}",
            timeout=self._ttl,
            blocking_timeout=timeout,
        )
        if not await lock.acquire():
            logger.warning(f"Redis lock {key} not acquired within {timeout}s")
            raise CheckoutInProgress(f"Timed out waiting for lock {key}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # TTL ran out while held; another instance may own it now
                logger.warning(f"Redis lock {key} expired before release - {e}")

    async def aclose(self) -> None:
        await self._redis.aclose()


@lru_cache()
def get_checkout_lock() -> BaseKeyedLock:
    """Get the lock manager selected by CHECKOUT_LOCK_BACKEND."""
    settings = get_settings()
    if settings.checkout_lock_backend == LockBackend.REDIS:
        logger.info("Checkout lock: Using RedisKeyedLock")
        return RedisKeyedLock(settings.redis_url, ttl=settings.checkout_lock_ttl_seconds)
    logger.info("Checkout lock: Using LocalKeyedLock (single instance only)")
    return LocalKeyedLock()
