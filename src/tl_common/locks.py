"""Per-account serialization.

Concurrent postings to the same trust account must not compute the same stale
next balance. Callers hold the account lock for the whole unit of work; the
repository additionally takes SELECT ... FOR UPDATE where the store supports it.

LocalLockProvider   asyncio.Lock registry, one process
RedisLockProvider   redis lock with TTL, many processes
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import LockError

from src.tl_common.errors import AccountBusyError
from src.tl_common.redis_client import get_redis

logger = logging.getLogger(__name__)


class AccountLockProvider(Protocol):
    def hold(self, key: str) -> AbstractAsyncContextManager[None]: ...


class LocalLockProvider:
    """asyncio.Lock per key; a key is dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class RedisLockProvider:
    def __init__(
        self,
        redis_factory: Callable[[], Awaitable[aioredis.Redis]] = get_redis,
        ttl_seconds: int = 30,
        wait_seconds: float = 10.0,
        prefix: str = "trust:account-lock:",
    ) -> None:
        self._redis_factory = redis_factory
        self._ttl = ttl_seconds
        self._wait = wait_seconds
        self._prefix = prefix

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        client = await self._redis_factory()
        lock = client.lock(
            f"{self._prefix}{key}", timeout=self._ttl, blocking_timeout=self._wait
        )
        if not await lock.acquire():
            raise AccountBusyError(key)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # TTL expired while the unit of work was still running
                logger.warning("Account lock expired before release: key=%s", key)


def build_lock_provider(backend: str, ttl_seconds: int, wait_seconds: float) -> AccountLockProvider:
    if backend.lower() == "redis":
        return RedisLockProvider(ttl_seconds=ttl_seconds, wait_seconds=wait_seconds)
    return LocalLockProvider()
