"""Redis connection for cross-process account locks (ACCOUNT_LOCK_BACKEND=redis).

Only `trust:account-lock:*` keys with a TTL live in Redis; balances and ledger
rows always go through the SQL store. Startup pings the server so a broken
lock backend fails the boot rather than the first posting.
"""

import logging
from urllib.parse import urlsplit

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config.settings import settings

logger = logging.getLogger(__name__)

_redis_pool: aioredis.Redis | None = None


def _display_url(url: str) -> str:
    # host:port/db only, never the password
    parts = urlsplit(url)
    return f"{parts.hostname}:{parts.port or 6379}{parts.path or '/0'}"


async def get_redis() -> aioredis.Redis:
    """Get or create the Redis connection pool."""
    global _redis_pool  # noqa: PLW0603
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        )
    return _redis_pool


async def ping_redis() -> None:
    """Raise if the lock backend cannot be reached."""
    client = await get_redis()
    try:
        await client.ping()
    except RedisError:
        logger.error("Account lock backend unreachable at %s", _display_url(settings.REDIS_URL))
        raise
    logger.info("Account lock backend ready at %s", _display_url(settings.REDIS_URL))


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool  # noqa: PLW0603
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
