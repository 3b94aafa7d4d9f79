"""
Redis client: async singleton.

Used for the short-lived lock that keeps two abandoned cart scans from
running at the same time.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

from order_bot.core.config import settings
from order_bot.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _safe_url(url: str) -> str:
    """redis://:secret@host -> redis://:****@host"""
    parsed = urlparse(url)
    return url.replace(f":{parsed.password}@", ":****@") if parsed.password else url


async def get_redis() -> aioredis.Redis:
    global _redis_client
    if _redis_client is None:
        async with _init_lock:
            if _redis_client is None:
                client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
                await client.ping()
                _redis_client = client
                logger.info("Redis connected", extra_data={"url": _safe_url(settings.REDIS_URL)})
    return _redis_client


async def acquire_lock(key: str, ttl_seconds: int) -> Lock | None:
    """
    Try once to take ``key`` for ``ttl_seconds``.

    Returns the held lock, or None when another worker holds it. The lock
    stores a per-owner token, so releasing after the TTL ran out never frees
    a lock someone else has taken since.
    """
    client = await get_redis()
    lock = client.lock(key, timeout=ttl_seconds, blocking=False)
    return lock if await lock.acquire() else None


async def release_lock(lock: Lock) -> None:
    try:
        await lock.release()
    except LockError:
        # פג תוקף באמצע - מישהו אחר כבר מחזיק או שאין נעילה
        logger.warning("Lock expired before release", extra_data={"key": lock.name})


async def close_redis() -> None:
    """Call on app shutdown and at the end of each Celery task."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
