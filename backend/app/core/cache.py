"""
Redis cache layer — async Redis client with typed helpers.

Provides:
    • Lazy async connection
    • JSON serialisation get/set with TTL
    • Atomic set-if-absent (used to claim SOS idempotency keys)
    • Errors degrade to cache misses: Redis is never required to serve traffic

Usage:
    from backend.app.core.cache import cache_get, cache_set, cache_set_if_absent

    claimed = await cache_set_if_absent("sos:idem:u1:abc", {"state": "pending"}, ttl=60)
    cached = await cache_get("sos:idem:u1:abc")
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis client — initialised on first use
_redis_client = None


async def _get_redis():
    """Get or create async Redis client."""
    global _redis_client
    if _redis_client is None:
        try:
            import redis.asyncio as aioredis
            _redis_client = aioredis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Redis client created: %s", settings.REDIS_URL)
        except Exception as e:
            logger.warning("Redis unavailable: %s — caching disabled", e)
            return None
    return _redis_client


async def cache_get(key: str) -> Optional[Any]:
    """Get a cached value by key. Returns None on miss or error."""
    client = await _get_redis()
    if not client:
        return None
    try:
        raw = await client.get(key)
        if raw is not None:
            return json.loads(raw)
    except Exception as e:
        logger.warning("Cache GET error for %s: %s", key, e)
    return None


async def cache_set(key: str, value: Any, ttl: Optional[int] = None) -> bool:
    """Set a cached value with optional TTL (seconds)."""
    client = await _get_redis()
    if not client:
        return False
    try:
        serialised = json.dumps(value, default=str)
        await client.set(key, serialised, ex=ttl or settings.REDIS_IDEMPOTENCY_TTL)
        return True
    except Exception as e:
        logger.warning("Cache SET error for %s: %s", key, e)
        return False


async def cache_set_if_absent(key: str, value: Any, ttl: Optional[int] = None) -> Optional[bool]:
    """
    Atomically store ``value`` only if ``key`` does not exist.

    Returns True if stored, False if the key already existed, and None when
    Redis could not be reached (caller decides how to degrade).
    """
    client = await _get_redis()
    if not client:
        return None
    try:
        serialised = json.dumps(value, default=str)
        stored = await client.set(
            key, serialised, ex=ttl or settings.REDIS_IDEMPOTENCY_TTL, nx=True,
        )
        return bool(stored)
    except Exception as e:
        logger.warning("Cache SETNX error for %s: %s", key, e)
        return None


async def cache_delete(key: str) -> bool:
    """Delete a cache key."""
    client = await _get_redis()
    if not client:
        return False
    try:
        await client.delete(key)
        return True
    except Exception as e:
        logger.warning("Cache DELETE error for %s: %s", key, e)
        return False


async def cache_ping() -> bool:
    """True if Redis answers a PING."""
    client = await _get_redis()
    if not client:
        return False
    try:
        return bool(await client.ping())
    except Exception as e:
        logger.debug("Cache PING failed: %s", e)
        return False


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
