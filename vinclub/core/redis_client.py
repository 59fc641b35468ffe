"""
Redis client for Vinclub

Caches carrier rate quotes so a carrier outage can still be answered
with the last known rates. Redis is optional; every helper degrades to
a cache miss when it is not configured or unreachable.
"""
import json
import logging
from typing import List, Optional

import redis.asyncio as redis

from vinclub.core.config import settings

logger = logging.getLogger(__name__)

# Global Redis client (initialized lazily)
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get Redis client, initializing if needed.

    Returns None if REDIS_URL not configured (graceful degradation).
    """
    global _redis_client

    if not settings.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True
            )
            await _redis_client.ping()
            logger.info("Redis connection established")
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}. Rate cache disabled.")
            _redis_client = None

    return _redis_client


async def close_redis():
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.close()
        _redis_client = None


# ----- Carrier Rate Cache -----

RATE_CACHE_PREFIX = "rates:"


def rate_cache_key(origin_postal_code: str, destination_postal_code: str, destination_country: str, bottles: int) -> str:
    return f"{RATE_CACHE_PREFIX}{origin_postal_code}:{destination_country}:{destination_postal_code}:{bottles}"


async def get_cached_rates(key: str) -> Optional[List[dict]]:
    """Get cached rate quotes. Returns None if not cached or Redis unavailable."""
    client = await get_redis()
    if not client:
        return None

    try:
        data = await client.get(key)
        if data:
            return json.loads(data)
    except Exception as e:
        logger.debug(f"Redis cache miss for {key}: {e}")

    return None


async def set_cached_rates(key: str, rates: List[dict], ttl_seconds: Optional[int] = None) -> bool:
    """Cache rate quotes. Returns True if cached, False if Redis unavailable."""
    client = await get_redis()
    if not client:
        return False

    try:
        await client.setex(key, ttl_seconds or settings.RATE_CACHE_TTL_SECONDS, json.dumps(rates))
        return True
    except Exception as e:
        logger.debug(f"Redis cache set failed for {key}: {e}")
        return False
