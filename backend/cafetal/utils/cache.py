"""Redis caching utilities for the reporting endpoints.

Payment and subscription stats scan whole tables, so their results are
cached for ``settings.metrics_cache_ttl`` seconds.  A TTL of 0 turns
caching off; a Redis outage falls back to computing uncached.
"""

import functools
import hashlib
import json
import logging
from datetime import date, datetime
from typing import Callable, Optional

import redis.asyncio as redis

from cafetal.config import settings

logger = logging.getLogger(__name__)

# Global Redis connection pool
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get or create Redis client connection."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
        )
    return _redis_client


async def close_redis():
    """Close Redis connection (call on app shutdown)."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def cache_key(**kwargs) -> str:
    """Deterministic hash of the (simple) keyword arguments."""
    if not kwargs:
        return "default"

    key_data = json.dumps({"kwargs": kwargs}, sort_keys=True)
    return hashlib.md5(key_data.encode()).hexdigest()


def _serialize(result):
    if hasattr(result, "model_dump"):
        return result.model_dump(mode="json")
    if isinstance(result, list) and result and hasattr(result[0], "model_dump"):
        return [item.model_dump(mode="json") for item in result]
    return result


def cached(prefix: str = "cache", ttl: int | None = None):
    """Decorator to cache an endpoint's result in Redis.

    Args:
        prefix: Cache key prefix for namespacing
        ttl: Seconds to keep the value; defaults to settings.metrics_cache_ttl

    Example:
        @router.get("/stats")
        @cached(prefix="payments")
        async def payment_stats(window_days: int = 30, db=Depends(get_db)):
            ...

    Cache keys: {prefix}:{function_name}:{kwargs_hash}
    Only str/int/float/bool/None/date kwargs take part in the key;
    injected sessions, actors and gateways are skipped.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            effective_ttl = settings.metrics_cache_ttl if ttl is None else ttl
            if effective_ttl <= 0:
                return await func(*args, **kwargs)

            cache_kwargs = {}
            for k, v in kwargs.items():
                if k.startswith("_"):
                    continue
                if isinstance(v, (int, str, bool, float, type(None))):
                    cache_kwargs[k] = v
                elif isinstance(v, (date, datetime)):
                    cache_kwargs[k] = v.isoformat()
            key = f"{prefix}:{func.__name__}:{cache_key(**cache_kwargs)}"

            try:
                redis_client = await get_redis()
                cached_value = await redis_client.get(key)
                if cached_value:
                    logger.debug("Cache HIT: %s", key)
                    return json.loads(cached_value)
                logger.debug("Cache MISS: %s", key)
            except redis.RedisError as e:
                logger.warning("Redis error (falling back to uncached): %s", e)
                return await func(*args, **kwargs)

            result = await func(*args, **kwargs)
            try:
                await redis_client.setex(key, effective_ttl, json.dumps(_serialize(result)))
            except redis.RedisError as e:
                logger.warning("Failed to store %s in cache: %s", key, e)
            return result

        return wrapper

    return decorator


async def invalidate_cache(pattern: str):
    """Invalidate cache keys matching a pattern, e.g. "payments:*"."""
    if settings.metrics_cache_ttl <= 0:
        return
    try:
        redis_client = await get_redis()
        keys = []
        async for key in redis_client.scan_iter(match=pattern):
            keys.append(key)

        if keys:
            await redis_client.delete(*keys)
            logger.info("Invalidated %d cache keys matching %s", len(keys), pattern)
    except redis.RedisError as e:
        logger.warning("Failed to invalidate cache: %s", e)
