"""Shared Redis client and a small response cache.

One connection pool serves both the Redis local-store backend and the
``@cached`` decorator used for data that is the same for every user
(the public scheme list).
"""

import functools
import hashlib
import json
import logging
from typing import Any, Callable, Optional

import redis.asyncio as redis
from pydantic import TypeAdapter

from akshayapatra.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
        )
    return _redis_client


def set_redis(client: Optional[redis.Redis]) -> None:
    """Swap the shared client (tests point it at fakeredis)."""
    global _redis_client
    _redis_client = client


async def close_redis():
    """Close the pool on app shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def cache_key(**params) -> str:
    """Stable digest of scalar keyword arguments; ``default`` when empty."""
    scalars = {
        k: v for k, v in params.items()
        if not k.startswith("_") and isinstance(v, (int, str, bool, float, type(None)))
    }
    if not scalars:
        return "default"
    return hashlib.md5(json.dumps(scalars, sort_keys=True).encode()).hexdigest()


def cached(ttl: int = 300, prefix: str = "cache", model: Any = None):
    """Cache an async function's result in Redis for ``ttl`` seconds.

    Keys look like ``{prefix}:{function_name}:{kwargs_digest}``. Positional
    arguments (injected clients) never take part in the key.

    ``model`` is the result type (e.g. ``list[SchemeSummary]``); when given,
    values are stored and read back through a pydantic ``TypeAdapter`` so a
    hit returns the same types as a miss. Without it results must be plain
    JSON. Exceptions from the wrapped function propagate and are not cached.
    A Redis outage only disables caching.
    """
    adapter = TypeAdapter(model) if model is not None else None

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            key = f"{prefix}:{func.__name__}:{cache_key(**kwargs)}"

            try:
                client = await get_redis()
                hit = await client.get(key)
            except redis.RedisError as e:
                logger.warning(f"Redis error (falling back to uncached): {e}")
                return await func(*args, **kwargs)

            if hit is not None:
                logger.debug(f"Cache HIT: {key}")
                return adapter.validate_json(hit) if adapter else json.loads(hit)

            logger.debug(f"Cache MISS: {key}")
            result = await func(*args, **kwargs)
            payload = adapter.dump_json(result).decode() if adapter else json.dumps(result)
            try:
                await client.setex(key, ttl, payload)
            except redis.RedisError as e:
                logger.warning(f"Could not store {key}: {e}")
            return result

        return wrapper

    return decorator
