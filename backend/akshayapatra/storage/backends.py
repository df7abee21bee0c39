"""Key-value backends behind the local store.

A backend only moves strings around; envelopes, versioning and TTL
semantics live in ``LocalStore``. ``acquire``/``release`` give the wizard
an atomic in-flight token. The token stores its holder's value, and a
``release`` that names a holder only deletes the token while it still holds
that value, so a late finisher cannot free a token someone else now owns.
"""

import logging
import time
from typing import Callable, Protocol

import redis.asyncio as redis

from akshayapatra.config import settings
from akshayapatra.utils.cache import get_redis

logger = logging.getLogger(__name__)


class KeyValueBackend(Protocol):
    async def get_raw(self, key: str) -> str | None: ...

    async def set_raw(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, *keys: str) -> None: ...

    async def keys(self, prefix: str) -> list[str]: ...

    async def acquire(self, key: str, ttl_seconds: int, holder: str = "1") -> bool: ...

    async def release(self, key: str, holder: str | None = None) -> None: ...

    async def ping(self) -> bool: ...


class MemoryBackend:
    """Process-local dict backend for development and tests."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        # {key: (value, expires_at | None)}
        self._data: dict[str, tuple[str, float | None]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get_raw(self, key: str) -> str | None:
        return self._live(key)

    async def set_raw(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)

    async def keys(self, prefix: str) -> list[str]:
        return [k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None]

    async def acquire(self, key: str, ttl_seconds: int, holder: str = "1") -> bool:
        # Single event loop: no await between check and set, so this is atomic
        if self._live(key) is not None:
            return False
        self._data[key] = (holder, self._clock() + ttl_seconds)
        return True

    async def release(self, key: str, holder: str | None = None) -> None:
        if holder is None or self._live(key) == holder:
            self._data.pop(key, None)

    async def ping(self) -> bool:
        return True


class RedisBackend:
    """Redis backend sharing the application's connection pool."""

    def __init__(self, client: redis.Redis | None = None):
        self._client = client

    async def _redis(self) -> redis.Redis:
        if self._client is None:
            self._client = await get_redis()
        return self._client

    async def get_raw(self, key: str) -> str | None:
        client = await self._redis()
        return await client.get(key)

    async def set_raw(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        client = await self._redis()
        if ttl_seconds:
            await client.setex(key, ttl_seconds, value)
        else:
            await client.set(key, value)

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        client = await self._redis()
        await client.delete(*keys)

    async def keys(self, prefix: str) -> list[str]:
        client = await self._redis()
        found = []
        async for key in client.scan_iter(match=f"{prefix}*"):
            found.append(key)
        return found

    async def acquire(self, key: str, ttl_seconds: int, holder: str = "1") -> bool:
        client = await self._redis()
        return bool(await client.set(key, holder, nx=True, ex=ttl_seconds))

    async def release(self, key: str, holder: str | None = None) -> None:
        client = await self._redis()
        if holder is None:
            await client.delete(key)
            return
        async with client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if await pipe.get(key) != holder:
                    await pipe.unwatch()
                    return
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
            except redis.WatchError:
                # Changed hands between GET and DELETE; no longer ours
                logger.debug(f"Token {key} changed before release")

    async def ping(self) -> bool:
        try:
            client = await self._redis()
            return bool(await client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False


_backend: KeyValueBackend | None = None


def get_backend() -> KeyValueBackend:
    """Return the process-wide backend selected by ``settings.store_backend``."""
    global _backend
    if _backend is None:
        if settings.store_backend == "memory":
            _backend = MemoryBackend()
        elif settings.store_backend == "sql":
            from akshayapatra.storage.sql import SqlBackend

            _backend = SqlBackend()
        else:
            _backend = RedisBackend()
        logger.info(f"Local store backend: {type(_backend).__name__}")
    return _backend


def set_backend(backend: KeyValueBackend | None) -> None:
    global _backend
    _backend = backend
