"""Per-user JSON-envelope store with TTL and versioning.

Values are stored as envelopes ``{"v": version, "ts": written_at_ms,
"ttl": seconds | null, "data": payload}`` under ``u:<user_id>:<key>``.

Reads never raise: a missing key, unparsable envelope, expired entry or
version mismatch (without a migration) returns the caller's fallback.
Writes to a broken backend are logged and dropped, the same contract a
browser's localStorage gives when quota runs out.
"""

import json
import logging
import time
from typing import Any, Callable, TypeVar

from fastapi import Depends

from akshayapatra.auth.deps import SessionUser, get_current_user
from akshayapatra.storage.backends import KeyValueBackend, get_backend

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Namespaced app keys that other modules reference. Keep these stable.
LS_KEYS = {
    "referral_code": "app:referralCode",
    "installment_cart": "app:installmentCart",
    "dirty_flags_cache": "app:dirtyFlagsCache",
    "last_flags_check": "app:lastFlagsCheck",
}


def _now_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


def parse_envelope(raw: str | None) -> dict | None:
    if not raw:
        return None
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(obj, dict):
        return None
    if not isinstance(obj.get("v"), int) or not isinstance(obj.get("ts"), (int, float)):
        return None
    return obj


def is_expired(envelope: dict, now_ms: int) -> bool:
    ttl = envelope.get("ttl")
    if not ttl:
        return False
    return now_ms > envelope["ts"] + ttl * 1000


class LocalStore:
    """Envelope store scoped to one namespace (normally one user)."""

    def __init__(
        self,
        backend: KeyValueBackend,
        namespace: str,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.namespace = namespace
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    # ── Raw access ──────────────────────────────────────────

    async def get_raw(self, key: str) -> str | None:
        try:
            return await self.backend.get_raw(self._key(key))
        except Exception as e:
            logger.warning(f"Local store read failed for {key}: {e}")
            return None

    async def set_raw(self, key: str, value: str | None) -> None:
        try:
            if value is None:
                await self.backend.delete(self._key(key))
            else:
                await self.backend.set_raw(self._key(key), value)
        except Exception as e:
            logger.warning(f"Local store write failed for {key}: {e}")

    # ── Envelopes ───────────────────────────────────────────

    async def get(
        self,
        key: str,
        fallback: T,
        expected_version: int | None = None,
        migrate: Callable[[Any, int], T] | None = None,
    ) -> T:
        """Return the stored value, or ``fallback``.

        On a version mismatch ``migrate(old_data, old_version)`` is used when
        given; its result is returned but not written back.
        """
        env = parse_envelope(await self.get_raw(key))
        if env is None:
            return fallback

        if is_expired(env, _now_ms(self._clock)):
            await self.delete(key)
            return fallback

        if expected_version is not None and env["v"] != expected_version:
            if migrate is None:
                return fallback
            try:
                return migrate(env.get("data"), env["v"])
            except Exception as e:
                logger.warning(f"Migration of {key} from v{env['v']} failed: {e}")
                return fallback

        return env.get("data")

    async def set(
        self,
        key: str,
        data: Any,
        version: int = 1,
        ttl_seconds: int | None = None,
    ) -> None:
        envelope = {
            "v": version,
            "ts": _now_ms(self._clock),
            "ttl": ttl_seconds,
            "data": data,
        }
        try:
            raw = json.dumps(envelope)
        except (TypeError, ValueError) as e:
            logger.warning(f"Value for {key} is not JSON serializable: {e}")
            return
        try:
            # Backend expiry is only housekeeping; the envelope decides
            await self.backend.set_raw(
                self._key(key), raw, ttl_seconds + 1 if ttl_seconds else None
            )
        except Exception as e:
            logger.warning(f"Local store write failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await self.backend.delete(self._key(key))
        except Exception as e:
            logger.warning(f"Local store delete failed for {key}: {e}")

    async def get_or_init(
        self,
        key: str,
        init: Callable[[], T],
        version: int = 1,
        ttl_seconds: int | None = None,
    ) -> T:
        """Return the current value or store and return ``init()``."""
        missing = object()
        current = await self.get(key, missing, expected_version=version)
        if current is not missing:
            return current
        value = init()
        await self.set(key, value, version=version, ttl_seconds=ttl_seconds)
        return value

    async def migrate(
        self,
        key: str,
        from_version: int,
        to_version: int,
        migrate_fn: Callable[[Any], T],
        ttl_seconds: int | None = None,
    ) -> T | None:
        """Rewrite a ``from_version`` envelope as ``to_version``. No-op otherwise."""
        env = parse_envelope(await self.get_raw(key))
        if env is None or env["v"] != from_version:
            return None
        try:
            new_data = migrate_fn(env.get("data"))
        except Exception as e:
            logger.warning(f"Migration of {key} failed: {e}")
            return None
        await self.set(key, new_data, version=to_version, ttl_seconds=ttl_seconds)
        return new_data

    async def clear_prefix(self, prefix: str = "app:") -> int:
        """Delete every key in this namespace starting with ``prefix``."""
        try:
            keys = await self.backend.keys(self._key(prefix))
            if keys:
                await self.backend.delete(*keys)
            return len(keys)
        except Exception as e:
            logger.warning(f"Local store clear of {prefix}* failed: {e}")
            return 0

    # ── In-flight tokens ────────────────────────────────────

    async def acquire(self, key: str, ttl_seconds: int, holder: str = "1") -> bool:
        return await self.backend.acquire(self._key(key), ttl_seconds, holder)

    async def release(self, key: str, holder: str | None = None) -> None:
        """Free ``key``; with ``holder``, only while that holder still owns it."""
        try:
            await self.backend.release(self._key(key), holder)
        except Exception as e:
            logger.warning(f"Failed to release {key}: {e}")


def store_for_user(user_id: str, backend: KeyValueBackend | None = None) -> LocalStore:
    return LocalStore(backend or get_backend(), namespace=f"u:{user_id}")


async def get_local_store(user: SessionUser = Depends(get_current_user)) -> LocalStore:
    """FastAPI dependency: the signed-in user's local store."""
    return store_for_user(user.id)
