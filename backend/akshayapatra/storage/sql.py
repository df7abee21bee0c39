"""SQL backend for the local store (one ``local_entries`` row per key)."""

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from akshayapatra.models.local_entry import LocalEntry, utcnow

logger = logging.getLogger(__name__)


class SqlBackend:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        if session_factory is None:
            from akshayapatra.database import async_session

            session_factory = async_session
        self._sessions = session_factory

    @staticmethod
    def _expiry(ttl_seconds: int | None) -> datetime | None:
        return utcnow() + timedelta(seconds=ttl_seconds) if ttl_seconds else None

    async def get_raw(self, key: str) -> str | None:
        async with self._sessions() as db:
            row = await db.get(LocalEntry, key)
            if row is None:
                return None
            if row.expires_at is not None and row.expires_at <= utcnow():
                return None
            return row.value

    async def set_raw(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._expiry(ttl_seconds)
        async with self._sessions() as db:
            row = await db.get(LocalEntry, key)
            if row:
                row.value = value
                row.expires_at = expires_at
                await db.commit()
                return

            db.add(LocalEntry(key=key, value=value, expires_at=expires_at))
            try:
                await db.commit()
                return
            except IntegrityError:
                # Another writer inserted the row after our read
                await db.rollback()

            await db.execute(
                update(LocalEntry)
                .where(LocalEntry.key == key)
                .values(value=value, expires_at=expires_at, updated_at=utcnow())
            )
            await db.commit()

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        async with self._sessions() as db:
            await db.execute(delete(LocalEntry).where(LocalEntry.key.in_(keys)))
            await db.commit()

    async def keys(self, prefix: str) -> list[str]:
        async with self._sessions() as db:
            result = await db.execute(
                select(LocalEntry.key).where(LocalEntry.key.startswith(prefix, autoescape=True))
            )
            return [row[0] for row in result.all()]

    async def acquire(self, key: str, ttl_seconds: int, holder: str = "1") -> bool:
        async with self._sessions() as db:
            # Reclaim a lock whose holder died without releasing it
            await db.execute(
                delete(LocalEntry).where(
                    LocalEntry.key == key,
                    LocalEntry.expires_at <= utcnow(),
                )
            )
            db.add(LocalEntry(key=key, value=holder, expires_at=self._expiry(ttl_seconds)))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
            return True

    async def release(self, key: str, holder: str | None = None) -> None:
        if holder is None:
            await self.delete(key)
            return
        async with self._sessions() as db:
            await db.execute(
                delete(LocalEntry).where(LocalEntry.key == key, LocalEntry.value == holder)
            )
            await db.commit()

    async def ping(self) -> bool:
        try:
            async with self._sessions() as db:
                await db.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Database ping failed: {e}")
            return False
