"""The same contract checked against every local-store backend."""

import warnings
from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from akshayapatra.database import create_tables
from akshayapatra.models.local_entry import LocalEntry
from akshayapatra.storage.backends import MemoryBackend, RedisBackend
from akshayapatra.storage.local import LocalStore
from akshayapatra.storage.sql import SqlBackend


@pytest_asyncio.fixture
async def sql_backend(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    await create_tables(bind=engine)
    yield SqlBackend(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    await engine.dispose()


@pytest_asyncio.fixture
async def redis_backend():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    await client.flushall()
    yield RedisBackend(client)
    await client.flushall()
    await client.aclose()


@pytest.fixture(params=["memory", "redis", "sql"])
def backend(request):
    if request.param == "memory":
        return MemoryBackend()
    return request.getfixturevalue(f"{request.param}_backend")


@pytest.mark.cache
@pytest.mark.asyncio
class TestBackendContract:
    async def test_get_set_delete(self, backend):
        assert await backend.get_raw("u:1:k") is None
        await backend.set_raw("u:1:k", "v1")
        assert await backend.get_raw("u:1:k") == "v1"
        await backend.set_raw("u:1:k", "v2")
        assert await backend.get_raw("u:1:k") == "v2"
        await backend.delete("u:1:k")
        assert await backend.get_raw("u:1:k") is None

    async def test_keys_by_prefix(self, backend):
        await backend.set_raw("u:1:app:a", "1")
        await backend.set_raw("u:1:app:b", "2")
        await backend.set_raw("u:1:other", "3")
        await backend.set_raw("u:2:app:a", "4")

        assert sorted(await backend.keys("u:1:app:")) == ["u:1:app:a", "u:1:app:b"]

    async def test_acquire_release(self, backend):
        assert await backend.acquire("u:1:wizard:inflight", 30)
        assert not await backend.acquire("u:1:wizard:inflight", 30)
        await backend.release("u:1:wizard:inflight")
        assert await backend.acquire("u:1:wizard:inflight", 30)

    async def test_release_by_holder_spares_a_newer_holder(self, backend):
        key = "u:1:wizard:inflight"
        assert await backend.acquire(key, 30, holder="old")
        await backend.release(key)
        assert await backend.acquire(key, 30, holder="new")

        await backend.release(key, holder="old")
        assert not await backend.acquire(key, 30, holder="other")

        await backend.release(key, holder="new")
        assert await backend.acquire(key, 30)

    async def test_ping(self, backend):
        assert await backend.ping()

    async def test_local_store_on_backend(self, backend):
        local = LocalStore(backend, "u:1")
        await local.set("missingProfileSteps", ["profile"], ttl_seconds=3600)
        assert await local.get("missingProfileSteps", []) == ["profile"]
        assert await local.clear_prefix("missing") == 1
        assert await local.get("missingProfileSteps", []) == []


@pytest.mark.cache
@pytest.mark.asyncio
class TestRedisSpecifics:
    async def test_ttl_is_set_on_redis(self, redis_backend):
        await redis_backend.set_raw("u:1:k", "v", ttl_seconds=10)
        client = await redis_backend._redis()
        assert 0 < await client.ttl("u:1:k") <= 10

    async def test_acquire_sets_expiry(self, redis_backend):
        await redis_backend.acquire("u:1:lock", 5)
        client = await redis_backend._redis()
        assert 0 < await client.ttl("u:1:lock") <= 5


@pytest.mark.cache
@pytest.mark.asyncio
class TestSqlSpecifics:
    async def test_insert_race_becomes_update(self, sql_backend, monkeypatch):
        await sql_backend.set_raw("u:1:k", "first")

        async def row_not_seen_yet(self, entity, ident, **kwargs):
            return None

        # A concurrent writer inserted the row after this one read
        monkeypatch.setattr(AsyncSession, "get", row_not_seen_yet)
        await sql_backend.set_raw("u:1:k", "second", ttl_seconds=60)
        monkeypatch.undo()

        assert await sql_backend.get_raw("u:1:k") == "second"

    async def test_expiry_is_naive_utc(self, sql_backend):
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            assert await sql_backend.acquire("u:1:lock", 30)
            await sql_backend.set_raw("u:1:k", "v", ttl_seconds=60)
            assert await sql_backend.get_raw("u:1:k") == "v"

        assert not [w for w in caught if "utcnow" in str(w.message)]
        async with sql_backend._sessions() as db:
            row = await db.get(LocalEntry, "u:1:lock")
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        assert row.expires_at.tzinfo is None
        assert timedelta(0) < row.expires_at - now <= timedelta(seconds=30)
