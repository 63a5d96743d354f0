"""
Shared fixtures: a throwaway SQLite database per test (aiosqlite) and an
in-memory stand-in for the Redis client used by CacheStore / EventSink.
"""

import os

os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DATABASE_URL", "postgresql+asyncpg://localhost/recon_engine_test")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from recon_engine.database import Base
import recon_engine.models  # noqa: F401
from recon_engine.services.cache import CacheStore
from recon_engine.services.events import EventSink


@pytest.fixture
def anyio_backend():
    return "asyncio"


class InMemoryRedis:
    """The subset of redis.asyncio.Redis the services call."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.published: list[tuple[str, str]] = []

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = str(value)
        return True

    async def incr(self, key):
        value = int(self.store.get(key) or 0) + 1
        self.store[key] = str(value)
        return value

    async def exists(self, *keys):
        return sum(1 for k in keys if k in self.store)

    async def delete(self, *keys):
        return sum(1 for k in keys if self.store.pop(k, None) is not None)

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    async def aclose(self):
        pass


@pytest.fixture
def fake_redis():
    return InMemoryRedis()


@pytest.fixture
def cache(fake_redis):
    return CacheStore(client=fake_redis, prefix="test:", ttl=60)


@pytest.fixture
def event_sink(fake_redis):
    return EventSink(client=fake_redis, prefix="test:")


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'recon.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
