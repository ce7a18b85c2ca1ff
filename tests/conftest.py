import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from memorial_feed.clients.redis_client import FeedCacheStore
from memorial_feed.config import FeedConfig
from memorial_feed.database import Base, get_db
from memorial_feed.dependencies import get_cache_store
from memorial_feed.feed.service import FeedService, KeyedLocks
from memorial_feed.main import app
from memorial_feed.models import Memorial, Post, PostStatus, Visibility


class FakeRedis:
    """Just enough of redis.asyncio for the feed cache store."""

    def __init__(self, interleave: bool = False):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.interleave = interleave
        self.fail = False

    async def _tick(self):
        if self.fail:
            raise RedisConnectionError("redis offline")
        if self.interleave:
            await asyncio.sleep(0)

    async def ping(self):
        await self._tick()
        return True

    async def get(self, key):
        await self._tick()
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        await self._tick()
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        await self._tick()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed


def utc(days_ago: float = 0, hours_ago: float = 0) -> datetime:
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now - timedelta(days=days_ago, hours=hours_ago)


@pytest.fixture
def feed_config():
    return FeedConfig(cache_timeout_seconds=1.0)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache_store(fake_redis, feed_config):
    return FeedCacheStore(fake_redis, timeout=feed_config.cache_timeout_seconds)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "memorial_feed.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def feed_service(db_session, cache_store, feed_config):
    return FeedService(db_session, cache_store, feed_config, locks=KeyedLocks())


@pytest_asyncio.fixture
async def api_client(session_maker, fake_redis, feed_config):
    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def override_get_cache_store():
        return FeedCacheStore(fake_redis, timeout=feed_config.cache_timeout_seconds)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache_store] = override_get_cache_store
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_cache_store, None)


async def make_memorial(session: AsyncSession, **overrides) -> Memorial:
    values = {
        "display_name": "Ada Lovelace",
        "owner_user_id": "owner-1",
        "theme": "sunrise",
        "cover_url": "https://cdn.example/cover.jpg",
        "tags": [],
        "visibility": Visibility.PUBLIC.value,
    }
    values.update(overrides)
    memorial = Memorial(**values)
    session.add(memorial)
    await session.flush()
    return memorial


async def make_post(
    session: AsyncSession,
    memorial: Optional[Memorial] = None,
    published_at: Optional[datetime] = None,
    **overrides,
) -> Post:
    created = published_at or utc()
    values = {
        "author_id": "author-1",
        "author_handle": "ada_fan",
        "memorial_id": memorial.id if memorial else None,
        "caption": "Remembering",
        "tags": [],
        "visibility": Visibility.PUBLIC.value,
        "status": PostStatus.PUBLISHED.value,
        "published_at": created,
        "created_at": created,
        "updated_at": created,
    }
    values.update(overrides)
    post = Post(**values)
    session.add(post)
    await session.flush()
    return post
