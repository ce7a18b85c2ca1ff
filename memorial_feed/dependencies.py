"""
FastAPI dependency wiring for the feed engine.

Tests override ``get_db`` and ``get_cache_store`` to swap in SQLite and an
in-memory cache.
"""
from functools import lru_cache
from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from memorial_feed.clients.redis_client import FeedCacheStore, get_redis
from memorial_feed.config import FeedConfig, settings
from memorial_feed.database import get_db
from memorial_feed.feed.service import FeedService


@lru_cache
def get_feed_config() -> FeedConfig:
    return settings.feed_config()


def get_cache_store(config: FeedConfig = Depends(get_feed_config)) -> Optional[FeedCacheStore]:
    """``None`` until Redis is connected; the service then serves uncached."""
    try:
        redis = get_redis()
    except RuntimeError:
        return None
    return FeedCacheStore(redis, timeout=config.cache_timeout_seconds)


async def get_feed_service(
    db: AsyncSession = Depends(get_db),
    cache: Optional[FeedCacheStore] = Depends(get_cache_store),
    config: FeedConfig = Depends(get_feed_config),
) -> FeedService:
    return FeedService(db, cache, config)
