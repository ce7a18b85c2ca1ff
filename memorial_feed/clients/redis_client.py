"""
Redis client wrapper.

Responsibilities:
  • Connection lifecycle — one shared ``redis.asyncio`` client per process
  • Feed cache store     — STRING (JSON list of feed entries) per lane key
                            feed:global:video-high-engagement
                            feed:fallback:chronological
                            feed:memorial:{memorial_id}

Lanes are materialized views: anything stored here can be rebuilt from the
database, so every failure is reported as ``DependencyUnavailable`` and the
caller decides whether to degrade.
"""
import asyncio
import logging
from typing import Optional

import redis.asyncio as aioredis
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from memorial_feed.config import settings
from memorial_feed.errors import DependencyUnavailable
from memorial_feed.schemas import FeedEntry

logger = logging.getLogger(__name__)

_redis: Optional[aioredis.Redis] = None

_entries_adapter = TypeAdapter(list[FeedEntry])


async def init_redis() -> None:
    global _redis
    _redis = aioredis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        decode_responses=True,
        socket_timeout=settings.cache_timeout_seconds,
    )
    await _redis.ping()
    logger.info("Redis connected at %s:%s", settings.redis_host, settings.redis_port)


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    if _redis is None:
        raise RuntimeError("Redis not initialised — call init_redis() at startup")
    return _redis


# ─────────────────────── Lane keys ────────────────────────────────────────

GLOBAL_FEED_KEY = "feed:global:video-high-engagement"
FALLBACK_FEED_KEY = "feed:fallback:chronological"


def memorial_feed_key(memorial_id: str) -> str:
    return f"feed:memorial:{memorial_id}"


# ─────────────────────── Feed cache store ─────────────────────────────────

class FeedCacheStore:
    """get/set/delete of feed entry lists with a TTL and a per-call timeout."""

    def __init__(self, redis: aioredis.Redis, timeout: float = 0.5) -> None:
        self._redis = redis
        self._timeout = timeout

    async def _call(self, op: str, key: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise DependencyUnavailable("cache", f"{op} {key}: {exc!r}") from exc

    async def get(self, key: str) -> Optional[list[FeedEntry]]:
        """Return the cached entries, or ``None`` on a miss."""
        raw = await self._call("GET", key, self._redis.get(key))
        if not raw:
            return None
        try:
            entries = _entries_adapter.validate_json(raw)
        except PydanticValidationError as exc:
            # An unreadable payload is indistinguishable from a miss; rebuild.
            logger.warning("Discarding unreadable cache payload at %s: %s", key, exc)
            return None
        return entries or None

    async def set(self, key: str, entries: list[FeedEntry], ttl: int) -> None:
        """Store entries; an empty list deletes the key instead."""
        if not entries:
            await self.delete(key)
            return
        payload = _entries_adapter.dump_json(entries)
        await self._call("SET", key, self._redis.set(key, payload, ex=ttl))

    async def delete(self, key: str) -> None:
        await self._call("DEL", key, self._redis.delete(key))
