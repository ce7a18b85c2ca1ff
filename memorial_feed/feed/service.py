"""
Feed service — the public entry point of the feed engine.

Read path (``get_lane``):

  cache hit   → deserialize materialized lane
  cache miss  → run the lane's builder, write through with the TTL
  cache down  → run the builder and serve uncached (logged, never fatal)
  then        → preference overlay (when a user is known) → cursor page

Write path:

  append_memorial_entry       prepend one entry to a memorial lane
  rebuild_memorial_lane       full builder run + overwrite
  record_activity_statement   render/validate + persist a statement

Cache key state machine: MISSING → (build) → CACHED(ttl) → (expiry or
invalidation) → MISSING. Appends mutate CACHED in place. Appends, rebuilds
and read-miss fills of one memorial lane run one at a time through
``KeyedLocks``. Concurrent builds of the global and fallback lanes are
allowed; the last writer wins.

Cursors are entry ids and only a best-effort position hint: a rebuild may
move or drop the referenced entry, in which case paging restarts at 0.
"""
import asyncio
import logging
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Union

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from memorial_feed.clients.redis_client import (
    FALLBACK_FEED_KEY,
    GLOBAL_FEED_KEY,
    FeedCacheStore,
    memorial_feed_key,
)
from memorial_feed.config import FeedConfig
from memorial_feed.errors import DependencyUnavailable, NotFoundError, ValidationError
from memorial_feed.feed import geo, scoring
from memorial_feed.feed.builders import ActivityFilter, FeedBuilders, build_entry
from memorial_feed.feed.signals import FollowGraph
from memorial_feed.feed.templates import TemplateRenderer
from memorial_feed.models import (
    ActivityStatement,
    ActivityStatementAudience,
    Memorial,
    Post,
    PostStatus,
)
from memorial_feed.schemas import (
    ActivityPage,
    ActivityStatementCreate,
    ActivityStatementResponse,
    FeedEntry,
    FeedPage,
    Segment,
)
from memorial_feed.telemetry import (
    ACTIVITY_STATEMENTS_TOTAL,
    FEED_CACHE_REQUESTS,
    FEED_LANE_LATENCY,
    FEED_MEMORIAL_APPENDS_TOTAL,
    FEED_REBUILDS_TOTAL,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PREFERENCE_MATCH = "PREFERENCE_MATCH"
DEFAULT_PAGE_SIZE = 20


# ─────────────────────────── Lanes ───────────────────────────────────────

class Lane(str, Enum):
    GLOBAL = "GLOBAL"
    FALLBACK = "FALLBACK"
    MEMORIAL = "MEMORIAL"
    COMMUNITY = "COMMUNITY"
    PERSONAL = "PERSONAL"


ACTIVITY_LANES = (Lane.COMMUNITY, Lane.PERSONAL)


@dataclass(frozen=True)
class LaneRef:
    lane: Lane
    scope_id: Optional[str] = None

    @classmethod
    def parse(cls, value: Union[str, Lane], scope_id: Optional[str] = None) -> "LaneRef":
        """Accepts ``GLOBAL``, ``FALLBACK``, ``COMMUNITY``, ``PERSONAL``, ``MEMORIAL:<id>``."""
        raw = value.value if isinstance(value, Lane) else str(value).strip()
        name, _, suffix = raw.partition(":")
        try:
            lane = Lane(name.upper())
        except ValueError:
            raise ValidationError(f"Unknown lane {raw!r}") from None

        scope = suffix or scope_id
        if lane is Lane.MEMORIAL:
            if not scope:
                raise ValidationError("MEMORIAL lane requires a memorial id")
            return cls(lane, scope)
        if suffix:
            raise ValidationError(f"Lane {lane.value} does not take a scope")
        return cls(lane)

    @property
    def cache_key(self) -> Optional[str]:
        if self.lane is Lane.GLOBAL:
            return GLOBAL_FEED_KEY
        if self.lane is Lane.FALLBACK:
            return FALLBACK_FEED_KEY
        if self.lane is Lane.MEMORIAL:
            return memorial_feed_key(self.scope_id)
        return None

    def __str__(self) -> str:
        return f"{self.lane.value}:{self.scope_id}" if self.scope_id else self.lane.value


# ─────────────────────────── Helpers ─────────────────────────────────────

class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


# Process-wide: every FeedService shares the same per-memorial writers.
memorial_locks = KeyedLocks()


def merge_entries(entries: Sequence[FeedEntry], max_size: int) -> list[FeedEntry]:
    """De-duplicate by post id (first occurrence wins) and cap."""
    seen: set[str] = set()
    merged: list[FeedEntry] = []
    for entry in entries:
        if entry.post.id in seen:
            continue
        seen.add(entry.post.id)
        merged.append(entry)
        if len(merged) >= max_size:
            break
    return merged


def paginate(
    entries: Sequence[FeedEntry], limit: int, cursor: Optional[str] = None
) -> tuple[list[FeedEntry], Optional[str]]:
    start = 0
    if cursor:
        index = next((i for i, e in enumerate(entries) if e.id == cursor), None)
        start = index + 1 if index is not None else 0
    page = list(entries[start:start + limit])
    has_next = start + limit < len(entries)
    return page, (page[-1].id if has_next and page else None)


def to_statement_response(
    item: ActivityStatement, memorial_display_name: Optional[str] = None
) -> ActivityStatementResponse:
    return ActivityStatementResponse(
        id=item.id,
        type=item.type,
        memorial_id=item.memorial_id,
        memorial_display_name=memorial_display_name,
        fundraiser_id=item.fundraiser_id,
        obituary_id=item.obituary_id,
        actor_user_id=item.actor_user_id,
        parts=[Segment.model_validate(p) for p in item.parts or []],
        audience_tags=list(item.audience_tags or []),
        audience_user_ids=item.audience_user_ids,
        lat=item.lat,
        lng=item.lng,
        geo_bucket=item.geo_bucket,
        country=item.country,
        visibility=item.visibility,
        metadata=item.metadata_,
        created_at=item.created_at,
    )


# ─────────────────────────── Service ─────────────────────────────────────

class FeedService:
    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[FeedCacheStore],
        config: FeedConfig,
        renderer: Optional[TemplateRenderer] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.db = db
        self.cache = cache
        self.config = config
        self.renderer = renderer or TemplateRenderer(default_locale=config.default_locale)
        self.locks = locks or memorial_locks
        self.builders = FeedBuilders(db, config)
        self.graph = FollowGraph(db, config)

    def clamp_limit(self, limit: Optional[int]) -> int:
        requested = DEFAULT_PAGE_SIZE if limit is None else limit
        return max(1, min(requested, self.config.max_feed_size))

    # ── Read path ────────────────────────────────────────────────────────

    async def get_lane(
        self,
        lane: Union[str, Lane],
        scope_id: Optional[str] = None,
        *,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        user_id: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        country: Optional[str] = None,
    ) -> Union[FeedPage, ActivityPage]:
        ref = LaneRef.parse(lane, scope_id)
        safe_limit = self.clamp_limit(limit)

        with FEED_LANE_LATENCY.labels(lane=ref.lane.value).time(), \
                tracer.start_as_current_span("get_lane") as span:
            span.set_attribute("feed.lane", str(ref))
            span.set_attribute("feed.limit", safe_limit)

            if ref.lane in ACTIVITY_LANES:
                return await self._get_activity_page(
                    ref, safe_limit, cursor, user_id=user_id, lat=lat, lng=lng, country=country
                )

            entries = await self._load_lane(ref)
            if user_id:
                preference_tags = await self._persistence(self.graph.preference_tags(user_id))
                entries = self.apply_preference_overlay(entries, preference_tags)

            page, next_cursor = paginate(entries, safe_limit, cursor)
            span.set_attribute("feed.returned", len(page))
            return FeedPage(lane=str(ref), entries=page, next_cursor=next_cursor)

    async def _load_lane(self, ref: LaneRef) -> list[FeedEntry]:
        key = ref.cache_key
        lane_label = ref.lane.value
        try:
            cached = await self._cache_get(key)
        except DependencyUnavailable as exc:
            FEED_CACHE_REQUESTS.labels(lane=lane_label, result="error").inc()
            logger.warning("Cache read failed for %s (%s) — serving uncached", key, exc)
            return await self._build(ref)

        if cached is not None:
            FEED_CACHE_REQUESTS.labels(lane=lane_label, result="hit").inc()
            return cached

        FEED_CACHE_REQUESTS.labels(lane=lane_label, result="miss").inc()
        if ref.lane is not Lane.MEMORIAL:
            entries = await self._build(ref)
            await self._write_through(key, entries)
            return entries

        # Memorial lanes have one writer; an append may have landed since the miss.
        async with self.locks.lock(key):
            try:
                cached = await self._cache_get(key)
            except DependencyUnavailable as exc:
                logger.warning("Cache read failed for %s (%s) — serving uncached", key, exc)
                return await self._build(ref)
            if cached is not None:
                logger.debug("Lane %s was filled by a concurrent writer", key)
                return cached
            entries = await self._build(ref)
            await self._write_through(key, entries)
        return entries

    async def _build(self, ref: LaneRef) -> list[FeedEntry]:
        FEED_REBUILDS_TOTAL.labels(lane=ref.lane.value).inc()
        if ref.lane is Lane.GLOBAL:
            return await self._persistence(self.builders.build_global_lane())
        if ref.lane is Lane.FALLBACK:
            return await self._persistence(self.builders.build_fallback_lane())
        return await self._persistence(self.builders.build_memorial_lane(ref.scope_id))

    async def _get_activity_page(
        self,
        ref: LaneRef,
        limit: int,
        cursor: Optional[str],
        *,
        user_id: Optional[str],
        lat: Optional[float],
        lng: Optional[float],
        country: Optional[str],
    ) -> ActivityPage:
        if ref.lane is Lane.PERSONAL:
            if not user_id:
                raise ValidationError("PERSONAL lane requires a user id")
            activity_filter = ActivityFilter(
                audience_user_id=user_id,
                actor_user_id=user_id,
                memorial_ids=await self._persistence(self.graph.followed_memorial_ids(user_id)),
            )
        else:
            geo.validate_coordinates(lat, lng)
            activity_filter = ActivityFilter(
                geo_bucket=(
                    geo.bucket(lat, lng, self.config.geo_bucket_precision)
                    if lat is not None else None
                ),
                country=(country or "").strip().upper() or None,
                memorial_ids=(
                    await self._persistence(self.graph.followed_memorial_ids(user_id))
                    if user_id else []
                ),
            )

        items, next_cursor = await self._persistence(
            self.builders.build_activity_lane(activity_filter, limit, cursor)
        )
        names = await self._memorial_names(items)
        return ActivityPage(
            lane=str(ref),
            items=[to_statement_response(i, names.get(i.memorial_id)) for i in items],
            next_cursor=next_cursor,
        )

    def apply_preference_overlay(
        self, entries: Sequence[FeedEntry], preference_tags: set[str]
    ) -> list[FeedEntry]:
        if not preference_tags:
            return list(entries)

        personalized = []
        for entry in entries:
            matches = scoring.preference_matches(entry.post.tags, preference_tags)
            if not matches:
                personalized.append(entry)
                continue
            base = entry.score if entry.score is not None else 1.0
            reasons = entry.reasons if PREFERENCE_MATCH in entry.reasons else [
                *entry.reasons, PREFERENCE_MATCH
            ]
            personalized.append(entry.model_copy(update={
                "score": round(base + matches * self.config.preference_weight, 4),
                "reasons": reasons,
            }))
        return personalized

    # ── Write path ───────────────────────────────────────────────────────

    async def append_memorial_entry(
        self, memorial_id: str, content_item_id: str, reasons: Sequence[str]
    ) -> Optional[FeedEntry]:
        """Prepend one post to a memorial lane without a full rebuild.

        Returns the new entry, or ``None`` when the post may not appear in
        that lane (not published, or owned by another memorial).
        """
        post = await self._persistence(self._load_post(content_item_id))
        if post is None:
            raise NotFoundError("Post", content_item_id)
        if post.status != PostStatus.PUBLISHED.value:
            logger.warning(
                "Cannot add post %s to feed; status %s is not publishable",
                content_item_id, post.status,
            )
            return None
        if post.memorial_id != memorial_id:
            logger.warning(
                "Cannot add post %s to memorial %s; memorial mismatch",
                content_item_id, memorial_id,
            )
            return None

        entry = build_entry(post, reasons, self.config)
        key = memorial_feed_key(memorial_id)

        async with self.locks.lock(key):
            try:
                existing = await self._cache_get(key)
            except DependencyUnavailable as exc:
                logger.warning(
                    "Cache read failed for %s (%s) — invalidating instead of appending", key, exc
                )
                await self._invalidate(key)
                return entry

            if existing is None:
                # Seed from persistence so a miss never caches a one-entry lane.
                existing = await self._build(LaneRef(Lane.MEMORIAL, memorial_id))
            elif any(e.post.id == content_item_id for e in existing):
                logger.debug("Replacing stale entry for post %s in %s", content_item_id, key)

            merged = merge_entries([entry, *existing], self.config.max_feed_size)
            await self._write_through(key, merged)

        FEED_MEMORIAL_APPENDS_TOTAL.inc()
        return entry

    async def rebuild_memorial_lane(self, memorial_id: str) -> list[FeedEntry]:
        """Force a builder run and overwrite the cache (empty → key removed)."""
        key = memorial_feed_key(memorial_id)
        async with self.locks.lock(key):
            entries = await self._build(LaneRef(Lane.MEMORIAL, memorial_id))
            if self.cache is None:
                raise DependencyUnavailable("cache", "not configured")
            await self.cache.set(key, entries, self.config.cache_ttl_seconds)
        logger.info("Rebuilt feed for memorial %s with %d posts", memorial_id, len(entries))
        return entries

    async def record_activity_statement(
        self, data: ActivityStatementCreate
    ) -> ActivityStatementResponse:
        with tracer.start_as_current_span("record_activity_statement") as span:
            span.set_attribute("statement.type", data.type.value)

            geo.validate_coordinates(data.lat, data.lng)
            geo_bucket = (
                geo.bucket(data.lat, data.lng, self.config.geo_bucket_precision)
                if data.lat is not None else None
            )

            if data.parts is not None:
                if not data.parts:
                    raise ValidationError("parts must not be empty")
                parts = data.parts
            else:
                parts = self.renderer.render(data.type, data.template_payload, data.locale)

            metadata = dict(data.metadata) if data.metadata else None
            memorial = None
            if data.memorial_id:
                memorial = await self._persistence(self.db.get(Memorial, data.memorial_id))
                if memorial is None:
                    raise NotFoundError("Memorial", data.memorial_id)
                metadata = {**(metadata or {}), "theme": memorial.theme}

            statement = ActivityStatement(
                type=data.type.value,
                memorial_id=data.memorial_id,
                fundraiser_id=data.fundraiser_id,
                obituary_id=data.obituary_id,
                actor_user_id=data.actor_user_id,
                parts=[p.model_dump(mode="json") for p in parts],
                audience_tags=list(dict.fromkeys(data.audience_tags)),
                audience=[
                    ActivityStatementAudience(user_id=uid)
                    for uid in dict.fromkeys(data.audience_user_ids)
                ],
                lat=data.lat,
                lng=data.lng,
                geo_bucket=geo_bucket,
                country=(data.country or "").strip().upper() or None,
                visibility=data.visibility.value if data.visibility else None,
                metadata_=metadata,
            )
            self.db.add(statement)
            await self._persistence(self.db.flush())

            span.set_attribute("statement.id", statement.id)
            ACTIVITY_STATEMENTS_TOTAL.labels(type=data.type.value).inc()
            logger.info("Recorded %s statement %s", data.type.value, statement.id)
            return to_statement_response(
                statement, memorial.display_name if memorial else None
            )

    # ── Collaborator plumbing ────────────────────────────────────────────

    async def _cache_get(self, key: str) -> Optional[list[FeedEntry]]:
        if self.cache is None:
            raise DependencyUnavailable("cache", "not configured")
        return await self.cache.get(key)

    async def _write_through(self, key: str, entries: list[FeedEntry]) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(key, entries, self.config.cache_ttl_seconds)
        except DependencyUnavailable as exc:
            logger.warning("Cache write failed for %s (%s) — lane left unmaterialized", key, exc)

    async def _invalidate(self, key: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.delete(key)
        except DependencyUnavailable as exc:
            logger.warning("Cache invalidation failed for %s (%s)", key, exc)

    async def _persistence(self, awaitable):
        try:
            return await awaitable
        except (OperationalError, PoolTimeoutError) as exc:
            raise DependencyUnavailable(
                "persistence", str(getattr(exc, "orig", None) or exc)
            ) from exc

    async def _load_post(self, post_id: str) -> Optional[Post]:
        rows = await self.db.execute(
            select(Post).where(Post.id == post_id).execution_options(populate_existing=True)
        )
        return rows.unique().scalar_one_or_none()

    async def _memorial_names(self, items: Sequence[ActivityStatement]) -> dict[str, Optional[str]]:
        memorial_ids = {i.memorial_id for i in items if i.memorial_id}
        if not memorial_ids:
            return {}
        rows = await self._persistence(self.db.execute(
            select(Memorial.id, Memorial.display_name).where(Memorial.id.in_(memorial_ids))
        ))
        return {mid: name for mid, name in rows.all()}
