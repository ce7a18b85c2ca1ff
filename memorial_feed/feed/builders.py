"""
Lane builders — read-only, idempotent constructions of each feed lane.

  memorial   published posts of one memorial, newest first
  fallback   published posts everywhere, newest first, tagged FALLBACK
  global     public video posts passing the engagement gate, ordered by
             engagement score then recency
  activity   persisted activity statements matching an OR of filter
             clauses, (created_at, id) descending, cursor-on-id pages

Builders never touch the cache; two concurrent runs for the same lane yield
equivalent results and either may be written back.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

from opentelemetry import trace
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from memorial_feed.config import FeedConfig
from memorial_feed.errors import NotFoundError
from memorial_feed.feed import scoring
from memorial_feed.models import (
    ActivityStatement,
    ActivityStatementAudience,
    Memorial,
    Post,
    PostStatus,
    Visibility,
)
from memorial_feed.schemas import (
    FeedEntry,
    PostAuthor,
    PostLinks,
    PostMetrics,
    PostSnapshot,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

GLOBAL_SCOPE = "GLOBAL"
MAX_TAG_REASONS = 3


# ─────────────────────────── Entry construction ──────────────────────────

def entry_id(post_id: str, scope: str) -> str:
    """Stable across rebuilds so de-duplication and cursors survive them."""
    return hashlib.sha1(f"{scope}:{post_id}".encode("utf-8")).hexdigest()


def post_metrics(post: Post) -> PostMetrics:
    return PostMetrics(
        impressions=post.impressions or 0,
        clicks=post.clicks or 0,
        watch_time_ms=post.watch_time_ms or 0,
        likes=post.likes or 0,
        flags=post.flags or 0,
    )


def effective_published_at(post: Post) -> datetime:
    return post.published_at or post.created_at


def derive_reasons(post: Post) -> list[str]:
    reasons = ["RECENT_POST"]
    for tag in (post.tags or [])[:MAX_TAG_REASONS]:
        reasons.append(f"TAG:{tag}")
    if post.visibility != Visibility.PUBLIC.value:
        reasons.append(f"VISIBILITY:{post.visibility}")
    return reasons


def dedupe_reasons(reasons: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(reasons))


def build_entry(
    post: Post,
    reasons: Sequence[str],
    config: FeedConfig,
    now: Optional[datetime] = None,
) -> FeedEntry:
    metrics = post_metrics(post)
    published_at = effective_published_at(post)
    memorial = post.memorial
    return FeedEntry(
        id=entry_id(post.id, post.memorial_id or GLOBAL_SCOPE),
        published_at=published_at,
        score=scoring.rank_score(published_at, post.tags or [], metrics, config, now=now),
        reasons=dedupe_reasons(reasons) if reasons else ["RECENT_POST"],
        post=PostSnapshot(
            id=post.id,
            caption=post.caption,
            tags=list(post.tags or []),
            author=PostAuthor(
                id=post.author_id,
                handle=post.author_handle,
                image_url=post.author_image_url,
            ),
            links=PostLinks(
                web_url=f"{config.share_base_url}/p/{post.id}",
                ios_app_url=f"{config.ios_app_schema}://tributes/?startsWith={post.id}",
                android_app_url=f"{config.android_app_schema}://tributes/?startsWith={post.id}",
            ),
            visibility=post.visibility,
            status=post.status,
            media_url=post.media_url,
            media_type=post.media_type,
            duration_ms=post.media_duration_ms,
            published_at=post.published_at,
            theme=(memorial.theme if memorial else None) or "default",
            memorial_cover_url=memorial.cover_url if memorial else None,
            memorial_id=post.memorial_id,
            metrics=metrics,
            created_at=post.created_at,
            updated_at=post.updated_at,
        ),
    )


# ─────────────────────────── Activity filters ────────────────────────────

@dataclass
class ActivityFilter:
    """Clauses are OR'd; an empty filter matches every statement."""
    geo_bucket: Optional[str] = None
    country: Optional[str] = None
    memorial_ids: list[str] = field(default_factory=list)
    audience_user_id: Optional[str] = None
    actor_user_id: Optional[str] = None

    def clauses(self) -> list:
        clauses = []
        if self.geo_bucket:
            clauses.append(ActivityStatement.geo_bucket.startswith(self.geo_bucket, autoescape=True))
        if self.country:
            clauses.append(ActivityStatement.country == self.country)
        if self.memorial_ids:
            clauses.append(ActivityStatement.memorial_id.in_(self.memorial_ids))
        if self.audience_user_id:
            clauses.append(
                ActivityStatement.id.in_(
                    select(ActivityStatementAudience.statement_id).where(
                        ActivityStatementAudience.user_id == self.audience_user_id
                    )
                )
            )
        if self.actor_user_id:
            clauses.append(ActivityStatement.actor_user_id == self.actor_user_id)
        return clauses


# ─────────────────────────── Builders ────────────────────────────────────

_recency = func.coalesce(Post.published_at, Post.created_at)


class FeedBuilders:
    def __init__(self, db: AsyncSession, config: FeedConfig) -> None:
        self.db = db
        self.config = config

    async def _fetch_posts(self, *criteria, limit: int) -> list[Post]:
        rows = await self.db.execute(
            select(Post)
            .where(Post.status == PostStatus.PUBLISHED.value, *criteria)
            .order_by(_recency.desc(), Post.id.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(rows.unique().scalars().all())

    async def build_memorial_lane(self, memorial_id: str) -> list[FeedEntry]:
        with tracer.start_as_current_span("build_memorial_lane") as span:
            span.set_attribute("memorial.id", memorial_id)
            posts = await self._fetch_posts(
                Post.memorial_id == memorial_id, limit=self.config.max_feed_size
            )
            if not posts and await self.db.get(Memorial, memorial_id) is None:
                raise NotFoundError("Memorial", memorial_id)
            span.set_attribute("lane.size", len(posts))
            return [build_entry(p, derive_reasons(p), self.config) for p in posts]

    async def build_fallback_lane(self) -> list[FeedEntry]:
        with tracer.start_as_current_span("build_fallback_lane") as span:
            posts = await self._fetch_posts(limit=self.config.max_feed_size)
            span.set_attribute("lane.size", len(posts))
            return [
                build_entry(p, ["FALLBACK", *derive_reasons(p)], self.config)
                for p in posts
            ]

    async def build_global_lane(self) -> list[FeedEntry]:
        with tracer.start_as_current_span("build_global_lane") as span:
            candidates = await self._fetch_posts(
                Post.visibility == Visibility.PUBLIC.value,
                limit=self.config.max_feed_size * self.config.candidate_multiplier,
            )
            scored = [
                (scoring.engagement_score(post_metrics(p)), effective_published_at(p), p)
                for p in candidates
                if scoring.is_high_engagement_video(p.media_type, post_metrics(p), self.config)
            ]
            scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
            selected = [p for _, _, p in scored[: self.config.max_feed_size]]

            span.set_attribute("lane.candidates", len(candidates))
            span.set_attribute("lane.size", len(selected))
            return [
                build_entry(p, ["HIGH_ENGAGEMENT", "VIDEO", *derive_reasons(p)], self.config)
                for p in selected
            ]

    async def build_activity_lane(
        self,
        activity_filter: ActivityFilter,
        limit: int,
        cursor: Optional[str] = None,
    ) -> tuple[list[ActivityStatement], Optional[str]]:
        """Return one page of statements plus the cursor for the next page."""
        with tracer.start_as_current_span("build_activity_lane") as span:
            query = select(ActivityStatement)
            clauses = activity_filter.clauses()
            if clauses:
                query = query.where(or_(*clauses))

            anchor = await self.db.get(ActivityStatement, cursor) if cursor else None
            if anchor is not None:
                query = query.where(
                    or_(
                        ActivityStatement.created_at < anchor.created_at,
                        and_(
                            ActivityStatement.created_at == anchor.created_at,
                            ActivityStatement.id < anchor.id,
                        ),
                    )
                )
            elif cursor:
                logger.debug("Unknown activity cursor %s; starting from the top", cursor)

            rows = await self.db.execute(
                query.order_by(
                    ActivityStatement.created_at.desc(), ActivityStatement.id.desc()
                ).limit(limit + 1)
            )
            items = list(rows.scalars().all())
            has_next = len(items) > limit
            page = items[:limit]

            span.set_attribute("lane.size", len(page))
            return page, (page[-1].id if has_next and page else None)
