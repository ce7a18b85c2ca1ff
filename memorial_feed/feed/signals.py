"""
Follow-graph lookups used for personalization and the activity lanes.

Preference tags are recomputed per request from the user's most recent
post likes and memorial follows; nothing here is cached or persisted.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from memorial_feed.config import FeedConfig
from memorial_feed.models import Follow, FollowTarget, Like, LikeTarget, Memorial, Post

logger = logging.getLogger(__name__)


class FollowGraph:
    def __init__(self, db: AsyncSession, config: FeedConfig) -> None:
        self.db = db
        self.config = config

    async def followed_memorial_ids(self, user_id: str, limit: Optional[int] = None) -> list[str]:
        rows = await self.db.execute(
            select(Follow.target_id)
            .where(
                Follow.user_id == user_id,
                Follow.target_type == FollowTarget.MEMORIAL.value,
            )
            .order_by(Follow.created_at.desc())
            .limit(limit or self.config.followed_memorial_limit)
        )
        return [r[0] for r in rows.all()]

    async def _liked_post_ids(self, user_id: str) -> list[str]:
        rows = await self.db.execute(
            select(Like.target_id)
            .where(Like.user_id == user_id, Like.target_type == LikeTarget.POST.value)
            .order_by(Like.created_at.desc())
            .limit(self.config.preference_source_limit)
        )
        return [r[0] for r in rows.all()]

    async def preference_tags(self, user_id: str) -> set[str]:
        # One session cannot run statements concurrently; keep these sequential.
        liked_post_ids = await self._liked_post_ids(user_id)
        followed_ids = await self.followed_memorial_ids(
            user_id, limit=self.config.preference_source_limit
        )

        tags: set[str] = set()
        if liked_post_ids:
            rows = await self.db.execute(select(Post.tags).where(Post.id.in_(liked_post_ids)))
            for (post_tags,) in rows.all():
                tags.update(post_tags or [])
        if followed_ids:
            rows = await self.db.execute(
                select(Memorial.tags).where(Memorial.id.in_(followed_ids))
            )
            for (memorial_tags,) in rows.all():
                tags.update(memorial_tags or [])

        logger.debug("Resolved %d preference tags for user %s", len(tags), user_id)
        return tags
