"""
Engagement and rank scoring for content items.

Engagement score (gates and orders the global high-engagement lane):

  engagement = 3·likes + 2·clicks + 0.05·impressions + watch_time_ms/1000

Rank score (personalized ordering; recency and preference dominate, and
engagement can only nudge):

  rank = 1 + recency + preference + min(likes·0.01 + impressions·0.001, 1)
  recency    = max(0, 1 − age_days / window)      window defaults to 30 days
  preference = weight · |item tags ∩ preference tags|

Both round to 4 decimals so cached and freshly computed values compare equal.
"""
from datetime import datetime, timezone
from typing import Iterable, Optional

from memorial_feed.config import FeedConfig
from memorial_feed.schemas import PostMetrics

SECONDS_PER_DAY = 60 * 60 * 24


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def engagement_score(metrics: PostMetrics) -> float:
    score = (
        metrics.likes * 3
        + metrics.clicks * 2
        + metrics.impressions * 0.05
        + metrics.watch_time_ms / 1000      # 1 point per second of aggregate watch time
    )
    return round(score, 4)


def is_high_engagement_video(
    media_type: Optional[str], metrics: PostMetrics, config: FeedConfig
) -> bool:
    if (media_type or "").lower() != "video":
        return False
    if engagement_score(metrics) < config.high_engagement_threshold:
        return False
    # Score alone is not enough: one strong signal is required.
    return (
        metrics.likes >= config.high_engagement_min_likes
        or metrics.impressions >= config.high_engagement_min_impressions
    )


def preference_matches(tags: Iterable[str], preference_tags: Optional[set[str]]) -> int:
    if not preference_tags:
        return 0
    return sum(1 for tag in tags if tag in preference_tags)


def rank_score(
    published_at: datetime,
    tags: Iterable[str],
    metrics: PostMetrics,
    config: FeedConfig,
    preference_tags: Optional[set[str]] = None,
    now: Optional[datetime] = None,
) -> float:
    now = _naive_utc(now) if now else datetime.now(timezone.utc).replace(tzinfo=None)
    age_seconds = max(0.0, (now - _naive_utc(published_at)).total_seconds())
    days_old = age_seconds / SECONDS_PER_DAY
    recency_weight = max(0.0, 1 - days_old / config.recency_window_days)
    preference_weight = preference_matches(tags, preference_tags) * config.preference_weight
    engagement_weight = metrics.likes * 0.01 + metrics.impressions * 0.001

    score = 1 + recency_weight + preference_weight + min(engagement_weight, 1.0)
    return round(score, 4)
