"""
Pydantic request / response schemas.
Kept separate from ORM models to avoid coupling transport to storage.

``FeedEntry`` doubles as the cache wire format: it is what the feed cache
store serializes, so timestamps travel as ISO strings and come back as
``datetime`` values.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from memorial_feed.models import PostStatus, StatementType, Visibility


# ──────────────────────────── Content items ───────────────────────────────

class PostMetrics(BaseModel):
    """Fixed engagement counters; every field is a non-negative int."""
    impressions: int = Field(0, ge=0)
    clicks: int = Field(0, ge=0)
    watch_time_ms: int = Field(0, ge=0)
    likes: int = Field(0, ge=0)
    flags: int = Field(0, ge=0)


class PostAuthor(BaseModel):
    id: str
    handle: Optional[str] = None
    image_url: Optional[str] = None


class PostLinks(BaseModel):
    web_url: str
    ios_app_url: Optional[str] = None
    android_app_url: Optional[str] = None


class PostSnapshot(BaseModel):
    """Denormalized copy of a post, enough to render a feed card."""
    id: str
    caption: Optional[str] = None
    tags: list[str] = []
    author: PostAuthor
    links: PostLinks
    visibility: Visibility
    status: PostStatus
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    duration_ms: Optional[int] = None
    published_at: Optional[datetime] = None
    theme: str = "default"
    memorial_cover_url: Optional[str] = None
    memorial_id: Optional[str] = None
    metrics: PostMetrics = PostMetrics()
    created_at: datetime
    updated_at: datetime


class PostCreate(BaseModel):
    author_id: str
    author_handle: Optional[str] = None
    author_image_url: Optional[str] = None
    memorial_id: Optional[str] = None
    caption: Optional[str] = None
    tags: list[str] = []
    visibility: Visibility = Visibility.PUBLIC
    publish: bool = True
    media_type: Optional[str] = Field(None, pattern="^(image|video)$")
    media_url: Optional[str] = None
    media_duration_ms: Optional[int] = Field(None, ge=0)


class PostResponse(BaseModel):
    id: str
    author_id: str
    memorial_id: Optional[str]
    caption: Optional[str]
    tags: list[str]
    visibility: Visibility
    status: PostStatus
    media_type: Optional[str]
    media_url: Optional[str]
    metrics: PostMetrics
    published_at: Optional[datetime]
    created_at: datetime


class LikeRequest(BaseModel):
    user_id: str


class ImpressionRecord(BaseModel):
    user_id: str
    post_ids: list[str]


# ──────────────────────────── Memorials ───────────────────────────────────

class MemorialCreate(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=255)
    owner_user_id: str
    theme: str = "default"
    cover_url: Optional[str] = None
    tags: list[str] = []
    visibility: Visibility = Visibility.PUBLIC
    bio_summary: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    country: Optional[str] = Field(None, min_length=2, max_length=2)


class MemorialResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    display_name: str
    owner_user_id: Optional[str]
    theme: str
    tags: list[str]
    visibility: Visibility
    created_at: datetime


class FollowRequest(BaseModel):
    user_id: str


# ──────────────────────────── Feed ────────────────────────────────────────

class FeedEntry(BaseModel):
    """A ranked, cache-materialized reference to one post."""
    id: str
    published_at: datetime
    score: Optional[float] = None
    reasons: list[str]
    post: PostSnapshot


class FeedPage(BaseModel):
    lane: str
    entries: list[FeedEntry]
    next_cursor: Optional[str] = None


# ──────────────────────────── Activity ────────────────────────────────────

class SegmentKind(str, Enum):
    STRING = "STRING"   # literal template text
    RECORD = "RECORD"   # derived from a record; carries a source_id


class Segment(BaseModel):
    text: str
    source_id: Optional[str] = None
    kind: SegmentKind = SegmentKind.STRING


class ActivityStatementCreate(BaseModel):
    type: StatementType
    memorial_id: Optional[str] = None
    fundraiser_id: Optional[str] = None
    obituary_id: Optional[str] = None
    actor_user_id: Optional[str] = None
    audience_tags: list[str] = []
    audience_user_ids: list[str] = []
    lat: Optional[float] = None
    lng: Optional[float] = None
    country: Optional[str] = None
    visibility: Optional[Visibility] = None
    metadata: Optional[dict[str, Any]] = None
    # Pre-rendered segments bypass the template renderer.
    parts: Optional[list[Segment]] = None
    template_payload: dict[str, Any] = {}
    locale: Optional[str] = None


class ActivityStatementResponse(BaseModel):
    id: str
    type: StatementType
    memorial_id: Optional[str] = None
    memorial_display_name: Optional[str] = None
    fundraiser_id: Optional[str] = None
    obituary_id: Optional[str] = None
    actor_user_id: Optional[str] = None
    parts: list[Segment]
    audience_tags: list[str] = []
    audience_user_ids: list[str] = []
    lat: Optional[float] = None
    lng: Optional[float] = None
    geo_bucket: Optional[str] = None
    country: Optional[str] = None
    visibility: Optional[Visibility] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: datetime


class ActivityPage(BaseModel):
    lane: str
    items: list[ActivityStatementResponse]
    next_cursor: Optional[str] = None
