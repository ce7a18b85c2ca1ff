"""
SQLAlchemy ORM models.

Tables:
  memorials                    — memorial pages (theme, tags, location)
  posts                        — content items with a fixed metrics struct
  follows                      — user → memorial/user edges
  likes                        — user × post/comment engagement
  activity_statements          — immutable structured system events
  activity_statement_audience  — explicit audience user ids per statement
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from memorial_feed.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC; every timestamp column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Visibility(str, enum.Enum):
    PUBLIC = "PUBLIC"
    UNLISTED = "UNLISTED"
    PRIVATE = "PRIVATE"


class PostStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    REMOVED = "REMOVED"


class StatementType(str, enum.Enum):
    DONATION = "DONATION"
    MEMORIAL_UPDATE = "MEMORIAL_UPDATE"
    FUNDRAISER_UPDATE = "FUNDRAISER_UPDATE"
    OBITUARY_UPDATE = "OBITUARY_UPDATE"
    EVENT_NOTICE = "EVENT_NOTICE"
    AI_SUMMARY = "AI_SUMMARY"


class FollowTarget(str, enum.Enum):
    MEMORIAL = "MEMORIAL"
    USER = "USER"


class LikeTarget(str, enum.Enum):
    POST = "POST"
    COMMENT = "COMMENT"


class Memorial(Base):
    __tablename__ = "memorials"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_user_id: Mapped[Optional[str]] = mapped_column(String(36))
    theme: Mapped[str] = mapped_column(String(50), default="default", nullable=False)
    cover_url: Mapped[Optional[str]] = mapped_column(String(500))
    tags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    visibility: Mapped[str] = mapped_column(
        String(20), default=Visibility.PUBLIC.value, nullable=False
    )
    lat: Mapped[Optional[float]] = mapped_column(Float)
    lng: Mapped[Optional[float]] = mapped_column(Float)
    country: Mapped[Optional[str]] = mapped_column(String(2))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    author_id: Mapped[str] = mapped_column(String(36), nullable=False)
    # Identity lives in an external service; keep what rendering needs.
    author_handle: Mapped[Optional[str]] = mapped_column(String(100))
    author_image_url: Mapped[Optional[str]] = mapped_column(String(500))
    memorial_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("memorials.id")
    )
    caption: Mapped[Optional[str]] = mapped_column(Text)
    tags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    visibility: Mapped[str] = mapped_column(
        String(20), default=Visibility.PUBLIC.value, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=PostStatus.DRAFT.value, nullable=False
    )
    media_type: Mapped[Optional[str]] = mapped_column(String(20))  # 'image' | 'video'
    media_url: Mapped[Optional[str]] = mapped_column(String(500))
    media_duration_ms: Mapped[Optional[int]] = mapped_column(Integer)

    likes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    impressions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    watch_time_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    flags: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    memorial = relationship("Memorial", lazy="joined")

    __table_args__ = (
        Index("idx_posts_memorial", "memorial_id", "status"),
        Index("idx_posts_published", "status", "published_at"),
    )


class Follow(Base):
    __tablename__ = "follows"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    target_type: Mapped[str] = mapped_column(String(20), primary_key=True)
    target_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        # "who follows memorial X?"
        Index("idx_follow_target", "target_type", "target_id"),
    )


class Like(Base):
    __tablename__ = "likes"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    target_type: Mapped[str] = mapped_column(String(20), primary_key=True)
    target_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class ActivityStatement(Base):
    __tablename__ = "activity_statements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    memorial_id: Mapped[Optional[str]] = mapped_column(String(36))
    fundraiser_id: Mapped[Optional[str]] = mapped_column(String(36))
    obituary_id: Mapped[Optional[str]] = mapped_column(String(36))
    actor_user_id: Mapped[Optional[str]] = mapped_column(String(36))
    # Rendered segments: [{"text", "source_id", "kind"}]
    parts: Mapped[list] = mapped_column(JSON, nullable=False)
    audience_tags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    lat: Mapped[Optional[float]] = mapped_column(Float)
    lng: Mapped[Optional[float]] = mapped_column(Float)
    geo_bucket: Mapped[Optional[str]] = mapped_column(String(32))
    country: Mapped[Optional[str]] = mapped_column(String(2))
    visibility: Mapped[Optional[str]] = mapped_column(String(20))
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    audience = relationship(
        "ActivityStatementAudience",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_statements_created", "created_at", "id"),
        Index("idx_statements_geo", "geo_bucket"),
        Index("idx_statements_memorial", "memorial_id"),
    )

    @property
    def audience_user_ids(self) -> list[str]:
        return [a.user_id for a in self.audience]


class ActivityStatementAudience(Base):
    __tablename__ = "activity_statement_audience"

    statement_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("activity_statements.id"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)

    __table_args__ = (Index("idx_audience_user", "user_id"),)
