"""
Post write paths that feed the memorial lanes:
  POST /posts                 — create a post (published by default)
  GET  /posts/{id}            — fetch a single post
  POST /posts/{id}/publish    — publish a draft
  POST /posts/{id}/like       — like a post (idempotent)
  POST /posts/{id}/unlike     — remove a like (idempotent)
  POST /posts/impressions     — count impressions for a batch of posts
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from opentelemetry import trace
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from memorial_feed.database import get_db
from memorial_feed.dependencies import get_feed_service
from memorial_feed.feed.builders import post_metrics
from memorial_feed.feed.service import FeedService
from memorial_feed.models import Like, LikeTarget, Memorial, Post, PostStatus, utcnow
from memorial_feed.schemas import ImpressionRecord, LikeRequest, PostCreate, PostResponse

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


def _build_post_response(post: Post) -> PostResponse:
    return PostResponse(
        id=post.id,
        author_id=post.author_id,
        memorial_id=post.memorial_id,
        caption=post.caption,
        tags=list(post.tags or []),
        visibility=post.visibility,
        status=post.status,
        media_type=post.media_type,
        media_url=post.media_url,
        metrics=post_metrics(post),
        published_at=post.published_at,
        created_at=post.created_at,
    )


async def _get_post_or_404(db: AsyncSession, post_id: str) -> Post:
    post = await db.get(Post, post_id)
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")
    return post


@router.post("/", response_model=PostResponse, status_code=status.HTTP_201_CREATED)
async def create_post(
    body: PostCreate,
    db: AsyncSession = Depends(get_db),
    feed: FeedService = Depends(get_feed_service),
):
    """
    Post ingestion path (write side of the memorial lane):

    1. Validate the memorial exists (when one is given).
    2. Persist the post, published immediately unless ``publish`` is false.
    3. Published memorial posts are prepended to the cached memorial lane.
    """
    with tracer.start_as_current_span("create_post") as span:
        if body.memorial_id and not await db.get(Memorial, body.memorial_id):
            raise HTTPException(status_code=404, detail="Memorial not found")

        now = utcnow()
        post = Post(
            author_id=body.author_id,
            author_handle=body.author_handle,
            author_image_url=body.author_image_url,
            memorial_id=body.memorial_id,
            caption=body.caption,
            tags=list(dict.fromkeys(body.tags)),
            visibility=body.visibility.value,
            status=(PostStatus.PUBLISHED if body.publish else PostStatus.DRAFT).value,
            media_type=body.media_type,
            media_url=body.media_url,
            media_duration_ms=body.media_duration_ms,
            published_at=now if body.publish else None,
        )
        db.add(post)
        await db.flush()     # materialise id and defaults

        span.set_attribute("post.id", post.id)
        if post.status == PostStatus.PUBLISHED.value and post.memorial_id:
            await feed.append_memorial_entry(post.memorial_id, post.id, ["NEW_TRIBUTE"])

        logger.info("Post created: %s by user %s", post.id, post.author_id)
        return _build_post_response(post)


@router.get("/{post_id}", response_model=PostResponse)
async def get_post(post_id: str, db: AsyncSession = Depends(get_db)):
    return _build_post_response(await _get_post_or_404(db, post_id))


@router.post("/{post_id}/publish", response_model=PostResponse)
async def publish_post(
    post_id: str,
    db: AsyncSession = Depends(get_db),
    feed: FeedService = Depends(get_feed_service),
):
    with tracer.start_as_current_span("publish_post"):
        post = await _get_post_or_404(db, post_id)
        if post.status == PostStatus.REMOVED.value:
            raise HTTPException(status_code=409, detail="Post was removed")
        if post.status == PostStatus.PUBLISHED.value:
            return _build_post_response(post)

        post.status = PostStatus.PUBLISHED.value
        post.published_at = utcnow()
        await db.flush()

        if post.memorial_id:
            await feed.append_memorial_entry(post.memorial_id, post.id, ["TRIBUTE_PUBLISHED"])
        return _build_post_response(post)


@router.post("/{post_id}/like", status_code=status.HTTP_204_NO_CONTENT)
async def like_post(post_id: str, body: LikeRequest, db: AsyncSession = Depends(get_db)):
    """Like a post — idempotent. Increments the likes metric."""
    with tracer.start_as_current_span("like_post"):
        post = await _get_post_or_404(db, post_id)
        existing = await db.get(Like, (body.user_id, LikeTarget.POST.value, post_id))
        if existing:
            return  # already liked

        db.add(Like(user_id=body.user_id, target_type=LikeTarget.POST.value, target_id=post_id))
        post.likes = (post.likes or 0) + 1


@router.post("/{post_id}/unlike", status_code=status.HTTP_204_NO_CONTENT)
async def unlike_post(post_id: str, body: LikeRequest, db: AsyncSession = Depends(get_db)):
    with tracer.start_as_current_span("unlike_post"):
        post = await _get_post_or_404(db, post_id)
        result = await db.execute(
            delete(Like).where(
                Like.user_id == body.user_id,
                Like.target_type == LikeTarget.POST.value,
                Like.target_id == post_id,
            )
        )
        if result.rowcount:
            post.likes = max(0, (post.likes or 0) - 1)


@router.post("/impressions", status_code=status.HTTP_204_NO_CONTENT)
async def record_impressions(body: ImpressionRecord, db: AsyncSession = Depends(get_db)):
    """
    Record that a user saw specific posts.
    Typically called by the client after rendering a feed page.
    """
    post_ids = list(dict.fromkeys(body.post_ids))
    if not post_ids:
        return
    await db.execute(
        update(Post)
        .where(Post.id.in_(post_ids))
        .values(impressions=Post.impressions + 1)
        .execution_options(synchronize_session=False)
    )
    logger.debug("Recorded %d impressions for user_id=%s", len(post_ids), body.user_id)
