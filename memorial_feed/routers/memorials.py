"""
Memorial endpoints that touch the feed engine:
  POST /memorials              — create a memorial, announce it, prime its lane
  GET  /memorials/{id}         — fetch a memorial
  POST /memorials/{id}/follow  — follow a memorial
  POST /memorials/{id}/unfollow
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from opentelemetry import trace
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from memorial_feed.database import get_db
from memorial_feed.dependencies import get_feed_service
from memorial_feed.errors import FeedError
from memorial_feed.feed import geo
from memorial_feed.feed.service import FeedService
from memorial_feed.models import Follow, FollowTarget, Memorial, StatementType
from memorial_feed.schemas import (
    ActivityStatementCreate,
    FollowRequest,
    MemorialCreate,
    MemorialResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


async def _rebuild_memorial_lane_safe(feed: FeedService, memorial_id: str) -> None:
    # A missing lane is rebuilt lazily on the next read.
    try:
        await feed.rebuild_memorial_lane(memorial_id)
    except FeedError as exc:
        logger.warning("Failed to rebuild cached feed for memorial %s: %s", memorial_id, exc)


@router.post("/", response_model=MemorialResponse, status_code=status.HTTP_201_CREATED)
async def create_memorial(
    body: MemorialCreate,
    db: AsyncSession = Depends(get_db),
    feed: FeedService = Depends(get_feed_service),
):
    """
    Register a memorial.

    Also records a MEMORIAL_UPDATE statement so followers and nearby users
    see it in their activity lanes, and primes the memorial's post lane.
    """
    with tracer.start_as_current_span("create_memorial") as span:
        geo.validate_coordinates(body.lat, body.lng)
        memorial = Memorial(
            display_name=body.display_name,
            owner_user_id=body.owner_user_id,
            theme=body.theme,
            cover_url=body.cover_url,
            tags=list(dict.fromkeys(body.tags)),
            visibility=body.visibility.value,
            lat=body.lat,
            lng=body.lng,
            country=body.country.upper() if body.country else None,
        )
        db.add(memorial)
        await db.flush()
        span.set_attribute("memorial.id", memorial.id)

        await feed.record_activity_statement(
            ActivityStatementCreate(
                type=StatementType.MEMORIAL_UPDATE,
                memorial_id=memorial.id,
                actor_user_id=body.owner_user_id,
                template_payload={
                    "actor": {"id": body.owner_user_id},
                    "memorial": {"id": memorial.id, "displayName": memorial.display_name},
                    "summary": body.bio_summary or "Memorial created",
                },
                audience_tags=["FOLLOWING", "MEMORIAL"],
                audience_user_ids=[body.owner_user_id],
                lat=memorial.lat,
                lng=memorial.lng,
                country=memorial.country,
                visibility=body.visibility,
            )
        )
        await _rebuild_memorial_lane_safe(feed, memorial.id)

        logger.info("Created memorial %s (id=%s)", memorial.display_name, memorial.id)
        return memorial


@router.get("/{memorial_id}", response_model=MemorialResponse)
async def get_memorial(memorial_id: str, db: AsyncSession = Depends(get_db)):
    memorial = await db.get(Memorial, memorial_id)
    if not memorial:
        raise HTTPException(status_code=404, detail="Memorial not found")
    return memorial


@router.post("/{memorial_id}/follow", status_code=status.HTTP_204_NO_CONTENT)
async def follow_memorial(
    memorial_id: str, body: FollowRequest, db: AsyncSession = Depends(get_db)
):
    """
    Follow a memorial. Followed memorials widen the community and personal
    activity lanes and contribute their tags to feed personalization.
    """
    with tracer.start_as_current_span("follow_memorial"):
        if not await db.get(Memorial, memorial_id):
            raise HTTPException(status_code=404, detail="Memorial not found")

        key = (body.user_id, FollowTarget.MEMORIAL.value, memorial_id)
        if await db.get(Follow, key):
            return  # already following

        db.add(Follow(user_id=body.user_id, target_type=FollowTarget.MEMORIAL.value, target_id=memorial_id))
        logger.info("%s followed memorial %s", body.user_id, memorial_id)


@router.post("/{memorial_id}/unfollow", status_code=status.HTTP_204_NO_CONTENT)
async def unfollow_memorial(
    memorial_id: str, body: FollowRequest, db: AsyncSession = Depends(get_db)
):
    await db.execute(
        delete(Follow).where(
            Follow.user_id == body.user_id,
            Follow.target_type == FollowTarget.MEMORIAL.value,
            Follow.target_id == memorial_id,
        )
    )
