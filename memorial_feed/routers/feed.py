"""
Feed lanes — read side of the feed engine.

  GET  /feed/global                        high-engagement videos
  GET  /feed/fallback                      chronological, everything published
  GET  /feed/memorial/{memorial_id}        one memorial's posts
  POST /feed/memorial/{memorial_id}/rebuild  force a lane rebuild
  GET  /feed/activity/community            statements near / in / followed
  GET  /feed/activity/personal             statements addressed to a user

``cursor`` is opaque: pass back ``next_cursor`` unmodified.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from memorial_feed.dependencies import get_feed_service
from memorial_feed.feed.service import FeedService, Lane
from memorial_feed.schemas import ActivityPage, FeedPage

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/global", response_model=FeedPage)
async def get_global_feed(
    limit: Optional[int] = Query(None, ge=1),
    cursor: Optional[str] = None,
    user_id: Optional[str] = None,
    service: FeedService = Depends(get_feed_service),
):
    return await service.get_lane(Lane.GLOBAL, limit=limit, cursor=cursor, user_id=user_id)


@router.get("/fallback", response_model=FeedPage)
async def get_fallback_feed(
    limit: Optional[int] = Query(None, ge=1),
    cursor: Optional[str] = None,
    user_id: Optional[str] = None,
    service: FeedService = Depends(get_feed_service),
):
    return await service.get_lane(Lane.FALLBACK, limit=limit, cursor=cursor, user_id=user_id)


@router.get("/memorial/{memorial_id}", response_model=FeedPage)
async def get_memorial_feed(
    memorial_id: str,
    limit: Optional[int] = Query(None, ge=1),
    cursor: Optional[str] = None,
    user_id: Optional[str] = None,
    service: FeedService = Depends(get_feed_service),
):
    return await service.get_lane(
        Lane.MEMORIAL, memorial_id, limit=limit, cursor=cursor, user_id=user_id
    )


@router.post("/memorial/{memorial_id}/rebuild")
async def rebuild_memorial_feed(
    memorial_id: str,
    service: FeedService = Depends(get_feed_service),
):
    entries = await service.rebuild_memorial_lane(memorial_id)
    return {"memorial_id": memorial_id, "entries": len(entries)}


@router.get("/activity/community", response_model=ActivityPage)
async def get_community_activity(
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    country: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1),
    cursor: Optional[str] = None,
    service: FeedService = Depends(get_feed_service),
):
    return await service.get_lane(
        Lane.COMMUNITY,
        limit=limit,
        cursor=cursor,
        user_id=user_id,
        lat=lat,
        lng=lng,
        country=country,
    )


@router.get("/activity/personal", response_model=ActivityPage)
async def get_personal_activity(
    user_id: str = Query(..., description="ID of the requesting user"),
    limit: Optional[int] = Query(None, ge=1),
    cursor: Optional[str] = None,
    service: FeedService = Depends(get_feed_service),
):
    return await service.get_lane(Lane.PERSONAL, limit=limit, cursor=cursor, user_id=user_id)
