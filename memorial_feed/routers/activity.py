"""
Activity statements — POST /activity

Called by collaborators when a system event happens (donation succeeded,
memorial updated, event announced). Either supply ``template_payload`` and
let the renderer produce the segments, or pass pre-rendered ``parts``.
"""
from fastapi import APIRouter, Depends, status

from memorial_feed.dependencies import get_feed_service
from memorial_feed.feed.service import FeedService
from memorial_feed.schemas import ActivityStatementCreate, ActivityStatementResponse

router = APIRouter()


@router.post("/", response_model=ActivityStatementResponse, status_code=status.HTTP_201_CREATED)
async def record_activity_statement(
    body: ActivityStatementCreate,
    service: FeedService = Depends(get_feed_service),
):
    return await service.record_activity_statement(body)
