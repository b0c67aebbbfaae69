"""Public tracking endpoint.

WHAT:
    Receives events from the browser snippet and hands them to the
    ingestion pipeline.

WHY:
    The snippet runs on any customer site, so the endpoint is unauthenticated
    and answers every origin. CORS headers are added by TrackCORSMiddleware
    in main.py, which also covers error responses.

REFERENCES:
    - services/ingestion.py: The pipeline
    - tests/test_track.py
"""

import logging

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_async_db
from ..deps import get_tracker_state
from ..schemas import TrackResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Tracking"])


@router.post(
    "/track",
    response_model=TrackResponse,
    response_model_exclude_none=True,
    summary="Record a tracking event",
)
async def track(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    tracker=Depends(get_tracker_state),
):
    body = await request.body()
    socket_ip = request.client.host if request.client else None

    result = await tracker.pipeline.ingest(db, body, request.headers, socket_ip)
    if result.excluded:
        return TrackResponse(success=True, excluded=True)
    return TrackResponse(success=True)


@router.options("/track", include_in_schema=False)
async def track_preflight():
    return Response(status_code=status.HTTP_204_NO_CONTENT)
