"""Realtime activity endpoints: latest events, latest visitors and one visitor's journey."""

from typing import List

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..constants import MAX_STRING_LENGTHS
from ..database import get_async_db
from ..deps import get_accessible_website
from ..exceptions import ValidationError
from ..models import Website
from ..schemas import EventFeedItem, EventsQuery, VisitorDetailResponse, VisitorListItem, parse_query
from ..services.activity import recent_events, recent_visitors, visitor_journey

router = APIRouter(prefix="/api/websites", tags=["Activity"])


@router.get("/{website_id}/events", response_model=List[EventFeedItem], summary="Latest events")
async def list_events(
    request: Request,
    site: Website = Depends(get_accessible_website),
    db: AsyncSession = Depends(get_async_db),
):
    query = parse_query(EventsQuery, request.query_params)
    return await recent_events(db, site, limit=query.limit, offset=query.offset)


@router.get("/{website_id}/visitors", response_model=List[VisitorListItem], summary="Latest visitors")
async def list_visitors(
    site: Website = Depends(get_accessible_website),
    db: AsyncSession = Depends(get_async_db),
):
    return await recent_visitors(db, site)


@router.get(
    "/{website_id}/visitors/{visitor_id}",
    response_model=VisitorDetailResponse,
    summary="Visitor journey",
)
async def get_visitor(
    visitor_id: str,
    site: Website = Depends(get_accessible_website),
    db: AsyncSession = Depends(get_async_db),
):
    if not visitor_id or len(visitor_id) > MAX_STRING_LENGTHS["visitorId"]:
        raise ValidationError("Invalid visitor ID")
    return await visitor_journey(db, site, visitor_id)
