"""
Stats router
------------
Purpose:
- `/stats` returns the whole dashboard bundle for one website and window.
- `/metrics` returns a single breakdown (the "show more" lists).
Design choices:
- Dates are interpreted in the site's timezone; ranges are clamped to
  MAX_DATE_RANGE_DAYS and to now.
- Filters arrive as a JSON-encoded list and never fail the request.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_async_db
from ..deps import Settings, get_accessible_website, get_settings
from ..models import Website
from ..schemas import LabelValue, MetricsQuery, StatsQuery, StatsResponse, parse_query
from ..services.aggregation import AnalyticsAggregator
from ..services.date_range import parse_date_range
from ..services.filters import build_filter_conditions, parse_filters
from ..services.timeseries import normalize_granularity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/websites", tags=["Stats"])


@router.get(
    "/{website_id}/stats",
    response_model=StatsResponse,
    response_model_by_alias=True,
    summary="Dashboard statistics",
)
async def get_stats(
    request: Request,
    site: Website = Depends(get_accessible_website),
    db: AsyncSession = Depends(get_async_db),
    settings: Settings = Depends(get_settings),
):
    query = parse_query(StatsQuery, request.query_params)
    date_range = parse_date_range(
        query.start_date,
        query.end_date,
        timezone=site.timezone,
        max_days=settings.MAX_DATE_RANGE_DAYS,
    )
    conditions = build_filter_conditions(parse_filters(query.filters))

    aggregator = AnalyticsAggregator(db, site, date_range, conditions)
    return await aggregator.stats_bundle(normalize_granularity(query.granularity))


@router.get(
    "/{website_id}/metrics",
    response_model=List[LabelValue],
    summary="One breakdown dimension",
)
async def get_metrics(
    request: Request,
    site: Website = Depends(get_accessible_website),
    db: AsyncSession = Depends(get_async_db),
    settings: Settings = Depends(get_settings),
):
    query = parse_query(MetricsQuery, request.query_params)
    date_range = parse_date_range(
        query.start_date,
        query.end_date,
        timezone=site.timezone,
        max_days=settings.MAX_DATE_RANGE_DAYS,
    )
    conditions = build_filter_conditions(parse_filters(query.filters))

    aggregator = AnalyticsAggregator(db, site, date_range, conditions)
    return await aggregator.metric(query.type, search=query.search, limit=query.limit)
