"""Dashboard filter parsing and SQL predicates.

WHAT: Turns the `filters` query parameter (JSON array of {type, value})
      into three predicate lists, one per table the aggregation queries touch.
WHY: Every grouped query ANDs in the predicates for its own table, so a
     "country = Germany" filter narrows sessions while a "page = /pricing"
     filter narrows pageviews.
REFERENCES:
  - services/aggregation.py: Applies the predicate lists
  - tests/test_filters.py

Supported types:
    referrer          pageview.referrer and session.referrer
    campaign          session.utm_source OR session.utm_campaign
    country/region/city/browser/os/device   session columns
    goal              event.name
    hostname/page/entryPage                 pageview.pathname
Unknown types are ignored. Matching is case-insensitive substring (ILIKE).
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from sqlalchemy import or_
from sqlalchemy.sql.elements import ColumnElement

from ..constants import MAX_STRING_LENGTHS
from ..models import AnalyticsEvent, AnalyticsSession, Pageview

logger = logging.getLogger(__name__)

LIKE_ESCAPE = "\\"


@dataclass(frozen=True)
class Filter:
    type: str
    value: str


@dataclass
class FilterConditions:
    session: List[ColumnElement] = field(default_factory=list)
    pageview: List[ColumnElement] = field(default_factory=list)
    event: List[ColumnElement] = field(default_factory=list)


def escape_like(value: str) -> str:
    """Escape LIKE metacharacters (% _ and the escape char itself)."""
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def parse_filters(raw: Optional[str]) -> List[Filter]:
    """Parse the JSON filter list; invalid JSON or shapes yield no filters."""
    if not raw:
        return []
    try:
        parsed: Any = json.loads(raw)
    except ValueError as e:
        logger.warning(f"[STATS] Failed to parse filters: {e}")
        return []
    if not isinstance(parsed, list):
        return []

    filters = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        ftype, value = item.get("type"), item.get("value")
        if not isinstance(ftype, str) or not isinstance(value, str) or not ftype or not value:
            continue
        filters.append(Filter(type=ftype, value=escape_like(value[: MAX_STRING_LENGTHS["filterValue"]])))
    return filters


def _contains(column, value: str) -> ColumnElement:
    return column.ilike(f"%{value}%", escape=LIKE_ESCAPE)


_SESSION_COLUMNS = {
    "country": AnalyticsSession.country,
    "region": AnalyticsSession.region,
    "city": AnalyticsSession.city,
    "browser": AnalyticsSession.browser,
    "os": AnalyticsSession.os,
    "device": AnalyticsSession.device_type,
}


def build_filter_conditions(filters: List[Filter]) -> FilterConditions:
    conditions = FilterConditions()
    for f in filters:
        if f.type == "referrer":
            conditions.pageview.append(_contains(Pageview.referrer, f.value))
            conditions.session.append(_contains(AnalyticsSession.referrer, f.value))
        elif f.type == "campaign":
            conditions.session.append(
                or_(
                    _contains(AnalyticsSession.utm_source, f.value),
                    _contains(AnalyticsSession.utm_campaign, f.value),
                )
            )
        elif f.type in _SESSION_COLUMNS:
            conditions.session.append(_contains(_SESSION_COLUMNS[f.type], f.value))
        elif f.type == "goal":
            conditions.event.append(_contains(AnalyticsEvent.name, f.value))
        elif f.type in ("hostname", "page", "entryPage"):
            conditions.pageview.append(_contains(Pageview.pathname, f.value))
    return conditions
