"""
Timezone-aware time bucketing
=============================

WHAT:
    Maps UTC timestamps to bucket keys in the website's local wall time and
    builds dense (gap-free) series over a date range.

WHY:
    A site in America/Los_Angeles expects "Monday" to mean its own Monday.
    Bucketing in UTC would shift late-evening traffic into the next day and
    put weekly boundaries in the wrong place.

BUCKET KEYS (site-local wall time):
    hourly   "YYYY-MM-DDTHH:00"
    daily    "YYYY-MM-DD"
    weekly   "YYYY-MM-DD" of the Monday that starts the week
    monthly  "YYYY-MM-01"

DENSITY:
    `expected_bucket_keys()` enumerates every bucket touched by [start, end]
    exactly once; `build_time_series()` zero-fills missing ones. Hourly
    iteration walks UTC hours and de-duplicates, so the repeated hour at a
    DST fall-back appears once and the skipped spring-forward hour never
    appears.

RELATED FILES:
    - services/date_range.py: Produces the UTC [start, end] window
    - services/aggregation.py: Feeds pageview/visitor/payment timestamps in
"""

import logging
from datetime import date, datetime, timedelta, timezone as dt_timezone, tzinfo
from functools import lru_cache
from typing import Dict, Iterable, List, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..utils.clock import as_utc

logger = logging.getLogger(__name__)

GRANULARITIES = ("hourly", "daily", "weekly", "monthly")
DEFAULT_GRANULARITY = "daily"


@lru_cache(maxsize=256)
def get_zone(name: str) -> tzinfo:
    """ZoneInfo for an IANA name; unknown names fall back to UTC."""
    if not name or name.upper() == "UTC":
        return dt_timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning(f"[STATS] Unknown timezone {name!r}, using UTC: {e}")
        return dt_timezone.utc


def normalize_granularity(value) -> str:
    normalized = (value or DEFAULT_GRANULARITY).lower()
    return normalized if normalized in GRANULARITIES else DEFAULT_GRANULARITY


def to_local(ts: datetime, zone: tzinfo) -> datetime:
    return as_utc(ts).astimezone(zone)


def monday_of(day: date) -> date:
    return day - timedelta(days=day.weekday())


def _month_start(day: date) -> date:
    return day.replace(day=1)


def _next_month(day: date) -> date:
    return date(day.year + 1, 1, 1) if day.month == 12 else date(day.year, day.month + 1, 1)


def bucket_key(ts: datetime, granularity: str, zone: tzinfo) -> str:
    local = to_local(ts, zone)
    if granularity == "hourly":
        return local.strftime("%Y-%m-%dT%H:00")
    if granularity == "weekly":
        return monday_of(local.date()).isoformat()
    if granularity == "monthly":
        return _month_start(local.date()).isoformat()
    return local.date().isoformat()


def expected_bucket_keys(start: datetime, end: datetime, granularity: str, zone: tzinfo) -> List[str]:
    """Every bucket key between start and end (inclusive), in order, once each."""
    if end < start:
        return []

    if granularity == "hourly":
        keys: List[str] = []
        seen: Set[str] = set()
        current = as_utc(start).replace(minute=0, second=0, microsecond=0)
        last = as_utc(end)
        while current <= last:
            key = bucket_key(current, "hourly", zone)
            if key not in seen:
                seen.add(key)
                keys.append(key)
            current += timedelta(hours=1)
        return keys

    first_day = to_local(start, zone).date()
    last_day = to_local(end, zone).date()

    if granularity == "weekly":
        current_day = monday_of(first_day)
        step = timedelta(days=7)
        keys = []
        while current_day <= last_day:
            keys.append(current_day.isoformat())
            current_day += step
        return keys

    if granularity == "monthly":
        current_day = _month_start(first_day)
        keys = []
        while current_day <= last_day:
            keys.append(current_day.isoformat())
            current_day = _next_month(current_day)
        return keys

    keys = []
    current_day = first_day
    while current_day <= last_day:
        keys.append(current_day.isoformat())
        current_day += timedelta(days=1)
    return keys


def count_by_bucket(timestamps: Iterable[datetime], granularity: str, zone: tzinfo) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for ts in timestamps:
        key = bucket_key(ts, granularity, zone)
        counts[key] = counts.get(key, 0) + 1
    return counts


def distinct_by_bucket(rows: Iterable[Tuple[str, datetime]], granularity: str, zone: tzinfo) -> Dict[str, int]:
    """Count distinct ids per bucket from (id, timestamp) pairs."""
    buckets: Dict[str, Set[str]] = {}
    for row_id, ts in rows:
        buckets.setdefault(bucket_key(ts, granularity, zone), set()).add(row_id)
    return {key: len(ids) for key, ids in buckets.items()}


def sum_by_bucket(rows: Iterable[Tuple[datetime, int]], granularity: str, zone: tzinfo) -> Dict[str, int]:
    sums: Dict[str, int] = {}
    for ts, amount in rows:
        key = bucket_key(ts, granularity, zone)
        sums[key] = sums.get(key, 0) + int(amount or 0)
    return sums


def build_time_series(
    start: datetime,
    end: datetime,
    granularity: str,
    zone: tzinfo,
    pageviews: Dict[str, int],
    visitors: Dict[str, int],
    revenue: Dict[str, int],
) -> List[dict]:
    """Dense series of {date, visitors, pageviews, revenue}."""
    return [
        {
            "date": key,
            "visitors": visitors.get(key, 0),
            "pageviews": pageviews.get(key, 0),
            "revenue": revenue.get(key, 0),
        }
        for key in expected_bucket_keys(start, end, granularity, zone)
    ]
