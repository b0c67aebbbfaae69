"""
Analytics Aggregation
=====================

WHAT:
    Read-only queries behind the dashboard: scalar counts, grouped
    breakdowns, entry pages, average session duration, revenue attribution
    and timezone-aware time series.

WHY:
    The overview page needs ~30 numbers in one round trip
    (`stats_bundle`), and drill-down panels need one dimension at a time with
    search and a larger limit (`metric`).

DESIGN:
    - Every query is scoped to one website and the [start, end] window, and
      ANDs in the filter predicates for its own table
      (services/filters.py).
    - Grouping happens in SQL where the dimension is a column. Channels,
      exit-link labels, referrer hostnames and revenue by hostname are
      derived in Python from grouped rows, since their labels are computed
      from URLs and heuristics.
    - Entry pages: per session, the pageview(s) at the session's minimum
      timestamp. Pageviews sharing that exact timestamp all count.
    - Average session duration: mean (last - first pageview) over up to
      1000 sessions with more than one pageview, in milliseconds.
    - Time series: buckets keyed in the site's timezone, zero-filled.

RELATED FILES:
    - routers/stats.py: HTTP endpoints
    - services/timeseries.py, services/date_range.py
    - services/channels.py: classify_channel
    - tests/test_stats.py
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..constants import DEFAULT_QUERY_LIMITS, EXTERNAL_LINK_EVENT, ONLINE_WINDOW_MINUTES, TOP_LIST_LIMIT
from ..models import AnalyticsEvent, AnalyticsSession, Pageview, Payment, Visitor, Website
from ..utils.clock import utcnow
from .channels import classify_channel, is_internal_referrer, referrer_hostname, strip_www
from .date_range import DateRange
from .filters import LIKE_ESCAPE, FilterConditions, escape_like
from .timeseries import (
    build_time_series,
    count_by_bucket,
    distinct_by_bucket,
    get_zone,
    sum_by_bucket,
)

logger = logging.getLogger(__name__)

CAMPAIGN_LIMIT = 20
CUSTOM_EVENT_LIMIT = 20
REFERRER_CANDIDATES = 20


# =============================================================================
# LABEL HELPERS
# =============================================================================

def campaign_label(source: Optional[str], medium: Optional[str], campaign: Optional[str]) -> str:
    """"?utm_source=x&utm_medium=y&utm_campaign=z" with empty parts omitted."""
    parts = []
    if source:
        parts.append(f"utm_source={source}")
    if medium:
        parts.append(f"utm_medium={medium}")
    if campaign:
        parts.append(f"utm_campaign={campaign}")
    return f"?{'&'.join(parts)}" if parts else "Unknown"


def exit_link_label(data: Any) -> str:
    if isinstance(data, dict):
        return data.get("url") or data.get("text") or "External link"
    return "External link"


def referrer_label(referrer: Optional[str]) -> str:
    hostname = referrer_hostname(referrer)
    if hostname:
        return strip_www(hostname)
    return referrer or "Direct"


def _merge_sorted(pairs: Iterable[Tuple[str, int]]) -> List[Dict[str, Any]]:
    """Sum values per label and sort descending (stable for ties)."""
    totals: Dict[str, int] = {}
    for label, value in pairs:
        totals[label] = totals.get(label, 0) + int(value or 0)
    return [
        {"label": label, "value": value}
        for label, value in sorted(totals.items(), key=lambda item: item[1], reverse=True)
    ]


def _matches(label: str, search: Optional[str]) -> bool:
    return not search or search.lower() in label.lower()


class AnalyticsAggregator:
    """
    Query facade for one website and one date window.

    Usage:
        aggregator = AnalyticsAggregator(db, site, date_range, conditions)
        bundle = await aggregator.stats_bundle("daily")
        rows = await aggregator.metric("countries", search="ger", limit=50)
    """

    def __init__(
        self,
        db: AsyncSession,
        site: Website,
        date_range: DateRange,
        conditions: Optional[FilterConditions] = None,
        now: Optional[datetime] = None,
    ):
        self.db = db
        self.site = site
        self.range = date_range
        self.conditions = conditions or FilterConditions()
        self.now = now or utcnow()

    # =========================================================================
    # BASE PREDICATES
    # =========================================================================

    @property
    def pageview_where(self) -> list:
        return [
            Pageview.website_id == self.site.id,
            Pageview.timestamp >= self.range.start,
            Pageview.timestamp <= self.range.end,
            *self.conditions.pageview,
        ]

    @property
    def session_where(self) -> list:
        return [
            AnalyticsSession.website_id == self.site.id,
            AnalyticsSession.started_at >= self.range.start,
            AnalyticsSession.started_at <= self.range.end,
            *self.conditions.session,
        ]

    @property
    def event_where(self) -> list:
        return [
            AnalyticsEvent.website_id == self.site.id,
            AnalyticsEvent.timestamp >= self.range.start,
            AnalyticsEvent.timestamp <= self.range.end,
            *self.conditions.event,
        ]

    # Revenue and customer counts are site-wide for the range: dashboard
    # filters narrow traffic only, never payments or visitors.
    @property
    def payment_where(self) -> list:
        return [
            Payment.website_id == self.site.id,
            Payment.timestamp >= self.range.start,
            Payment.timestamp <= self.range.end,
        ]

    @property
    def visitor_where(self) -> list:
        return [
            Visitor.website_id == self.site.id,
            Visitor.last_seen >= self.range.start,
            Visitor.last_seen <= self.range.end,
        ]

    async def _scalar(self, stmt) -> int:
        return int((await self.db.execute(stmt)).scalar() or 0)

    # =========================================================================
    # SCALARS
    # =========================================================================

    async def visitor_count(self) -> int:
        return await self._scalar(select(func.count()).select_from(Visitor).where(*self.visitor_where))

    async def pageview_count(self) -> int:
        return await self._scalar(select(func.count()).select_from(Pageview).where(*self.pageview_where))

    async def session_count(self) -> int:
        return await self._scalar(select(func.count()).select_from(AnalyticsSession).where(*self.session_where))

    async def online_count(self) -> int:
        since = self.now - timedelta(minutes=ONLINE_WINDOW_MINUTES)
        return await self._scalar(
            select(func.count())
            .select_from(AnalyticsSession)
            .where(
                AnalyticsSession.website_id == self.site.id,
                AnalyticsSession.last_activity_at >= since,
                *self.conditions.session,
            )
        )

    async def total_revenue(self) -> int:
        return await self._scalar(select(func.coalesce(func.sum(Payment.amount), 0)).where(*self.payment_where))

    async def customer_count(self) -> int:
        return await self._scalar(
            select(func.count())
            .select_from(Visitor)
            .where(*self.visitor_where, Visitor.is_customer.is_(True))
        )

    async def avg_session_duration_ms(self) -> int:
        """Mean duration of multi-pageview sessions, sampled, in ms."""
        stmt = (
            select(
                Pageview.session_id,
                func.min(Pageview.timestamp).label("first_ts"),
                func.max(Pageview.timestamp).label("last_ts"),
            )
            .where(*self.pageview_where)
            .group_by(Pageview.session_id)
            .having(func.count() > 1)
            .limit(DEFAULT_QUERY_LIMITS["duration_sample"])
        )
        rows = (await self.db.execute(stmt)).all()
        if not rows:
            return 0
        total_ms = sum((row.last_ts - row.first_ts).total_seconds() * 1000 for row in rows)
        return round(total_ms / len(rows))

    # =========================================================================
    # GROUPED BREAKDOWNS
    # =========================================================================

    async def _pages(self, limit: int, search: Optional[str] = None) -> List[Dict[str, Any]]:
        value = func.count().label("value")
        conds = list(self.pageview_where)
        if search:
            conds.append(Pageview.pathname.ilike(f"%{escape_like(search)}%", escape=LIKE_ESCAPE))
        stmt = (
            select(Pageview.pathname, value)
            .where(*conds)
            .group_by(Pageview.pathname)
            .order_by(value.desc())
            .limit(limit)
        )
        return [{"label": row.pathname or "/", "value": row.value} for row in (await self.db.execute(stmt)).all()]

    async def _entry_pages(self, limit: int, search: Optional[str] = None) -> List[Dict[str, Any]]:
        first = (
            select(Pageview.session_id, func.min(Pageview.timestamp).label("first_ts"))
            .where(*self.pageview_where)
            .group_by(Pageview.session_id)
            .limit(DEFAULT_QUERY_LIMITS["sessions"])
            .subquery()
        )
        value = func.count().label("value")
        conds = [Pageview.website_id == self.site.id]
        if search:
            conds.append(Pageview.pathname.ilike(f"%{escape_like(search)}%", escape=LIKE_ESCAPE))
        stmt = (
            select(Pageview.pathname, value)
            .join(
                first,
                and_(Pageview.session_id == first.c.session_id, Pageview.timestamp == first.c.first_ts),
            )
            .where(*conds)
            .group_by(Pageview.pathname)
            .order_by(value.desc())
            .limit(limit)
        )
        return [{"label": row.pathname, "value": row.value} for row in (await self.db.execute(stmt)).all()]

    async def _exit_links(self, limit: int, search: Optional[str] = None) -> List[Dict[str, Any]]:
        # JSON columns cannot be grouped on every backend; aggregate labels here
        stmt = (
            select(AnalyticsEvent.data)
            .where(
                *self.event_where,
                AnalyticsEvent.type == "custom",
                AnalyticsEvent.name == EXTERNAL_LINK_EVENT,
            )
            .limit(DEFAULT_QUERY_LIMITS["pageviews"])
        )
        labels = (exit_link_label(data) for data in (await self.db.execute(stmt)).scalars().all())
        merged = _merge_sorted((label, 1) for label in labels if _matches(label, search))
        return merged[:limit]

    async def _referrers(self, limit: int, search: Optional[str] = None, candidates: Optional[int] = None) -> List[Dict[str, Any]]:
        value = func.count().label("value")
        conds = [*self.pageview_where, Pageview.referrer.isnot(None), Pageview.referrer != ""]
        if search:
            conds.append(Pageview.referrer.ilike(f"%{escape_like(search)}%", escape=LIKE_ESCAPE))
        stmt = (
            select(Pageview.referrer, value)
            .where(*conds)
            .group_by(Pageview.referrer)
            .order_by(value.desc())
            .limit(candidates or limit)
        )
        rows = (await self.db.execute(stmt)).all()
        external = [(referrer_label(row.referrer), row.value) for row in rows if not is_internal_referrer(row.referrer)]
        return _merge_sorted(external)[:limit]

    async def _channels(self, limit: Optional[int] = None, search: Optional[str] = None) -> List[Dict[str, Any]]:
        value = func.count().label("value")
        stmt = (
            select(AnalyticsSession.referrer, AnalyticsSession.utm_source, AnalyticsSession.utm_medium, value)
            .where(*self.session_where)
            .group_by(AnalyticsSession.referrer, AnalyticsSession.utm_source, AnalyticsSession.utm_medium)
            .order_by(value.desc())
            .limit(DEFAULT_QUERY_LIMITS["channels"])
        )
        rows = (await self.db.execute(stmt)).all()
        labelled = (
            (classify_channel(row.referrer, row.utm_source, row.utm_medium), row.value) for row in rows
        )
        merged = _merge_sorted(pair for pair in labelled if _matches(pair[0], search))
        return merged[:limit] if limit else merged

    async def _campaigns(self, limit: int, search: Optional[str] = None) -> List[Dict[str, Any]]:
        value = func.count().label("value")
        has_utm = or_(
            and_(AnalyticsSession.utm_source.isnot(None), AnalyticsSession.utm_source != ""),
            and_(AnalyticsSession.utm_medium.isnot(None), AnalyticsSession.utm_medium != ""),
            and_(AnalyticsSession.utm_campaign.isnot(None), AnalyticsSession.utm_campaign != ""),
        )
        stmt = (
            select(AnalyticsSession.utm_source, AnalyticsSession.utm_medium, AnalyticsSession.utm_campaign, value)
            .where(*self.session_where, has_utm)
            .group_by(AnalyticsSession.utm_source, AnalyticsSession.utm_medium, AnalyticsSession.utm_campaign)
            .order_by(value.desc())
            .limit(DEFAULT_QUERY_LIMITS["channels"] if search else limit)
        )
        rows = (await self.db.execute(stmt)).all()
        labelled = [
            {"label": campaign_label(row.utm_source, row.utm_medium, row.utm_campaign), "value": row.value}
            for row in rows
        ]
        return [item for item in labelled if _matches(item["label"], search)][:limit]

    async def _session_dimension(self, column, limit: int, search: Optional[str] = None) -> List[Dict[str, Any]]:
        value = func.count().label("value")
        conds = [*self.session_where, column.isnot(None), column != ""]
        if search:
            conds.append(column.ilike(f"%{escape_like(search)}%", escape=LIKE_ESCAPE))
        stmt = select(column.label("label"), value).where(*conds).group_by(column).order_by(value.desc()).limit(limit)
        return [{"label": row.label or "Unknown", "value": row.value} for row in (await self.db.execute(stmt)).all()]

    async def _screens(self, limit: int, search: Optional[str] = None) -> List[Dict[str, Any]]:
        value = func.count().label("value")
        stmt = (
            select(AnalyticsSession.screen_width, AnalyticsSession.screen_height, value)
            .where(*self.session_where, AnalyticsSession.screen_width.isnot(None))
            .group_by(AnalyticsSession.screen_width, AnalyticsSession.screen_height)
            .order_by(value.desc())
            .limit(limit * 2 if search else limit)
        )
        rows = (await self.db.execute(stmt)).all()
        labelled = [{"label": f"{row.screen_width}x{row.screen_height}", "value": row.value} for row in rows]
        return [item for item in labelled if _matches(item["label"], search)][:limit]

    async def _custom_events(self) -> List[Dict[str, Any]]:
        value = func.count().label("value")
        stmt = (
            select(AnalyticsEvent.type, AnalyticsEvent.name, value)
            .where(*self.event_where)
            .group_by(AnalyticsEvent.type, AnalyticsEvent.name)
            .order_by(value.desc())
            .limit(CUSTOM_EVENT_LIMIT)
        )
        return [
            {"type": row.type, "name": row.name, "value": row.value}
            for row in (await self.db.execute(stmt)).all()
        ]

    async def _recent_sessions(self) -> List[Dict[str, Any]]:
        stmt = (
            select(AnalyticsSession)
            .where(*self.session_where)
            .order_by(AnalyticsSession.started_at.desc())
            .limit(DEFAULT_QUERY_LIMITS["recent_sessions"])
        )
        sessions = (await self.db.execute(stmt)).scalars().all()
        return [
            {
                "id": s.id,
                "started_at": s.started_at,
                "referrer": s.referrer,
                "utm_source": s.utm_source,
                "screen_width": s.screen_width,
                "screen_height": s.screen_height,
                "language": s.language,
            }
            for s in sessions
        ]

    # =========================================================================
    # REVENUE
    # =========================================================================

    async def _revenue_by_session_column(self, column) -> List[Dict[str, Any]]:
        revenue = func.coalesce(func.sum(Payment.amount), 0).label("revenue")
        stmt = (
            select(column.label("label"), revenue)
            .select_from(Payment)
            .join(AnalyticsSession, Payment.session_id == AnalyticsSession.id)
            .where(*self.payment_where, column.isnot(None))
            .group_by(column)
            .order_by(revenue.desc())
            .limit(TOP_LIST_LIMIT)
        )
        return [{"label": row.label or "Unknown", "value": int(row.revenue)} for row in (await self.db.execute(stmt)).all()]

    async def _revenue_by_channel(self) -> List[Dict[str, Any]]:
        revenue = func.coalesce(func.sum(Payment.amount), 0).label("revenue")
        stmt = (
            select(AnalyticsSession.referrer, AnalyticsSession.utm_source, AnalyticsSession.utm_medium, revenue)
            .select_from(Payment)
            .join(AnalyticsSession, Payment.session_id == AnalyticsSession.id)
            .where(*self.payment_where)
            .group_by(AnalyticsSession.referrer, AnalyticsSession.utm_source, AnalyticsSession.utm_medium)
            .order_by(revenue.desc())
            .limit(DEFAULT_QUERY_LIMITS["channels"])
        )
        rows = (await self.db.execute(stmt)).all()
        return _merge_sorted(
            (classify_channel(row.referrer, row.utm_source, row.utm_medium), row.revenue) for row in rows
        )

    def _session_pages(self):
        """Distinct (session, pathname, url) visited in range; one row per page per session."""
        return (
            select(Pageview.session_id, Pageview.pathname, Pageview.url)
            .where(
                Pageview.website_id == self.site.id,
                Pageview.timestamp >= self.range.start,
                Pageview.timestamp <= self.range.end,
            )
            .distinct()
            .subquery()
        )

    async def _revenue_by_page(self) -> List[Dict[str, Any]]:
        pages = (
            select(Pageview.session_id, Pageview.pathname)
            .where(
                Pageview.website_id == self.site.id,
                Pageview.timestamp >= self.range.start,
                Pageview.timestamp <= self.range.end,
            )
            .distinct()
            .subquery()
        )
        revenue = func.coalesce(func.sum(Payment.amount), 0).label("revenue")
        stmt = (
            select(pages.c.pathname, revenue)
            .select_from(Payment)
            .join(pages, pages.c.session_id == Payment.session_id)
            .where(*self.payment_where)
            .group_by(pages.c.pathname)
            .order_by(revenue.desc())
            .limit(TOP_LIST_LIMIT)
        )
        return [{"label": row.pathname or "/", "value": int(row.revenue)} for row in (await self.db.execute(stmt)).all()]

    async def _revenue_by_hostname(self) -> List[Dict[str, Any]]:
        pages = self._session_pages()
        stmt = (
            select(Payment.id, Payment.amount, pages.c.url)
            .select_from(Payment)
            .join(pages, pages.c.session_id == Payment.session_id)
            .where(*self.payment_where)
            .limit(DEFAULT_QUERY_LIMITS["pageviews"])
        )
        hosts_by_payment: Dict[Any, Tuple[int, set]] = {}
        for row in (await self.db.execute(stmt)).all():
            hostname = referrer_hostname(row.url)
            label = strip_www(hostname) if hostname else self.site.domain
            amount, hosts = hosts_by_payment.setdefault(row.id, (int(row.amount), set()))
            hosts.add(label)

        pairs = ((host, amount) for amount, hosts in hosts_by_payment.values() for host in hosts)
        return _merge_sorted(pairs)[:TOP_LIST_LIMIT]

    # =========================================================================
    # TIME SERIES
    # =========================================================================

    async def time_series(self, granularity: str) -> List[Dict[str, Any]]:
        zone = get_zone(self.site.timezone)

        pageview_ts = (
            await self.db.execute(
                select(Pageview.timestamp).where(*self.pageview_where).limit(DEFAULT_QUERY_LIMITS["pageviews"])
            )
        ).scalars().all()
        visitor_rows = (
            await self.db.execute(
                select(Visitor.id, Visitor.last_seen).where(*self.visitor_where).limit(DEFAULT_QUERY_LIMITS["visitors"])
            )
        ).all()
        payment_rows = (
            await self.db.execute(
                select(Payment.timestamp, Payment.amount).where(*self.payment_where).limit(DEFAULT_QUERY_LIMITS["pageviews"])
            )
        ).all()

        return build_time_series(
            self.range.start,
            self.range.end,
            granularity,
            zone,
            pageviews=count_by_bucket(pageview_ts, granularity, zone),
            visitors=distinct_by_bucket(((row.id, row.last_seen) for row in visitor_rows), granularity, zone),
            revenue=sum_by_bucket(((row.timestamp, row.amount) for row in payment_rows), granularity, zone),
        )

    # =========================================================================
    # PUBLIC ENTRY POINTS
    # =========================================================================

    async def stats_bundle(self, granularity: str) -> Dict[str, Any]:
        logger.info(
            f"[STATS] Bundle for {self.site.domain} "
            f"{self.range.start.isoformat()}..{self.range.end.isoformat()} ({granularity})"
        )
        return {
            "website": {"id": self.site.id, "domain": self.site.domain, "timezone": self.site.timezone},
            "stats": {
                "visitors": await self.visitor_count(),
                "pageviews": await self.pageview_count(),
                "sessions": await self.session_count(),
                "avg_session_duration": await self.avg_session_duration_ms(),
                "online": await self.online_count(),
                "revenue": await self.total_revenue(),
                "customers": await self.customer_count(),
            },
            "top_pages": await self._pages(TOP_LIST_LIMIT),
            "entry_pages": await self._entry_pages(TOP_LIST_LIMIT),
            "exit_links": await self._exit_links(TOP_LIST_LIMIT),
            "top_referrers": await self._referrers(TOP_LIST_LIMIT, candidates=REFERRER_CANDIDATES),
            "channel_data": await self._channels(),
            "revenue_by_channel": await self._revenue_by_channel(),
            "campaign_data": await self._campaigns(CAMPAIGN_LIMIT),
            "custom_events": await self._custom_events(),
            "recent_sessions": await self._recent_sessions(),
            "device_stats": await self._screens(TOP_LIST_LIMIT),
            "browser_stats": await self._session_dimension(AnalyticsSession.browser, TOP_LIST_LIMIT),
            "os_stats": await self._session_dimension(AnalyticsSession.os, TOP_LIST_LIMIT),
            "device_type_stats": await self._session_dimension(AnalyticsSession.device_type, TOP_LIST_LIMIT),
            "country_stats": await self._session_dimension(AnalyticsSession.country, TOP_LIST_LIMIT),
            "region_stats": await self._session_dimension(AnalyticsSession.region, TOP_LIST_LIMIT),
            "city_stats": await self._session_dimension(AnalyticsSession.city, TOP_LIST_LIMIT),
            "revenue_by_country": await self._revenue_by_session_column(AnalyticsSession.country),
            "revenue_by_region": await self._revenue_by_session_column(AnalyticsSession.region),
            "revenue_by_city": await self._revenue_by_session_column(AnalyticsSession.city),
            "revenue_by_os": await self._revenue_by_session_column(AnalyticsSession.os),
            "revenue_by_browser": await self._revenue_by_session_column(AnalyticsSession.browser),
            "revenue_by_device_type": await self._revenue_by_session_column(AnalyticsSession.device_type),
            "revenue_by_hostname": await self._revenue_by_hostname(),
            "revenue_by_page": await self._revenue_by_page(),
            "time_series": await self.time_series(granularity),
            "timezone": self.site.timezone,
            "date_range": self.range.to_response(),
        }

    async def metric(self, metric_type: str, search: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """One breakdown dimension as [{label, value}]."""
        if metric_type == "pages":
            return await self._pages(limit, search)
        if metric_type == "entry_pages":
            return await self._entry_pages(limit, search)
        if metric_type == "exit_links":
            return await self._exit_links(limit, search)
        if metric_type == "referrers":
            return await self._referrers(limit, search)
        if metric_type == "channels":
            return await self._channels(limit, search)
        if metric_type == "campaigns":
            return await self._campaigns(limit, search)
        if metric_type == "countries":
            return await self._session_dimension(AnalyticsSession.country, limit, search)
        if metric_type == "regions":
            return await self._session_dimension(AnalyticsSession.region, limit, search)
        if metric_type == "cities":
            return await self._session_dimension(AnalyticsSession.city, limit, search)
        if metric_type == "browsers":
            return await self._session_dimension(AnalyticsSession.browser, limit, search)
        if metric_type == "os":
            return await self._session_dimension(AnalyticsSession.os, limit, search)
        if metric_type == "devices":
            return await self._session_dimension(AnalyticsSession.device_type, limit, search)
        if metric_type == "screens":
            return await self._screens(limit, search)
        if metric_type == "hostnames":
            if not _matches(self.site.domain, search):
                return []
            return [{"label": self.site.domain, "value": await self.visitor_count()}]
        logger.warning(f"[STATS] Unknown metric type {metric_type!r}")
        return []
