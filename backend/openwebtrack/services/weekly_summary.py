"""Weekly summary emails.

WHAT: For every website with `weeklySummary.enabled`, computes the last
      7 days of visitors, pageviews, top pages, referrers and countries and
      emails the owner.
WHY: A short digest keeps owners engaged without opening the dashboard.
REFERENCES:
  - routers/cron.py: GET /api/cron/weekly-summary (Bearer CRON_SECRET)
  - services/notifications.py: WeeklySummaryEmail, EmailSender
  - tests/test_weekly_summary.py
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import AnalyticsSession, Pageview, User, Website
from ..telemetry import capture_exception
from ..utils.clock import utcnow
from .notifications import EmailSender, WeeklySummaryEmail

logger = logging.getLogger(__name__)

SUMMARY_DAYS = 7
SUMMARY_TOP_N = 5


@dataclass
class WeeklyReport:
    total_visitors: int
    total_pageviews: int
    top_pages: List[Tuple[str, int]]
    top_referrers: List[Tuple[str, int]]
    top_countries: List[Tuple[str, int]]


@dataclass
class WeeklySummaryResult:
    processed: int = 0
    sent: int = 0
    failed: int = 0

    @property
    def message(self) -> str:
        return f"Processed {self.processed} websites. Sent: {self.sent}, Failed: {self.failed}"


async def build_weekly_report(db: AsyncSession, website_id, since: datetime, limit: int = SUMMARY_TOP_N) -> WeeklyReport:
    session_window = [AnalyticsSession.website_id == website_id, AnalyticsSession.started_at >= since]
    pageview_window = [Pageview.website_id == website_id, Pageview.timestamp >= since]

    visitors = (
        await db.execute(select(func.count(distinct(AnalyticsSession.visitor_id))).where(*session_window))
    ).scalar() or 0
    pageviews = (await db.execute(select(func.count()).select_from(Pageview).where(*pageview_window))).scalar() or 0

    views = func.count().label("views")
    top_pages = (
        await db.execute(
            select(Pageview.pathname, views).where(*pageview_window)
            .group_by(Pageview.pathname).order_by(views.desc()).limit(limit)
        )
    ).all()

    visits = func.count().label("visits")
    top_referrers = (
        await db.execute(
            select(AnalyticsSession.referrer, visits)
            .where(*session_window, AnalyticsSession.referrer.isnot(None))
            .group_by(AnalyticsSession.referrer).order_by(visits.desc()).limit(limit)
        )
    ).all()
    top_countries = (
        await db.execute(
            select(AnalyticsSession.country, visits)
            .where(*session_window, AnalyticsSession.country.isnot(None))
            .group_by(AnalyticsSession.country).order_by(visits.desc()).limit(limit)
        )
    ).all()

    return WeeklyReport(
        total_visitors=int(visitors),
        total_pageviews=int(pageviews),
        top_pages=[(row.pathname or "/", int(row.views)) for row in top_pages],
        top_referrers=[(row.referrer, int(row.visits)) for row in top_referrers],
        top_countries=[(row.country, int(row.visits)) for row in top_countries],
    )


def _format_day(value: datetime) -> str:
    return f"{value.strftime('%b')} {value.day}, {value.year}"


async def send_weekly_summaries(
    db: AsyncSession,
    sender: EmailSender,
    frontend_url: str,
    now: Optional[datetime] = None,
) -> WeeklySummaryResult:
    """Email every opted-in owner. One failing site never stops the run."""
    now = now or utcnow()
    since = now - timedelta(days=SUMMARY_DAYS)

    rows = (
        await db.execute(select(Website, User.email).join(User, Website.user_id == User.id))
    ).all()
    targets = [(site, email) for site, email in rows if site.weekly_summary_enabled]

    result = WeeklySummaryResult(processed=len(targets))
    for site, owner_email in targets:
        try:
            report = await build_weekly_report(db, site.id, since)
        except SQLAlchemyError as e:
            logger.warning(f"[WEEKLY] Report failed for {site.domain}: {e}")
            capture_exception(e, extra={"website_id": str(site.id)})
            await db.rollback()
            result.failed += 1
            continue

        email = WeeklySummaryEmail(
            domain=site.domain,
            period_start=_format_day(since),
            period_end=_format_day(now),
            total_visitors=report.total_visitors,
            total_pageviews=report.total_pageviews,
            dashboard_url=f"{frontend_url.rstrip('/')}/dashboard/{site.id}",
            top_pages=report.top_pages,
            top_referrers=report.top_referrers,
            top_countries=report.top_countries,
        )
        message_id = await sender.send_email(owner_email, email.subject, email.render_html(), email.render_text())
        if message_id:
            result.sent += 1
        else:
            result.failed += 1

    logger.info(f"[WEEKLY] {result.message}")
    return result
