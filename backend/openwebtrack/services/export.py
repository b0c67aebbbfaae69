"""CSV export of a website's raw analytics rows.

WHAT:
    One CSV document with four sections (VISITORS, SESSIONS, PAGEVIEWS,
    EVENTS), each a title line, a header row and up to `export_rows` rows,
    newest first, separated by a blank line.
WHY:
    Owners can take their data elsewhere without database access.
REFERENCES:
    - routers/websites.py: GET /api/websites/{id}/export
"""

import csv
import io
import json
import re
from datetime import datetime
from typing import Any, Iterable, List, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..constants import DEFAULT_QUERY_LIMITS
from ..models import AnalyticsEvent, AnalyticsSession, Pageview, Visitor, Website

VISITOR_COLUMNS = ["id", "name", "avatar", "first_seen", "last_seen"]

SESSION_COLUMNS = [
    "id", "visitor_id", "started_at", "last_activity_at", "referrer",
    "utm_source", "utm_medium", "utm_campaign", "browser", "browser_version",
    "os", "os_version", "device_type", "screen_width", "screen_height",
    "language", "timezone", "country", "region", "city", "is_pwa",
]

PAGEVIEW_COLUMNS = [
    "id", "session_id", "url", "pathname", "referrer", "title",
    "viewport_width", "viewport_height", "timestamp",
]

EVENT_COLUMNS = ["id", "session_id", "type", "name", "data", "timestamp"]


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _write_section(writer, title: str, columns: Sequence[str], rows: Iterable[Any]) -> None:
    writer.writerow([title])
    writer.writerow(columns)
    for row in rows:
        writer.writerow([_cell(getattr(row, column)) for column in columns])


async def _latest(db: AsyncSession, model, order_column, site_id) -> List[Any]:
    return (
        await db.execute(
            select(model)
            .where(model.website_id == site_id)
            .order_by(order_column.desc())
            .limit(DEFAULT_QUERY_LIMITS["export_rows"])
        )
    ).scalars().all()


async def export_website_csv(db: AsyncSession, site: Website) -> str:
    visitors = await _latest(db, Visitor, Visitor.last_seen, site.id)
    sessions = await _latest(db, AnalyticsSession, AnalyticsSession.started_at, site.id)
    pageviews = await _latest(db, Pageview, Pageview.timestamp, site.id)
    events = await _latest(db, AnalyticsEvent, AnalyticsEvent.timestamp, site.id)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    _write_section(writer, "VISITORS", VISITOR_COLUMNS, visitors)
    writer.writerow([])
    _write_section(writer, "SESSIONS", SESSION_COLUMNS, sessions)
    writer.writerow([])
    _write_section(writer, "PAGEVIEWS", PAGEVIEW_COLUMNS, pageviews)
    writer.writerow([])
    _write_section(writer, "EVENTS", EVENT_COLUMNS, events)
    return buffer.getvalue()


def export_filename(site: Website, today: datetime) -> str:
    """Attachment name, e.g. example_com_analytics_2024-03-10.csv for example.com."""
    safe_domain = re.sub(r"[^a-z0-9]", "_", site.domain, flags=re.IGNORECASE)
    return f"{safe_domain}_analytics_{today.date().isoformat()}.csv"
