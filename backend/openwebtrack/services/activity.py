"""Live activity feeds: recent events and recent visitors.

WHAT: The two lists on the dashboard's "realtime" panel, and the
      per-visitor journey behind each entry.
WHY: Owners want to see who is on the site and what they just did, with
     friendly visitor names and their latest location/device.
REFERENCES:
  - routers/activity.py: HTTP endpoints
  - services/visitor_profile.py: Name/avatar fallbacks
  - tests/test_activity.py

Visitors are aggregated in Python from the most recent sessions so the
query stays portable (no array_agg / bool_or).
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..constants import DEFAULT_QUERY_LIMITS
from ..exceptions import NotFoundError
from ..models import AnalyticsEvent, AnalyticsSession, Pageview, Visitor, Website
from .visitor_profile import generate_avatar_url, generate_visitor_name

logger = logging.getLogger(__name__)


async def recent_events(db: AsyncSession, site: Website, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
    """Latest events with the visitor and session location that produced them."""
    stmt = (
        select(AnalyticsEvent, AnalyticsSession.country, AnalyticsSession.city, Visitor.id, Visitor.name, Visitor.avatar)
        .join(AnalyticsSession, AnalyticsEvent.session_id == AnalyticsSession.id)
        .join(
            Visitor,
            and_(
                Visitor.website_id == AnalyticsSession.website_id,
                Visitor.id == AnalyticsSession.visitor_id,
            ),
        )
        .where(AnalyticsEvent.website_id == site.id)
        .order_by(AnalyticsEvent.timestamp.desc())
        .limit(limit)
        .offset(offset)
    )
    rows = (await db.execute(stmt)).all()

    events = []
    for event, country, city, visitor_id, name, avatar in rows:
        events.append(
            {
                "id": event.id,
                "type": event.type,
                "name": event.name or event.type,
                "data": event.data,
                "timestamp": event.timestamp,
                "visitor": {
                    "id": visitor_id,
                    "name": name or generate_visitor_name(visitor_id),
                    "avatar": avatar or generate_avatar_url(visitor_id),
                    "country": country or "Unknown",
                    "city": city,
                },
            }
        )
    return events


async def recent_visitors(db: AsyncSession, site: Website, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Visitors ordered by their latest session activity.

    Location and device come from the latest session; referrer from the
    latest session that has one; `is_pwa` is true if any session was a PWA.
    """
    limit = limit or DEFAULT_QUERY_LIMITS["visitor_list"]
    sessions = (
        await db.execute(
            select(AnalyticsSession)
            .where(AnalyticsSession.website_id == site.id)
            .order_by(AnalyticsSession.last_activity_at.desc())
            .limit(DEFAULT_QUERY_LIMITS["sessions"])
        )
    ).scalars().all()

    by_visitor: Dict[str, Dict[str, Any]] = {}
    for s in sessions:
        entry = by_visitor.get(s.visitor_id)
        if entry is None:
            if len(by_visitor) >= limit:
                continue
            by_visitor[s.visitor_id] = {
                "visitor_id": s.visitor_id,
                "last_activity_at": s.last_activity_at,
                "country": s.country,
                "region": s.region,
                "city": s.city,
                "device": s.device_type,
                "os": s.os,
                "browser": s.browser,
                "referrer": s.referrer,
                "screen_width": s.screen_width,
                "screen_height": s.screen_height,
                "is_pwa": bool(s.is_pwa),
            }
            continue
        if entry["referrer"] is None and s.referrer:
            entry["referrer"] = s.referrer
        if s.is_pwa:
            entry["is_pwa"] = True

    if not by_visitor:
        return []

    profiles = {
        v.id: v
        for v in (
            await db.execute(
                select(Visitor).where(Visitor.website_id == site.id, Visitor.id.in_(list(by_visitor)))
            )
        ).scalars().all()
    }

    result = []
    for visitor_id, entry in by_visitor.items():
        profile = profiles.get(visitor_id)
        entry["name"] = profile.name if profile else None
        entry["avatar"] = profile.avatar if profile else None
        entry["is_customer"] = bool(profile.is_customer) if profile else False
        result.append(entry)
    return result


async def visitor_journey(db: AsyncSession, site: Website, visitor_id: str) -> Dict[str, Any]:
    """One visitor's profile and every session, newest first, with the
    pageviews and events of each session merged in time order.

    Activities are loaded for the newest `journey_sessions` sessions only.
    """
    visitor = (
        await db.execute(select(Visitor).where(Visitor.website_id == site.id, Visitor.id == visitor_id))
    ).scalar_one_or_none()
    if visitor is None:
        raise NotFoundError("Visitor not found")

    sessions = (
        await db.execute(
            select(AnalyticsSession)
            .where(AnalyticsSession.website_id == site.id, AnalyticsSession.visitor_id == visitor_id)
            .order_by(AnalyticsSession.started_at.desc())
        )
    ).scalars().all()

    activities: Dict[str, List[Dict[str, Any]]] = {s.id: [] for s in sessions}
    session_ids = [s.id for s in sessions[:DEFAULT_QUERY_LIMITS["journey_sessions"]]]
    if session_ids:
        pageviews = (
            await db.execute(select(Pageview).where(Pageview.session_id.in_(session_ids)))
        ).scalars().all()
        events = (
            await db.execute(select(AnalyticsEvent).where(AnalyticsEvent.session_id.in_(session_ids)))
        ).scalars().all()

        for p in pageviews:
            activities[p.session_id].append(
                {
                    "activity_type": "pageview",
                    "id": p.id,
                    "timestamp": p.timestamp,
                    "pathname": p.pathname,
                    "url": p.url,
                    "title": p.title,
                }
            )
        for e in events:
            activities[e.session_id].append(
                {
                    "activity_type": "event",
                    "id": e.id,
                    "timestamp": e.timestamp,
                    "type": e.type,
                    "name": e.name,
                    "data": e.data,
                }
            )

    journey = []
    for s in sessions:
        journey.append(
            {
                "id": s.id,
                "started_at": s.started_at,
                "last_activity_at": s.last_activity_at,
                "referrer": s.referrer,
                "utm_source": s.utm_source,
                "utm_medium": s.utm_medium,
                "utm_campaign": s.utm_campaign,
                "browser": s.browser,
                "os": s.os,
                "device_type": s.device_type,
                "country": s.country,
                "region": s.region,
                "city": s.city,
                "is_pwa": bool(s.is_pwa),
                "activities": sorted(activities[s.id], key=lambda a: a["timestamp"]),
            }
        )

    return {
        "visitor": {
            "id": visitor.id,
            "name": visitor.name or generate_visitor_name(visitor.id),
            "avatar": visitor.avatar or generate_avatar_url(visitor.id),
            "is_customer": bool(visitor.is_customer),
            "first_seen": visitor.first_seen,
            "last_seen": visitor.last_seen,
        },
        "journey": journey,
    }
