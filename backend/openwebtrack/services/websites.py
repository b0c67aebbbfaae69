"""
Website Management
==================

Registration, settings, deletion and data wipes for tracked websites.

WHAT:
    The owner-facing writes on the `websites` table: register a domain, edit
    timezone / exclusion lists / notification settings, delete the site, or
    wipe its analytics rows while keeping the site itself.

WHY:
    The ingestion pipeline enforces exclusion lists and spike settings and the
    aggregation layer buckets by the site timezone; this module is the only
    place those values are written.

DELETION:
    Rows are removed child-first (payments, pageviews, events, sessions,
    visitors, team members) instead of relying on ON DELETE CASCADE, so the
    result is the same on backends that do not enforce foreign keys.

REFERENCES:
    - routers/websites.py: HTTP endpoints
    - deps.py: get_accessible_website / get_owned_website
    - schemas.py: WebsiteCreate, WebsiteUpdate, NotificationSettings
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import ConflictError, ValidationError
from ..models import (
    AnalyticsEvent,
    AnalyticsSession,
    Pageview,
    Payment,
    TeamMember,
    Visitor,
    Website,
    default_notifications,
)
from ..schemas import WebsiteCreate, WebsiteOut, WebsiteUpdate, is_valid_domain
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)


def website_out(site: Website, **extra: Any) -> WebsiteOut:
    return WebsiteOut(
        id=site.id,
        domain=site.domain,
        user_id=site.user_id,
        timezone=site.timezone,
        excluded_ips=site.excluded_ips or [],
        excluded_paths=site.excluded_paths or [],
        excluded_countries=site.excluded_countries or [],
        notifications=site.notifications or default_notifications(),
        created_at=site.created_at,
        **extra,
    )


def _check_domain(domain: str, allow_local: bool) -> None:
    if not is_valid_domain(domain, allow_local=allow_local):
        raise ValidationError("domain: Invalid domain")


async def _ensure_domain_free(db: AsyncSession, domain: str) -> None:
    existing = (await db.execute(select(Website.id).where(Website.domain == domain).limit(1))).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("Domain already registered")


# =============================================================================
# LIST / CREATE
# =============================================================================

async def list_websites(
    db: AsyncSession,
    user_id: uuid.UUID,
    with_stats: bool = False,
    now: Optional[datetime] = None,
) -> List[WebsiteOut]:
    """Websites owned by `user_id`, newest first.

    With `with_stats`, each entry carries `visitors24h`: visitors whose
    last-seen falls within the 24 hours before `now`.
    """
    sites = (
        await db.execute(
            select(Website).where(Website.user_id == user_id).order_by(Website.created_at.desc())
        )
    ).scalars().all()

    if not with_stats:
        return [website_out(site) for site in sites]

    counts: Dict[uuid.UUID, int] = {}
    if sites:
        since = (now or utcnow()) - timedelta(hours=24)
        rows = (
            await db.execute(
                select(Visitor.website_id, func.count())
                .where(Visitor.website_id.in_([s.id for s in sites]), Visitor.last_seen >= since)
                .group_by(Visitor.website_id)
            )
        ).all()
        counts = {website_id: count for website_id, count in rows}

    return [website_out(site, visitors24h=counts.get(site.id, 0)) for site in sites]


async def create_website(
    db: AsyncSession,
    owner_id: uuid.UUID,
    data: WebsiteCreate,
    allow_local: bool = False,
) -> Website:
    """Register a domain for `owner_id`.

    Raises:
        ValidationError: Domain is not a hostname (or is local outside development)
        ConflictError: Domain already registered by anyone
    """
    _check_domain(data.domain, allow_local)
    await _ensure_domain_free(db, data.domain)

    site = Website(
        domain=data.domain,
        user_id=owner_id,
        timezone=data.timezone,
        excluded_ips=[],
        excluded_paths=[],
        excluded_countries=[],
        notifications=default_notifications(),
    )
    db.add(site)
    try:
        await db.commit()
    except IntegrityError:
        # Lost a race with another registration of the same domain
        await db.rollback()
        raise ConflictError("Domain already registered")

    await db.refresh(site)
    logger.info(f"[WEBSITES] Registered {site.domain} ({site.id}) for user {owner_id}")
    return site


# =============================================================================
# UPDATE
# =============================================================================

async def update_website(
    db: AsyncSession,
    site: Website,
    data: WebsiteUpdate,
    allow_local: bool = False,
) -> Website:
    """Apply the fields present in `data`; absent (or null) fields keep their value."""
    changes = {key: value for key, value in data.model_dump(exclude_unset=True).items() if value is not None}

    if "domain" in changes and changes["domain"] != site.domain:
        _check_domain(changes["domain"], allow_local)
        await _ensure_domain_free(db, changes["domain"])
        site.domain = changes["domain"]
    if "timezone" in changes:
        site.timezone = changes["timezone"]
    for field in ("excluded_ips", "excluded_paths", "excluded_countries"):
        if field in changes:
            setattr(site, field, [rule.strip() for rule in changes[field] if rule.strip()])
    if data.notifications is not None:
        site.notifications = data.notifications.model_dump(by_alias=True)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("Domain already registered")

    await db.refresh(site)
    logger.info(f"[WEBSITES] Updated {site.domain}: {sorted(changes)}")
    return site


# =============================================================================
# DELETE / WIPE
# =============================================================================

async def _delete_analytics_rows(db: AsyncSession, site_id: uuid.UUID) -> None:
    for model in (Payment, Pageview, AnalyticsEvent, AnalyticsSession, Visitor):
        await db.execute(delete(model).where(model.website_id == site_id))


async def wipe_website_data(db: AsyncSession, site: Website) -> None:
    """Delete every visitor, session, pageview, event and payment of the site."""
    await _delete_analytics_rows(db, site.id)
    await db.commit()
    logger.info(f"[WEBSITES] Wiped analytics data for {site.domain}")


async def delete_website(db: AsyncSession, site: Website) -> None:
    """Delete the site together with its analytics rows and team memberships."""
    site_id, domain = site.id, site.domain
    await _delete_analytics_rows(db, site_id)
    await db.execute(delete(TeamMember).where(TeamMember.website_id == site_id))
    await db.execute(delete(Website).where(Website.id == site_id))
    await db.commit()
    logger.info(f"[WEBSITES] Deleted {domain} ({site_id})")
