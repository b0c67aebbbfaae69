"""
Tracking Ingestion Pipeline
===========================

One call per payload posted to /api/track.

PIPELINE (fixed order)
----------------------
    1. Parse + validate + sanitize          -> 400 (no side effects)
    2. Resolve website by id, else domain   -> 404
    3. Rate limit (website, client IP)      -> 429
    4. Pathname + UTM from href/referrer
    5. Exclusion rules (IP -> path -> country)
                                            -> {success, excluded} (nothing written)
    6. Domain check (subdomains and local dev hosts allowed)
                                            -> 403
    7. GeoIP (cache-backed, never fails)
    8. Identity: visitor + session rows (services/identity.py)
    9. Event row by type:
         heartbeat -> nothing beyond the session touch
         pageview  -> Pageview
         payment   -> Payment, visitor flagged as customer
         other     -> AnalyticsEvent
   10. Traffic spike count on new sessions; the owner lookup and email run
       as a background task with their own datastore session

ERROR SEMANTICS
---------------
Steps 1-6 write nothing. A datastore failure after step 8 leaves the
visitor/session rows in place; a retry from the client converges on the same
rows. Datastore errors surface as PersistenceError (500).

RELATED FILES
-------------
- routers/track.py: HTTP surface and CORS
- state.py: Builds the pipeline with its process-wide collaborators
- tests/test_track.py
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..constants import DEFAULT_CURRENCY
from ..exceptions import AuthorizationError, NotFoundError, PersistenceError, RateLimitError
from ..models import AnalyticsEvent, EventTypeEnum, Pageview, Payment, User, Visitor, Website
from ..schemas import TrackingPayload, parse_tracking_payload
from ..telemetry import capture_exception
from ..utils.clock import utcnow
from .attribution import extract_pathname, extract_utm_params
from .exclusion import should_exclude
from .geoip import GeoData, GeoResolver, get_client_ip
from .identity import IdentityResolver, IdentityResult, SessionSnapshot
from .notifications import EmailSender
from .rate_limiter import RateLimiter
from .spike_monitor import TrafficSpikeMonitor, send_spike_alert

logger = logging.getLogger(__name__)

LOCAL_DEV_HOSTS = ("localhost", "127.0.0.1")


@dataclass(frozen=True)
class TrackResult:
    excluded: bool = False
    session_id: Optional[str] = None
    identity: Optional[IdentityResult] = None


# =============================================================================
# DOMAIN MATCHING
# =============================================================================

def normalize_domain(domain: str) -> str:
    """Lowercase, strip a leading "www." and any port."""
    normalized = domain.strip().lower()
    if normalized.startswith("www."):
        normalized = normalized[4:]
    return normalized.split(":")[0]


def is_local_dev_host(domain: str) -> bool:
    return domain in LOCAL_DEV_HOSTS or domain.endswith(".localhost")


def domain_matches(request_domain: str, site_domain: str) -> bool:
    """True when the request domain is the site, a subdomain of it, or a dev host."""
    requested = normalize_domain(request_domain)
    registered = normalize_domain(site_domain)
    if is_local_dev_host(requested):
        return True
    return requested == registered or requested.endswith("." + registered)


# =============================================================================
# PIPELINE
# =============================================================================

class IngestionPipeline:
    """
    Usage:
        pipeline = IngestionPipeline(limiter, geo, IdentityResolver(30), spikes, sender,
                                     frontend_url, session_factory=AsyncSessionLocal)
        result = await pipeline.ingest(db, await request.body(), request.headers, request.client.host)
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        geo_resolver: GeoResolver,
        identity_resolver: IdentityResolver,
        spike_monitor: Optional[TrafficSpikeMonitor] = None,
        email_sender: Optional[EmailSender] = None,
        frontend_url: str = "http://localhost:3000",
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.rate_limiter = rate_limiter
        self.geo_resolver = geo_resolver
        self.identity_resolver = identity_resolver
        self.spike_monitor = spike_monitor
        self.email_sender = email_sender
        self.frontend_url = frontend_url
        self.session_factory = session_factory
        self._background_tasks: Set[asyncio.Task] = set()

    async def ingest(
        self,
        db: AsyncSession,
        body: bytes,
        headers: Mapping[str, str],
        socket_ip: Optional[str],
        now: Optional[datetime] = None,
    ) -> TrackResult:
        payload = parse_tracking_payload(body)
        now = now or utcnow()

        site = await self._resolve_website(db, payload)

        client_ip = get_client_ip(headers, socket_ip)
        rate_key = f"{site.id}:{client_ip or socket_ip or 'unknown'}"
        if not await self.rate_limiter.allow(rate_key):
            raise RateLimitError()

        pathname = extract_pathname(payload.href)
        utm = extract_utm_params(payload.href, payload.referrer)

        # Country rules need the location before anything is written
        geo: Optional[GeoData] = None
        if site.excluded_countries:
            geo = await self.geo_resolver.resolve(client_ip)

        if should_exclude(site, client_ip, pathname, geo):
            return TrackResult(excluded=True)

        if not domain_matches(payload.domain, site.domain):
            logger.warning(f"[TRACK] Domain mismatch: {payload.domain} posted to {site.domain}")
            raise AuthorizationError("Domain mismatch")

        if geo is None:
            geo = await self.geo_resolver.resolve(client_ip)

        snapshot = SessionSnapshot(
            referrer=payload.referrer or None,
            utm_source=utm.source,
            utm_medium=utm.medium,
            utm_campaign=utm.campaign,
            screen_width=payload.screen_width or None,
            screen_height=payload.screen_height or None,
            language=payload.language,
            timezone=payload.timezone,
            browser=payload.browser,
            browser_version=payload.browser_version,
            os=payload.os,
            os_version=payload.os_version,
            device_type=payload.device_type,
            is_pwa=bool(payload.is_pwa),
            country=geo.country,
            region=geo.region,
            city=geo.city,
        )

        try:
            identity = await self.identity_resolver.resolve(
                db, site.id, payload.visitor_id, payload.session_id, snapshot, now
            )
            await self._record_event(db, site, payload, identity.session_id, pathname, now)
        except SQLAlchemyError as e:
            logger.exception(f"[TRACK] Datastore failure for {site.domain}: {e}")
            raise PersistenceError("Failed to record event") from e

        if identity.started_session:
            self._check_traffic_spike(site, now)

        return TrackResult(session_id=identity.session_id, identity=identity)

    async def _resolve_website(self, db: AsyncSession, payload: TrackingPayload) -> Website:
        if payload.website_id is not None:
            stmt = select(Website).where(Website.id == payload.website_id)
        else:
            stmt = select(Website).where(Website.domain == normalize_domain(payload.domain))

        site = (await db.execute(stmt)).scalar_one_or_none()
        if site is None:
            raise NotFoundError("Website not found")
        return site

    async def _record_event(
        self,
        db: AsyncSession,
        site: Website,
        payload: TrackingPayload,
        session_id: str,
        pathname: str,
        now: datetime,
    ) -> None:
        if payload.type == EventTypeEnum.heartbeat:
            return

        if payload.type == EventTypeEnum.pageview:
            db.add(
                Pageview(
                    session_id=session_id,
                    website_id=site.id,
                    url=payload.href,
                    pathname=pathname,
                    referrer=payload.referrer or None,
                    title=payload.title,
                    viewport_width=payload.viewport.width if payload.viewport else None,
                    viewport_height=payload.viewport.height if payload.viewport else None,
                    timestamp=now,
                )
            )
            await db.commit()
            return

        if payload.type == EventTypeEnum.payment:
            db.add(
                Payment(
                    website_id=site.id,
                    visitor_id=payload.visitor_id,
                    session_id=session_id,
                    amount=payload.amount,
                    currency=(payload.currency or DEFAULT_CURRENCY).upper(),
                    transaction_id=payload.transaction_id,
                    timestamp=now,
                )
            )
            await db.commit()

            flipped = await db.execute(
                update(Visitor)
                .where(
                    Visitor.website_id == site.id,
                    Visitor.id == payload.visitor_id,
                    Visitor.is_customer.is_(False),
                )
                .values(is_customer=True)
            )
            await db.commit()
            if flipped.rowcount:
                logger.info(f"[TRACK] Visitor {payload.visitor_id} became a customer of {site.domain}")
            return

        db.add(
            AnalyticsEvent(
                session_id=session_id,
                website_id=site.id,
                type=payload.type.value,
                name=payload.name,
                data=payload.data,
                timestamp=now,
            )
        )
        await db.commit()

    # =========================================================================
    # TRAFFIC SPIKES
    # =========================================================================

    def _check_traffic_spike(self, site: Website, now: datetime) -> None:
        """Count the session start in memory; email the owner off the request path."""
        if self.spike_monitor is None:
            return
        settings = site.traffic_spike_settings
        if not settings.get("enabled"):
            return

        threshold = int(settings.get("threshold") or 0)
        window_seconds = int(settings.get("windowSeconds") or 60)
        count = self.spike_monitor.record_session_start(str(site.id), threshold, window_seconds)
        if count is None or self.email_sender is None or self.session_factory is None:
            return

        self._spawn(
            self._notify_owner(
                owner_id=site.user_id,
                domain=site.domain,
                website_id=str(site.id),
                visitors=count,
                threshold=threshold,
                window_seconds=window_seconds,
                detected_at=now,
            )
        )

    async def _notify_owner(
        self,
        owner_id: uuid.UUID,
        domain: str,
        website_id: str,
        visitors: int,
        threshold: int,
        window_seconds: int,
        detected_at: datetime,
    ) -> None:
        # Runs after the response; the request's session may already be closed
        try:
            async with self.session_factory() as db:
                owner_email = (
                    await db.execute(select(User.email).where(User.id == owner_id))
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.warning(f"[SPIKE] Owner lookup failed for {domain}: {e}")
            capture_exception(e, extra={"website_id": website_id})
            return

        if not owner_email:
            logger.warning(f"[SPIKE] No owner email for {domain}")
            return

        await send_spike_alert(
            self.email_sender,
            to=owner_email,
            domain=domain,
            website_id=website_id,
            visitors=visitors,
            threshold=threshold,
            window_seconds=window_seconds,
            frontend_url=self.frontend_url,
            detected_at=detected_at,
        )

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight notification tasks (shutdown and tests)."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
