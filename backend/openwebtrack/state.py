"""
Application State
=================

Process-wide collaborators for the tracking endpoint.

WHY this exists:
- The rate limiter, GeoIP cache and spike monitor are in-memory and must
  outlive a single request
- The GeoIP providers share one httpx.AsyncClient (connection pooling)
- Tests build their own TrackerState with fake providers and put it on
  `app.state.tracker`, so nothing here is a module-level singleton

WHAT it stores:
- rate_limiter: FixedWindowRateLimiter or RedisRateLimiter
- geo_resolver: GeoResolver over GeoCache + ipwho.is / ip-api.com
- spike_monitor: TrafficSpikeMonitor
- email_sender: EmailSender (resend)
- pipeline: IngestionPipeline wired to all of the above

WHERE it's used:
- main.py: Built in the lifespan, swept every SWEEP_INTERVAL_SECONDS
- deps.get_tracker_state: Hands it to routers
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import async_sessionmaker

from .deps import Settings
from .services.geoip import GeoCache, GeoResolver, default_providers
from .services.identity import IdentityResolver
from .services.ingestion import IngestionPipeline
from .services.notifications import EmailSender
from .services.rate_limiter import FixedWindowRateLimiter, RateLimiter, RedisRateLimiter
from .services.spike_monitor import TrafficSpikeMonitor

logger = logging.getLogger(__name__)


@dataclass
class TrackerState:
    rate_limiter: RateLimiter
    geo_resolver: GeoResolver
    spike_monitor: TrafficSpikeMonitor
    email_sender: EmailSender
    pipeline: IngestionPipeline
    http_client: Optional[httpx.AsyncClient] = None
    redis_client: Optional[Redis] = None
    sweep_task: Optional[asyncio.Task] = field(default=None, repr=False)

    def evict(self) -> dict:
        """Drop expired in-memory state; returns removed counts per component."""
        return {
            "rate_limiter": self.rate_limiter.evict(),
            "geo_cache": self.geo_resolver.evict(),
            "spike_monitor": self.spike_monitor.evict(),
        }

    def start_sweeper(self, interval_seconds: float) -> None:
        self.sweep_task = asyncio.create_task(self._sweep_forever(interval_seconds))

    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.evict()
            if any(removed.values()):
                logger.debug(f"[STARTUP] Sweep removed {removed}")

    async def aclose(self) -> None:
        if self.sweep_task is not None:
            self.sweep_task.cancel()
            try:
                await self.sweep_task
            except asyncio.CancelledError:
                pass
            self.sweep_task = None

        await self.pipeline.drain()
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.redis_client is not None:
            await self.redis_client.aclose()


def build_rate_limiter(settings: Settings) -> tuple:
    """Return (limiter, redis_client) for RATE_LIMIT_BACKEND."""
    if settings.RATE_LIMIT_BACKEND == "redis":
        redis_client = Redis.from_url(settings.REDIS_URL, decode_responses=True)
        logger.info("[RATE_LIMIT] Using Redis backend")
        return (
            RedisRateLimiter(
                redis_client,
                max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
                window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            ),
            redis_client,
        )
    return (
        FixedWindowRateLimiter(
            max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        ),
        None,
    )


def build_tracker_state(
    settings: Settings,
    geo_resolver: Optional[GeoResolver] = None,
    email_sender: Optional[EmailSender] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> TrackerState:
    """Wire every collaborator from settings. Pass `geo_resolver` or
    `email_sender` to replace the network-backed defaults, and
    `session_factory` for the sessions background tasks open."""
    if session_factory is None:
        from .database import AsyncSessionLocal
        session_factory = AsyncSessionLocal

    rate_limiter, redis_client = build_rate_limiter(settings)

    http_client = None
    if geo_resolver is None:
        http_client = httpx.AsyncClient()
        geo_resolver = GeoResolver(
            default_providers(http_client, timeout=settings.GEO_PROVIDER_TIMEOUT_SECONDS),
            GeoCache(ttl_seconds=settings.GEO_CACHE_TTL_SECONDS, max_size=settings.GEO_CACHE_MAX_SIZE),
        )

    email_sender = email_sender or EmailSender.from_settings(settings)
    spike_monitor = TrafficSpikeMonitor(cooldown_seconds=settings.SPIKE_COOLDOWN_SECONDS)

    pipeline = IngestionPipeline(
        rate_limiter=rate_limiter,
        geo_resolver=geo_resolver,
        identity_resolver=IdentityResolver(settings.SESSION_EXPIRY_MINUTES),
        spike_monitor=spike_monitor,
        email_sender=email_sender,
        frontend_url=settings.FRONTEND_URL,
        session_factory=session_factory,
    )

    return TrackerState(
        rate_limiter=rate_limiter,
        geo_resolver=geo_resolver,
        spike_monitor=spike_monitor,
        email_sender=email_sender,
        pipeline=pipeline,
        http_client=http_client,
        redis_client=redis_client,
    )
