"""Dependency providers and settings management."""

import logging
import uuid
from functools import lru_cache
from typing import Optional

from fastapi import Cookie, Depends, Header, Request
from jose import JWTError
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .database import get_async_db
from .exceptions import AuthenticationError, AuthorizationError, NotFoundError, ValidationError
from .models import TeamMember, Website
from .security import decode_token

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    FRONTEND_URL: str = "http://localhost:3000"

    DATABASE_URL: Optional[str] = None

    # Dashboard auth
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRES_MINUTES: int = 10080

    # Ingestion
    SESSION_EXPIRY_MINUTES: int = 30
    RATE_LIMIT_BACKEND: str = "memory"  # "memory" or "redis"
    RATE_LIMIT_MAX_REQUESTS: int = 60
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    REDIS_URL: str = "redis://localhost:6379/0"

    # GeoIP
    GEO_CACHE_TTL_SECONDS: int = 3600
    GEO_CACHE_MAX_SIZE: int = 10000
    GEO_PROVIDER_TIMEOUT_SECONDS: float = 3.0

    # Reporting
    MAX_DATE_RANGE_DAYS: int = 365

    # Notifications
    SPIKE_COOLDOWN_SECONDS: int = 900
    RESEND_API_KEY: Optional[str] = None
    RESEND_FROM_EMAIL: str = "OpenWebTrack <notifications@openwebtrack.dev>"
    CRON_SECRET: Optional[str] = None

    # Background sweeps (rate limiter, geo cache, spike buffers)
    SWEEP_INTERVAL_SECONDS: int = 60

    # Observability
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_tracker_state(request: Request):
    """Return the process-wide TrackerState built at startup (see state.py)."""
    return request.app.state.tracker


def get_current_user_id(
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> uuid.UUID:
    """Resolve the current user id from the `access_token` cookie or the
    `Authorization` header.

    Both may carry an optional "Bearer " prefix. The token's `sub` is the
    user id.
    """
    raw = access_token or authorization
    if not raw:
        raise AuthenticationError("Unauthorized")

    # Remove optional "Bearer " prefix
    token = raw[len("Bearer "):] if raw.startswith("Bearer ") else raw

    try:
        payload = decode_token(token, settings.JWT_SECRET, settings.JWT_ALGORITHM)
    except JWTError:
        raise AuthenticationError("Invalid token")

    subject = payload.get("sub")
    try:
        return uuid.UUID(str(subject))
    except ValueError:
        raise AuthenticationError("Invalid token payload")


def parse_website_id(website_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(website_id)
    except ValueError:
        raise ValidationError("Invalid website ID")


async def get_accessible_website(
    website_id: str,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db),
) -> Website:
    """Load a website the current user owns or is a team member of.

    WHAT:
        Owner or team member gets the row; anybody else gets 404.

    WHY:
        A 403 would confirm that the site exists.
    """
    site_id = parse_website_id(website_id)

    site = (await db.execute(select(Website).where(Website.id == site_id))).scalar_one_or_none()
    if site is None:
        raise NotFoundError("Website not found")

    if site.user_id == user_id:
        return site

    membership = (
        await db.execute(
            select(TeamMember.id)
            .where(TeamMember.website_id == site_id, TeamMember.user_id == user_id)
            .limit(1)
        )
    ).scalar_one_or_none()
    if membership is None:
        logger.info(f"[AUTH] User {user_id} denied access to website {site_id}")
        raise NotFoundError("Website not found")

    return site


async def get_owned_website(
    site: Website = Depends(get_accessible_website),
    user_id: uuid.UUID = Depends(get_current_user_id),
) -> Website:
    """Like get_accessible_website, but team members get 403: settings, team,
    export and data wipes are owner-only."""
    if site.user_id != user_id:
        raise AuthorizationError("Forbidden")
    return site
