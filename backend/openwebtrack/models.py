"""SQLAlchemy ORM models and enums.

This module defines the analytics schema. A `Website` owns every other row:
deleting it cascades to team members, visitors, sessions, pageviews, events
and payments.

Visitor and session identifiers are generated by the browser snippet and
stored as opaque strings. The only server-generated session ids are the ones
minted when an expired session id is reused (see services/identity.py).
"""

import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils.clock import utcnow


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class EventTypeEnum(str, enum.Enum):
    pageview = "pageview"
    custom = "custom"
    identify = "identify"
    heartbeat = "heartbeat"
    payment = "payment"


def default_notifications() -> dict:
    """Fresh copy of the per-site notification settings."""
    return {
        "trafficSpike": {"enabled": False, "threshold": 100, "windowSeconds": 60},
        "weeklySummary": {"enabled": False},
    }


# Accounts ------------------------------------------------------

class User(Base):
    """Dashboard account. Authentication itself happens elsewhere; we only
    need the id carried in the JWT and an email for notifications."""
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    websites = relationship("Website", back_populates="owner")

    def __str__(self):
        return self.email


class Website(Base):
    """A tracked site.

    `domain` is the canonical hostname (lowercase, no scheme, no path) and is
    globally unique. Exclusion lists and notification settings are JSON so
    the owner can edit them without a migration.
    """
    __tablename__ = "websites"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    domain = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    timezone = Column(String, nullable=False, default="UTC")

    excluded_ips = Column(JSON, nullable=False, default=list)
    excluded_paths = Column(JSON, nullable=False, default=list)
    excluded_countries = Column(JSON, nullable=False, default=list)
    notifications = Column(JSON, nullable=False, default=default_notifications)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    owner = relationship("User", back_populates="websites")
    team_members = relationship("TeamMember", back_populates="website", cascade="all, delete-orphan", passive_deletes=True)

    @property
    def traffic_spike_settings(self) -> dict:
        settings = dict(default_notifications()["trafficSpike"])
        settings.update((self.notifications or {}).get("trafficSpike") or {})
        return settings

    @property
    def weekly_summary_enabled(self) -> bool:
        return bool(((self.notifications or {}).get("weeklySummary") or {}).get("enabled"))

    def __str__(self):
        return self.domain


class TeamMember(Base):
    """Grants a non-owner read access to a website's dashboard."""
    __tablename__ = "team_members"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    website_id = Column(Uuid(as_uuid=True), ForeignKey("websites.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    website = relationship("Website", back_populates="team_members")

    __table_args__ = (
        Index("ix_team_members_website_user", "website_id", "user_id"),
    )

    def __str__(self):
        return f"{self.user_id} @ {self.website_id}"


# Tracking ------------------------------------------------------

class Visitor(Base):
    """A long-lived browser identity, scoped to one website.

    `name` and `avatar` are derived from the id (services/visitor_profile.py)
    and filled lazily. `last_seen` is refreshed at most once a minute.
    """
    __tablename__ = "visitors"

    website_id = Column(Uuid(as_uuid=True), ForeignKey("websites.id", ondelete="CASCADE"), primary_key=True)
    id = Column(String(100), primary_key=True)
    name = Column(String, nullable=True)
    avatar = Column(String, nullable=True)
    is_customer = Column(Boolean, nullable=False, default=False)
    first_seen = Column(DateTime, nullable=False, default=utcnow)
    last_seen = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_visitors_website_last_seen", "website_id", "last_seen"),
    )

    def __str__(self):
        return f"{self.name or self.id} ({self.website_id})"


class AnalyticsSession(Base):
    """A bounded run of activity by one visitor.

    `expires_at` slides forward on every event. Once it is in the past the
    same client id maps to a new row with a server-generated id.
    """
    __tablename__ = "analytics_sessions"

    id = Column(String(100), primary_key=True)
    visitor_id = Column(String(100), nullable=False, index=True)
    website_id = Column(Uuid(as_uuid=True), ForeignKey("websites.id", ondelete="CASCADE"), nullable=False)

    started_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    last_activity_at = Column(DateTime, nullable=False, default=utcnow)

    # Attribution (first write wins on backfill)
    referrer = Column(Text, nullable=True)
    utm_source = Column(String, nullable=True)
    utm_medium = Column(String, nullable=True)
    utm_campaign = Column(String, nullable=True)

    # Device
    screen_width = Column(Integer, nullable=True)
    screen_height = Column(Integer, nullable=True)
    language = Column(String, nullable=True)
    timezone = Column(String, nullable=True)
    browser = Column(String, nullable=True)
    browser_version = Column(String, nullable=True)
    os = Column(String, nullable=True)
    os_version = Column(String, nullable=True)
    device_type = Column(String, nullable=True)
    is_pwa = Column(Boolean, nullable=False, default=False)

    # Geo
    country = Column(String, nullable=True)
    region = Column(String, nullable=True)
    city = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_analytics_sessions_website_started", "website_id", "started_at"),
        Index("ix_analytics_sessions_website_activity", "website_id", "last_activity_at"),
    )

    def __str__(self):
        return f"{self.id} ({self.started_at})"


class Pageview(Base):
    """Immutable page hit."""
    __tablename__ = "pageviews"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(String(100), ForeignKey("analytics_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    website_id = Column(Uuid(as_uuid=True), ForeignKey("websites.id", ondelete="CASCADE"), nullable=False)
    url = Column(Text, nullable=False)
    pathname = Column(String, nullable=False)
    referrer = Column(Text, nullable=True)
    title = Column(String, nullable=True)
    viewport_width = Column(Integer, nullable=True)
    viewport_height = Column(Integer, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_pageviews_website_timestamp", "website_id", "timestamp"),
        Index("ix_pageviews_website_referrer", "website_id", "referrer"),
    )

    def __str__(self):
        return f"{self.pathname} - {self.timestamp}"


class AnalyticsEvent(Base):
    """Custom, identify and other non-pageview events."""
    __tablename__ = "analytics_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(String(100), ForeignKey("analytics_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    website_id = Column(Uuid(as_uuid=True), ForeignKey("websites.id", ondelete="CASCADE"), nullable=False)
    type = Column(String, nullable=False)
    name = Column(String, nullable=True)
    data = Column(JSON, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_analytics_events_website_timestamp", "website_id", "timestamp"),
        Index("ix_analytics_events_website_type_name", "website_id", "type", "name"),
    )

    def __str__(self):
        return f"{self.type}:{self.name} - {self.timestamp}"


class Payment(Base):
    """Revenue attributed to a session. `amount` is in minor currency units."""
    __tablename__ = "payments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    website_id = Column(Uuid(as_uuid=True), ForeignKey("websites.id", ondelete="CASCADE"), nullable=False)
    visitor_id = Column(String(100), nullable=False)
    session_id = Column(String(100), ForeignKey("analytics_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(10), nullable=False)
    transaction_id = Column(String, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_payments_website_timestamp", "website_id", "timestamp"),
    )

    def __str__(self):
        return f"{self.amount} {self.currency} ({self.transaction_id or '-'})"
