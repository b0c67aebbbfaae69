"""Pytest configuration for tracker tests

WHAT: Shared fixtures for service-level and HTTP endpoint tests
WHY: Every test gets its own SQLite file, its own TrackerState with fake
     geo providers and email sender, and no network access
REFERENCES:
    - main.py: create_app
    - database.py: build_engine / build_session_factory
    - state.py: build_tracker_state
"""

import os

# Set test environment before the app modules read it
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from typing import Dict, List, Optional, Tuple

import httpx
import pytest

from openwebtrack.database import build_engine, build_session_factory, get_async_db
from openwebtrack.deps import Settings, get_settings
from openwebtrack.main import create_app
from openwebtrack.models import Base, User, Website, default_notifications
from openwebtrack.security import create_access_token
from openwebtrack.services.geoip import GeoCache, GeoData, GeoResolver
from openwebtrack.services.notifications import EmailSender
from openwebtrack.state import build_tracker_state


# ============================================================================
# Fakes
# ============================================================================

class FakeGeoProvider:
    """Geo provider callable answering from a dict and recording lookups."""

    name = "fake-geo"

    def __init__(self, table: Optional[Dict[str, GeoData]] = None, error: Optional[Exception] = None):
        self.table = table or {}
        self.error = error
        self.calls: List[str] = []

    async def __call__(self, ip: str) -> Optional[GeoData]:
        self.calls.append(ip)
        if self.error is not None:
            raise self.error
        return self.table.get(ip)


class RecordingEmailSender(EmailSender):
    """EmailSender that records messages instead of calling Resend."""

    def __init__(self, configured: bool = True, fail_for: Optional[set] = None):
        super().__init__(api_key=None, from_email="test@openwebtrack.dev")
        self._configured = configured
        self.fail_for = fail_for or set()
        self.sent: List[Tuple[str, str, str, str]] = []

    @property
    def configured(self) -> bool:
        return self._configured

    async def send_email(self, to: str, subject: str, html: str, text: str) -> Optional[str]:
        if to in self.fail_for:
            return None
        self.sent.append((to, subject, html, text))
        return f"msg_{len(self.sent)}"


def make_payload(**overrides) -> dict:
    payload = {
        "domain": "example.com",
        "type": "pageview",
        "href": "https://example.com/",
        "visitorId": "visitor-1",
        "sessionId": "session-1",
    }
    payload.update(overrides)
    return payload


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    engine = build_engine(f"sqlite:///{tmp_path / 'tracker.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ============================================================================
# Seed Data
# ============================================================================

@pytest.fixture
async def owner(db) -> User:
    user = User(email="owner@example.com", name="Owner")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def website(db, owner) -> Website:
    site = Website(
        domain="example.com",
        user_id=owner.id,
        timezone="UTC",
        excluded_ips=[],
        excluded_paths=[],
        excluded_countries=[],
        notifications=default_notifications(),
    )
    db.add(site)
    await db.commit()
    return site


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        JWT_SECRET="test-jwt-secret",
        CRON_SECRET="cron-secret",
        RATE_LIMIT_BACKEND="memory",
        RATE_LIMIT_MAX_REQUESTS=1000,
        RATE_LIMIT_WINDOW_SECONDS=60,
        FRONTEND_URL="https://app.openwebtrack.dev",
        RESEND_API_KEY=None,
    )


@pytest.fixture
def geo_provider() -> FakeGeoProvider:
    return FakeGeoProvider(
        {
            "8.8.8.8": GeoData(country="United States", region="California", city="Mountain View"),
            "81.2.69.142": GeoData(country="United Kingdom", region="England", city="London"),
            "5.9.0.1": GeoData(country="Germany", region="Bavaria", city="Munich"),
        }
    )


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
async def tracker(settings, geo_provider, email_sender, session_factory):
    state = build_tracker_state(
        settings,
        geo_resolver=GeoResolver([geo_provider], GeoCache(ttl_seconds=3600, max_size=100)),
        email_sender=email_sender,
        session_factory=session_factory,
    )
    yield state
    await state.aclose()


@pytest.fixture
def app(session_factory, settings, tracker):
    # ASGITransport does not run the lifespan; the tracker is attached directly
    app = create_app(use_lifespan=False)

    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = override_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.state.tracker = tracker
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture
def auth_headers(owner, settings) -> Dict[str, str]:
    token = create_access_token(str(owner.id), settings.JWT_SECRET)
    return {"Authorization": f"Bearer {token}"}
