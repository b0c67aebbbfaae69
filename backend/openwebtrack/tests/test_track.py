"""
Tests for the public tracking endpoint.

WHAT:
    POST /api/track end to end: validation, website lookup, rate limiting,
    exclusion, domain checks, geo, and which table each event type lands in.

WHY:
    This is the only unauthenticated write path. Rejections must leave the
    database untouched and every response must carry permissive CORS headers.

REFERENCES:
    - routers/track.py
    - services/ingestion.py
    - main.py: TrackCORSMiddleware
"""

import asyncio
import json

from sqlalchemy import func, select

from openwebtrack.models import AnalyticsEvent, AnalyticsSession, Pageview, Payment, Visitor
from openwebtrack.services.rate_limiter import FixedWindowRateLimiter
from conftest import make_payload


async def _count(session_factory, model) -> int:
    async with session_factory() as s:
        return (await s.execute(select(func.count()).select_from(model))).scalar()


# =============================================================================
# HAPPY PATH
# =============================================================================

async def test_pageview_creates_visitor_session_and_pageview(client, website, session_factory):
    resp = await client.post(
        "/api/track",
        json=make_payload(
            href="https://example.com/pricing?utm_source=newsletter&utm_medium=email",
            referrer="https://news.ycombinator.com/",
            title="Pricing",
            viewport={"width": 1280, "height": 720},
            browser="Firefox",
        ),
        headers={"Origin": "https://example.com"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"success": True}
    assert resp.headers["access-control-allow-origin"] == "*"

    async with session_factory() as s:
        pageview = (await s.execute(select(Pageview))).scalar_one()
        session = (await s.execute(select(AnalyticsSession))).scalar_one()
        visitor = (await s.execute(select(Visitor))).scalar_one()

    assert pageview.pathname == "/pricing"
    assert pageview.title == "Pricing"
    assert pageview.viewport_width == 1280
    assert pageview.session_id == "session-1"
    assert session.utm_source == "newsletter"
    assert session.utm_medium == "email"
    assert session.referrer == "https://news.ycombinator.com/"
    assert session.browser == "Firefox"
    assert visitor.id == "visitor-1"
    assert visitor.website_id == website.id


async def test_website_can_be_addressed_by_id(client, website, session_factory):
    resp = await client.post(
        "/api/track",
        json=make_payload(websiteId=str(website.id), domain="www.example.com"),
    )

    assert resp.status_code == 200
    assert await _count(session_factory, Pageview) == 1


async def test_geo_is_stored_on_the_session(client, website, session_factory, geo_provider):
    resp = await client.post("/api/track", json=make_payload(), headers={"X-Forwarded-For": "8.8.8.8"})

    assert resp.status_code == 200
    async with session_factory() as s:
        session = (await s.execute(select(AnalyticsSession))).scalar_one()
    assert (session.country, session.region, session.city) == ("United States", "California", "Mountain View")
    assert geo_provider.calls == ["8.8.8.8"]


async def test_heartbeat_touches_session_only(client, website, session_factory):
    await client.post("/api/track", json=make_payload())
    resp = await client.post("/api/track", json=make_payload(type="heartbeat"))

    assert resp.status_code == 200
    assert await _count(session_factory, Pageview) == 1
    assert await _count(session_factory, AnalyticsEvent) == 0
    assert await _count(session_factory, AnalyticsSession) == 1


async def test_concurrent_first_events_share_one_session(client, website, session_factory):
    first, second = await asyncio.gather(
        client.post("/api/track", json=make_payload(href="https://example.com/a")),
        client.post("/api/track", json=make_payload(href="https://example.com/b")),
    )

    assert (first.status_code, second.status_code) == (200, 200)
    assert await _count(session_factory, AnalyticsSession) == 1
    assert await _count(session_factory, Visitor) == 1
    assert await _count(session_factory, Pageview) == 2


async def test_custom_event_is_stored_with_data(client, website, session_factory):
    resp = await client.post(
        "/api/track",
        json=make_payload(type="custom", name="signup", data={"plan": "pro"}),
    )

    assert resp.status_code == 200
    async with session_factory() as s:
        event = (await s.execute(select(AnalyticsEvent))).scalar_one()
    assert (event.type, event.name, event.data) == ("custom", "signup", {"plan": "pro"})
    assert await _count(session_factory, Pageview) == 0


async def test_payment_records_revenue_and_flags_customer(client, website, session_factory):
    resp = await client.post(
        "/api/track",
        json=make_payload(type="payment", amount=4900, currency="eur", transactionId="txn_1"),
    )

    assert resp.status_code == 200
    async with session_factory() as s:
        payment = (await s.execute(select(Payment))).scalar_one()
        visitor = (await s.execute(select(Visitor))).scalar_one()
    assert (payment.amount, payment.currency, payment.transaction_id) == (4900, "EUR", "txn_1")
    assert payment.visitor_id == "visitor-1"
    assert visitor.is_customer is True


async def test_payment_currency_defaults_to_usd(client, website, session_factory):
    await client.post("/api/track", json=make_payload(type="payment", amount=100))

    async with session_factory() as s:
        assert (await s.execute(select(Payment.currency))).scalar() == "USD"


# =============================================================================
# REJECTIONS
# =============================================================================

async def test_invalid_json_is_rejected(client, website, session_factory):
    resp = await client.post(
        "/api/track",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid JSON"
    assert resp.headers["access-control-allow-origin"] == "*"
    assert await _count(session_factory, Visitor) == 0


async def test_missing_fields_list_every_error(client, website):
    resp = await client.post("/api/track", content=json.dumps({"domain": "example.com"}))

    assert resp.status_code == 400
    errors = resp.json()["errors"]
    assert any(e.startswith("type") for e in errors)
    assert any(e.startswith("visitorId") for e in errors)


async def test_unknown_event_type_is_rejected(client, website):
    resp = await client.post("/api/track", json=make_payload(type="purchase"))

    assert resp.status_code == 400


async def test_payment_without_amount_is_rejected(client, website, session_factory):
    resp = await client.post("/api/track", json=make_payload(type="payment"))

    assert resp.status_code == 400
    assert await _count(session_factory, Payment) == 0


async def test_unknown_website_is_404(client, website):
    resp = await client.post("/api/track", json=make_payload(domain="nobody.example.org"))

    assert resp.status_code == 404
    assert resp.json() == {"error": "Website not found"}


async def test_domain_mismatch_is_403(client, website, session_factory):
    resp = await client.post(
        "/api/track",
        json=make_payload(websiteId=str(website.id), domain="evil.org"),
    )

    assert resp.status_code == 403
    assert await _count(session_factory, AnalyticsSession) == 0


async def test_subdomains_and_local_hosts_are_accepted(client, website):
    for domain in ("blog.example.com", "localhost:3000"):
        resp = await client.post(
            "/api/track",
            json=make_payload(websiteId=str(website.id), domain=domain),
        )
        assert resp.status_code == 200, domain


async def test_rate_limit_returns_429(client, website, tracker):
    limiter = FixedWindowRateLimiter(max_requests=2, window_seconds=60)
    tracker.rate_limiter = limiter
    tracker.pipeline.rate_limiter = limiter

    statuses = [(await client.post("/api/track", json=make_payload())).status_code for _ in range(3)]

    assert statuses == [200, 200, 429]


# =============================================================================
# EXCLUSION
# =============================================================================

async def test_excluded_path_is_acknowledged_but_not_stored(client, website, db, session_factory):
    website.excluded_paths = ["/admin/*"]
    await db.commit()

    resp = await client.post("/api/track", json=make_payload(href="https://example.com/admin/users"))

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "excluded": True}
    assert await _count(session_factory, Visitor) == 0
    assert await _count(session_factory, Pageview) == 0


async def test_excluded_ip_range_stores_nothing(client, website, db, session_factory):
    website.excluded_ips = ["81.2.69.0/24"]
    await db.commit()

    resp = await client.post("/api/track", json=make_payload(), headers={"X-Forwarded-For": "81.2.69.142"})

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "excluded": True}
    assert await _count(session_factory, AnalyticsSession) == 0
    assert await _count(session_factory, Visitor) == 0
    assert await _count(session_factory, Pageview) == 0


async def test_excluded_country(client, website, db, session_factory):
    website.excluded_countries = ["Germany"]
    await db.commit()

    excluded = await client.post("/api/track", json=make_payload(), headers={"X-Forwarded-For": "5.9.0.1"})
    allowed = await client.post("/api/track", json=make_payload(), headers={"X-Forwarded-For": "8.8.8.8"})

    assert excluded.json() == {"success": True, "excluded": True}
    assert allowed.json() == {"success": True}
    assert await _count(session_factory, Pageview) == 1


async def test_exclusion_wins_over_domain_mismatch(client, website, db):
    website.excluded_paths = ["/private"]
    await db.commit()

    resp = await client.post(
        "/api/track",
        json=make_payload(websiteId=str(website.id), domain="evil.org", href="https://evil.org/private"),
    )

    assert resp.json() == {"success": True, "excluded": True}


# =============================================================================
# CORS
# =============================================================================

async def test_preflight_returns_204_with_cors_headers(client):
    resp = await client.options(
        "/api/track",
        headers={"Origin": "https://customer.site", "Access-Control-Request-Method": "POST"},
    )

    assert resp.status_code == 204
    assert resp.headers["access-control-allow-origin"] == "*"
    assert "POST" in resp.headers["access-control-allow-methods"]
