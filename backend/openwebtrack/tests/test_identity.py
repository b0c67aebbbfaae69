"""
Tests for visitor and session resolution.

WHAT:
    Session state machine: created, extended (with backfill), rotated on
    expiry or foreign website, joined after a concurrent insert. Visitor
    creation and the last-seen refresh threshold.

WHY:
    Every downstream row references the session id this returns; getting a
    transition wrong splits or merges sessions in the dashboard.

REFERENCES:
    - services/identity.py
    - database.py: insert_if_absent
"""

from datetime import datetime, timedelta

from sqlalchemy import func, select

from openwebtrack.models import AnalyticsSession, Visitor, Website
from openwebtrack.services.identity import IdentityResolver, SessionSnapshot, SessionTransition

NOW = datetime(2024, 3, 10, 12, 0)


async def _session_row(session_factory, session_id):
    async with session_factory() as s:
        return (await s.execute(select(AnalyticsSession).where(AnalyticsSession.id == session_id))).scalar_one_or_none()


async def test_first_event_creates_visitor_and_session(db, website, session_factory):
    resolver = IdentityResolver(session_expiry_minutes=30)

    result = await resolver.resolve(db, website.id, "v1", "s1", SessionSnapshot(country="France", browser="Firefox"), NOW)

    assert result.session_id == "s1"
    assert result.transition is SessionTransition.created
    assert result.visitor_created
    assert result.started_session

    row = await _session_row(session_factory, "s1")
    assert row.expires_at == NOW + timedelta(minutes=30)
    assert row.country == "France"
    async with session_factory() as s:
        visitor = (await s.execute(select(Visitor).where(Visitor.id == "v1"))).scalar_one()
    assert visitor.name and visitor.avatar.endswith("seed=v1")


async def test_active_session_is_extended_and_backfilled(db, website, session_factory):
    resolver = IdentityResolver(30)
    await resolver.resolve(db, website.id, "v1", "s1", SessionSnapshot(referrer="https://google.com/"), NOW)

    later = NOW + timedelta(minutes=10)
    result = await resolver.resolve(
        db,
        website.id,
        "v1",
        "s1",
        SessionSnapshot(referrer="https://bing.com/", country="Germany", utm_source="ads"),
        later,
    )

    assert result.transition is SessionTransition.extended
    assert not result.started_session
    assert not result.visitor_created

    row = await _session_row(session_factory, "s1")
    assert row.expires_at == later + timedelta(minutes=30)
    assert row.last_activity_at == later
    # Existing values win; empty ones are filled
    assert row.referrer == "https://google.com/"
    assert row.country == "Germany"
    assert row.utm_source == "ads"


async def test_expired_session_rotates_to_new_id(db, website, session_factory):
    resolver = IdentityResolver(30)
    await resolver.resolve(db, website.id, "v1", "s1", SessionSnapshot(), NOW)

    later = NOW + timedelta(minutes=31)
    result = await resolver.resolve(db, website.id, "v1", "s1", SessionSnapshot(), later)

    assert result.transition is SessionTransition.rotated
    assert result.session_id != "s1"
    assert result.started_session

    old = await _session_row(session_factory, "s1")
    new = await _session_row(session_factory, result.session_id)
    assert old.last_activity_at == NOW
    assert new.started_at == later
    assert new.visitor_id == "v1"


async def test_session_id_from_another_website_rotates(db, website, owner, session_factory):
    other = Website(domain="other.org", user_id=owner.id, timezone="UTC",
                    excluded_ips=[], excluded_paths=[], excluded_countries=[], notifications={})
    db.add(other)
    await db.commit()

    resolver = IdentityResolver(30)
    await resolver.resolve(db, other.id, "v1", "shared", SessionSnapshot(), NOW)
    result = await resolver.resolve(db, website.id, "v1", "shared", SessionSnapshot(), NOW)

    assert result.transition is SessionTransition.rotated
    assert (await _session_row(session_factory, result.session_id)).website_id == website.id
    assert (await _session_row(session_factory, "shared")).website_id == other.id


async def test_concurrent_insert_joins_existing_session(db, website, session_factory):
    resolver = IdentityResolver(30)
    # Another request wins the race for "s1"
    async with session_factory() as other:
        await resolver.resolve(other, website.id, "v1", "s1", SessionSnapshot(), NOW)

    real_get = resolver._get_session
    calls = []

    async def racing_get(session, session_id):
        calls.append(session_id)
        if len(calls) == 1:
            return None  # our read happened before the winner's insert
        return await real_get(session, session_id)

    resolver._get_session = racing_get
    result = await resolver.resolve(db, website.id, "v1", "s1", SessionSnapshot(city="Paris"), NOW + timedelta(seconds=1))

    assert result.transition is SessionTransition.joined_concurrent
    assert result.session_id == "s1"
    assert not result.started_session
    assert (await _session_row(session_factory, "s1")).city == "Paris"
    count = (await db.execute(select(func.count()).select_from(AnalyticsSession))).scalar()
    assert count == 1


async def test_visitor_last_seen_refresh_threshold(db, website, session_factory):
    resolver = IdentityResolver(30)
    await resolver.resolve_visitor(db, website.id, "v1", NOW)

    await resolver.resolve_visitor(db, website.id, "v1", NOW + timedelta(seconds=30))
    async with session_factory() as s:
        assert (await s.execute(select(Visitor.last_seen).where(Visitor.id == "v1"))).scalar() == NOW

    later = NOW + timedelta(seconds=90)
    created = await resolver.resolve_visitor(db, website.id, "v1", later)
    assert created is False
    async with session_factory() as s:
        assert (await s.execute(select(Visitor.last_seen).where(Visitor.id == "v1"))).scalar() == later


async def test_visitor_ids_are_scoped_per_website(db, website, owner):
    other = Website(domain="other.org", user_id=owner.id, timezone="UTC",
                    excluded_ips=[], excluded_paths=[], excluded_countries=[], notifications={})
    db.add(other)
    await db.commit()

    resolver = IdentityResolver(30)
    assert await resolver.resolve_visitor(db, website.id, "v1", NOW)
    assert await resolver.resolve_visitor(db, other.id, "v1", NOW)

    count = (await db.execute(select(func.count()).select_from(Visitor))).scalar()
    assert count == 2
