"""
Tests for the weekly summary job and its cron endpoint.

REFERENCES:
    - services/weekly_summary.py
    - routers/cron.py
"""

from datetime import datetime, timedelta

import pytest

from openwebtrack.models import AnalyticsSession, Pageview, User, Website
from openwebtrack.services.weekly_summary import build_weekly_report, send_weekly_summaries
from openwebtrack.utils.clock import utcnow
from conftest import RecordingEmailSender

NOW = datetime(2024, 3, 10, 12, 0)


def _enable_weekly(site: Website) -> None:
    site.notifications = {
        "trafficSpike": {"enabled": False, "threshold": 100, "windowSeconds": 60},
        "weeklySummary": {"enabled": True},
    }


async def _seed_week(db, site: Website, now: datetime) -> None:
    recent = now - timedelta(days=2)
    stale = now - timedelta(days=10)
    db.add_all(
        [
            AnalyticsSession(id=f"{site.domain}-a", visitor_id="v1", website_id=site.id, started_at=recent,
                             expires_at=recent + timedelta(minutes=30), last_activity_at=recent,
                             referrer="https://news.ycombinator.com/", country="Germany"),
            AnalyticsSession(id=f"{site.domain}-b", visitor_id="v1", website_id=site.id, started_at=recent,
                             expires_at=recent + timedelta(minutes=30), last_activity_at=recent,
                             country="Germany"),
            AnalyticsSession(id=f"{site.domain}-c", visitor_id="v2", website_id=site.id, started_at=recent,
                             expires_at=recent + timedelta(minutes=30), last_activity_at=recent,
                             country="France"),
            AnalyticsSession(id=f"{site.domain}-old", visitor_id="v3", website_id=site.id, started_at=stale,
                             expires_at=stale + timedelta(minutes=30), last_activity_at=stale,
                             country="Spain"),
        ]
    )
    await db.commit()
    db.add_all(
        [
            Pageview(session_id=f"{site.domain}-a", website_id=site.id, url=f"https://{site.domain}/",
                     pathname="/", timestamp=recent),
            Pageview(session_id=f"{site.domain}-b", website_id=site.id, url=f"https://{site.domain}/",
                     pathname="/", timestamp=recent),
            Pageview(session_id=f"{site.domain}-c", website_id=site.id, url=f"https://{site.domain}/docs",
                     pathname="/docs", timestamp=recent),
            Pageview(session_id=f"{site.domain}-old", website_id=site.id, url=f"https://{site.domain}/old",
                     pathname="/old", timestamp=stale),
        ]
    )
    await db.commit()


async def test_weekly_report_covers_last_seven_days(db, website):
    await _seed_week(db, website, NOW)

    report = await build_weekly_report(db, website.id, NOW - timedelta(days=7))

    assert report.total_visitors == 2
    assert report.total_pageviews == 3
    assert report.top_pages == [("/", 2), ("/docs", 1)]
    assert report.top_referrers == [("https://news.ycombinator.com/", 1)]
    assert report.top_countries == [("Germany", 2), ("France", 1)]


async def test_only_opted_in_websites_are_emailed(db, website, owner):
    _enable_weekly(website)
    other = Website(domain="quiet.org", user_id=owner.id, timezone="UTC",
                    excluded_ips=[], excluded_paths=[], excluded_countries=[], notifications={})
    db.add(other)
    await db.commit()
    await _seed_week(db, website, NOW)

    sender = RecordingEmailSender()
    result = await send_weekly_summaries(db, sender, "https://app.openwebtrack.dev", now=NOW)

    assert (result.processed, result.sent, result.failed) == (1, 1, 0)
    to, subject, html, text = sender.sent[0]
    assert to == "owner@example.com"
    assert subject == "Weekly Summary for example.com"
    assert f"https://app.openwebtrack.dev/dashboard/{website.id}" in html
    assert text == (
        "Weekly analytics summary for example.com from Mar 3, 2024 to Mar 10, 2024. "
        "Total visitors: 2, Pageviews: 3"
    )


async def test_delivery_failures_are_counted(db, website):
    _enable_weekly(website)
    bouncer = User(email="bounce@example.com")
    db.add(bouncer)
    await db.commit()
    second = Website(domain="second.org", user_id=bouncer.id, timezone="UTC",
                     excluded_ips=[], excluded_paths=[], excluded_countries=[], notifications={})
    _enable_weekly(second)
    db.add(second)
    await db.commit()

    sender = RecordingEmailSender(fail_for={"bounce@example.com"})
    result = await send_weekly_summaries(db, sender, "https://app.openwebtrack.dev", now=NOW)

    assert result.message == "Processed 2 websites. Sent: 1, Failed: 1"


# =============================================================================
# CRON ENDPOINT
# =============================================================================

@pytest.mark.parametrize("authorization", [None, "Bearer wrong", "cron-secret"])
async def test_cron_rejects_bad_secret(client, email_sender, authorization):
    headers = {"Authorization": authorization} if authorization else {}

    resp = await client.get("/api/cron/weekly-summary", headers=headers)

    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid cron secret"}
    assert email_sender.sent == []


async def test_cron_sends_summaries(client, db, website, email_sender):
    _enable_weekly(website)
    await db.commit()
    await _seed_week(db, website, utcnow())

    resp = await client.get("/api/cron/weekly-summary", headers={"Authorization": "Bearer cron-secret"})

    assert resp.status_code == 200
    assert resp.json() == {"message": "Processed 1 websites. Sent: 1, Failed: 0"}
    assert len(email_sender.sent) == 1


async def test_cron_without_email_provider(client, db, website, tracker):
    _enable_weekly(website)
    await db.commit()
    tracker.email_sender = RecordingEmailSender(configured=False)

    resp = await client.get("/api/cron/weekly-summary", headers={"Authorization": "Bearer cron-secret"})

    assert resp.status_code == 200
    assert resp.json() == {"message": "Email not configured"}
    assert tracker.email_sender.sent == []
