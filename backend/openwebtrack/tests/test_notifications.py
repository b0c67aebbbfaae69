"""
Tests for traffic spike detection and email delivery.

WHAT:
    Sliding window and cooldown of TrafficSpikeMonitor, the Resend-backed
    EmailSender, email rendering, and a spike alert raised by real
    /api/track traffic.

REFERENCES:
    - services/spike_monitor.py
    - services/notifications.py
    - services/ingestion.py: _check_traffic_spike
"""

from datetime import datetime

import resend
from sqlalchemy.exc import OperationalError

from openwebtrack.services.notifications import EmailSender, TrafficSpikeEmail, WeeklySummaryEmail
from openwebtrack.services.spike_monitor import TrafficSpikeMonitor, send_spike_alert
from conftest import RecordingEmailSender, make_payload


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# =============================================================================
# SPIKE MONITOR
# =============================================================================

def test_alert_fires_when_threshold_reached():
    clock = FakeClock()
    monitor = TrafficSpikeMonitor(cooldown_seconds=900, clock=clock)

    assert monitor.record_session_start("site", threshold=3, window_seconds=60) is None
    assert monitor.record_session_start("site", threshold=3, window_seconds=60) is None
    assert monitor.record_session_start("site", threshold=3, window_seconds=60) == 3


def test_old_starts_fall_out_of_the_window():
    clock = FakeClock()
    monitor = TrafficSpikeMonitor(clock=clock)

    monitor.record_session_start("site", 3, 60)
    monitor.record_session_start("site", 3, 60)
    clock.now += 61
    assert monitor.record_session_start("site", 3, 60) is None
    assert monitor.count("site") == 1


def test_cooldown_suppresses_repeat_alerts():
    clock = FakeClock()
    monitor = TrafficSpikeMonitor(cooldown_seconds=900, clock=clock)

    assert monitor.record_session_start("site", 1, 60) == 1
    clock.now += 30
    assert monitor.record_session_start("site", 1, 60) is None
    clock.now += 900
    assert monitor.record_session_start("site", 1, 60) == 1


def test_sites_are_counted_independently():
    monitor = TrafficSpikeMonitor(clock=FakeClock())

    monitor.record_session_start("a", 2, 60)
    assert monitor.record_session_start("b", 2, 60) is None
    assert monitor.record_session_start("a", 2, 60) == 2


def test_disabled_threshold_never_alerts():
    monitor = TrafficSpikeMonitor(clock=FakeClock())

    for _ in range(5):
        assert monitor.record_session_start("site", 0, 60) is None


def test_evict_drops_idle_sites():
    clock = FakeClock()
    monitor = TrafficSpikeMonitor(cooldown_seconds=900, clock=clock)
    monitor.record_session_start("site", 10, 60)
    monitor.record_session_start("site", 10, 60)

    clock.now += 120
    assert monitor.evict() == 2
    assert len(monitor) == 0


# =============================================================================
# EMAIL SENDER
# =============================================================================

async def test_sender_without_api_key_returns_none():
    sender = EmailSender(api_key=None, from_email="alerts@openwebtrack.dev")

    assert not sender.configured
    assert await sender.send_email("owner@example.com", "Hi", "<p>Hi</p>", "Hi") is None


async def test_sender_calls_resend(monkeypatch):
    monkeypatch.setattr(resend, "api_key", None)
    sent = []

    def fake_send(params):
        sent.append(params)
        return {"id": "re_123"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    sender = EmailSender(api_key="re_test", from_email="alerts@openwebtrack.dev")

    message_id = await sender.send_email("owner@example.com", "Hi", "<p>Hi</p>", "Hi")

    assert message_id == "re_123"
    assert sent[0]["to"] == ["owner@example.com"]
    assert sent[0]["from"] == "alerts@openwebtrack.dev"


async def test_sender_swallows_provider_errors(monkeypatch):
    monkeypatch.setattr(resend, "api_key", None)

    def failing_send(params):
        raise RuntimeError("provider down")

    monkeypatch.setattr(resend.Emails, "send", failing_send)
    sender = EmailSender(api_key="re_test", from_email="alerts@openwebtrack.dev")

    assert await sender.send_email("owner@example.com", "Hi", "<p>Hi</p>", "Hi") is None


# =============================================================================
# RENDERING
# =============================================================================

def test_spike_email_escapes_domain():
    email = TrafficSpikeEmail(
        domain="<b>example.com</b>",
        visitors=120,
        threshold=100,
        window_seconds=60,
        date="2024-03-10 12:00:00 UTC",
        dashboard_url="https://app.openwebtrack.dev/dashboard/1",
    )

    assert email.subject == "Traffic spike on <b>example.com</b>"
    assert "&lt;b&gt;example.com&lt;/b&gt;" in email.render_html()
    assert "120 new sessions" in email.render_text()


def test_weekly_email_lists_top_rows():
    email = WeeklySummaryEmail(
        domain="example.com",
        period_start="Mar 3, 2024",
        period_end="Mar 10, 2024",
        total_visitors=1234,
        total_pageviews=5678,
        dashboard_url="https://app.openwebtrack.dev/dashboard/1",
        top_pages=[("/pricing", 42)],
    )

    html = email.render_html()
    assert email.subject == "Weekly Summary for example.com"
    assert "1,234" in html
    assert "/pricing" in html
    assert email.render_text().startswith("Weekly analytics summary for example.com from Mar 3, 2024")


async def test_send_spike_alert_builds_dashboard_link():
    sender = RecordingEmailSender()
    message_id = await send_spike_alert(
        sender,
        to="owner@example.com",
        domain="example.com",
        website_id="site-1",
        visitors=5,
        threshold=5,
        window_seconds=60,
        frontend_url="https://app.openwebtrack.dev/",
        detected_at=datetime(2024, 3, 10, 12, 0),
    )

    assert message_id == "msg_1"
    _, subject, html, text = sender.sent[0]
    assert subject == "Traffic spike on example.com"
    assert "https://app.openwebtrack.dev/dashboard/site-1" in html
    assert "2024-03-10 12:00:00 UTC" in text


# =============================================================================
# END TO END
# =============================================================================

async def test_new_sessions_trigger_spike_alert(client, db, website, tracker, email_sender):
    website.notifications = {
        "trafficSpike": {"enabled": True, "threshold": 2, "windowSeconds": 60},
        "weeklySummary": {"enabled": False},
    }
    await db.commit()

    for i in range(3):
        resp = await client.post(
            "/api/track",
            json=make_payload(visitorId=f"visitor-{i}", sessionId=f"session-{i}"),
        )
        assert resp.status_code == 200
    # Same session again is not a new start
    await client.post("/api/track", json=make_payload(visitorId="visitor-2", sessionId="session-2"))
    await tracker.pipeline.drain()

    assert len(email_sender.sent) == 1
    to, subject, _, text = email_sender.sent[0]
    assert to == "owner@example.com"
    assert subject == "Traffic spike on example.com"
    assert "2 new sessions" in text


async def test_disabled_spike_alerts_send_nothing(client, website, tracker, email_sender):
    for i in range(3):
        await client.post("/api/track", json=make_payload(visitorId=f"visitor-{i}", sessionId=f"session-{i}"))
    await tracker.pipeline.drain()

    assert email_sender.sent == []


class UnavailableSession:
    """Session whose every query fails, like a database that went away."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def execute(self, *args, **kwargs):
        raise OperationalError("SELECT users.email", {}, Exception("connection lost"))


async def test_owner_lookup_failure_does_not_fail_tracking(client, db, website, tracker, email_sender):
    website.notifications = {
        "trafficSpike": {"enabled": True, "threshold": 1, "windowSeconds": 60},
        "weeklySummary": {"enabled": False},
    }
    await db.commit()
    tracker.pipeline.session_factory = UnavailableSession

    resp = await client.post("/api/track", json=make_payload())
    await tracker.pipeline.drain()

    assert resp.status_code == 200
    assert resp.json() == {"success": True}
    assert resp.headers["access-control-allow-origin"] == "*"
    assert email_sender.sent == []
