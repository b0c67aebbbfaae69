"""
Email Notifications.

WHAT:
    Sends traffic-spike alerts and weekly summaries to website owners via
    Resend, with HTML and plain-text bodies rendered here.

WHY:
    Owners want to hear about a surge while it happens and get a short
    digest once a week without opening the dashboard.

DESIGN:
    - `EmailSender.send_email()` returns the provider message id or None.
      It never raises: a failed notification must not fail ingestion or the
      cron run that triggered it.
    - Without RESEND_API_KEY the sender logs what it would send and returns
      None, so local setups work without credentials.
    - The Resend SDK is synchronous; calls run in a worker thread.

REFERENCES:
    - Resend Python SDK: https://resend.com/docs/api-reference/emails/send-email
    - services/spike_monitor.py: Decides when a spike email is due
    - services/weekly_summary.py: Builds the weekly digest data
"""

import asyncio
import html as html_lib
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import resend

logger = logging.getLogger(__name__)


# =============================================================================
# EMAIL TEMPLATES - inline styles only, mail clients strip <style>
# =============================================================================

EMAIL_HEADER = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
</head>
<body style="margin: 0; padding: 0; background-color: #f9fafb; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif;">
    <table role="presentation" style="width: 100%; border-collapse: collapse;">
        <tr>
            <td align="center" style="padding: 40px 20px;">
                <table role="presentation" style="width: 100%; max-width: 600px; border-collapse: collapse; background-color: #ffffff; border-radius: 12px;">
                    <tr>
                        <td style="padding: 32px 32px 8px;">
                            <p style="margin: 0; color: #4b5563; font-size: 11px; font-weight: 700; letter-spacing: 2px; text-transform: uppercase;">OpenWebTrack &middot; {kicker}</p>
                            <h1 style="margin: 12px 0 4px; color: #030712; font-size: 26px;">{domain}</h1>
                        </td>
                    </tr>
"""

EMAIL_FOOTER = """
                    <tr>
                        <td style="padding: 24px 32px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 12px;">
                            <p style="margin: 0;">{reason}</p>
                            <p style="margin: 8px 0 0;"><a href="{dashboard_url}" style="color: #030712;">Open dashboard</a></p>
                        </td>
                    </tr>
                </table>
            </td>
        </tr>
    </table>
</body>
</html>
"""


def _metric_cell(label: str, value: str) -> str:
    return (
        '<td style="padding: 16px; border: 1px solid #d1d5db; border-radius: 8px;">'
        f'<p style="margin: 0; color: #4b5563; font-size: 11px; font-weight: 700; text-transform: uppercase;">{label}</p>'
        f'<p style="margin: 8px 0 0; color: #030712; font-size: 32px; font-weight: 700;">{value}</p>'
        "</td>"
    )


def _ranked_table(title: str, rows: List[Tuple[str, int]]) -> str:
    if not rows:
        return ""
    body = "".join(
        f'<tr><td style="padding: 6px 0; color: #030712;">{html_lib.escape(label)}</td>'
        f'<td style="padding: 6px 0; text-align: right; color: #4b5563;">{value:,}</td></tr>'
        for label, value in rows
    )
    return (
        '<tr><td style="padding: 16px 32px 0;">'
        f'<p style="margin: 0 0 8px; color: #4b5563; font-size: 12px; font-weight: 700; text-transform: uppercase;">{title}</p>'
        f'<table role="presentation" style="width: 100%; border-collapse: collapse; font-size: 14px;">{body}</table>'
        "</td></tr>"
    )


# =============================================================================
# TRAFFIC SPIKE
# =============================================================================

@dataclass
class TrafficSpikeEmail:
    domain: str
    visitors: int
    threshold: int
    window_seconds: int
    date: str
    dashboard_url: str

    @property
    def subject(self) -> str:
        return f"Traffic spike on {self.domain}"

    def render_html(self) -> str:
        domain = html_lib.escape(self.domain)
        parts = [
            EMAIL_HEADER.format(title=html_lib.escape(self.subject), kicker="Traffic Alert", domain=domain),
            '<tr><td style="padding: 0 32px;">'
            f'<p style="margin: 0; color: #4b5563; font-size: 13px;">Detected at: {html_lib.escape(self.date)}</p>'
            '<p style="margin: 24px 0; color: #030712; font-size: 15px; line-height: 24px;">'
            "Your website is experiencing a sudden surge in traffic. New sessions have reached "
            f"your alert threshold of <strong>{self.threshold:,}</strong>.</p>"
            '<table role="presentation" style="width: 100%; border-collapse: separate; border-spacing: 8px;"><tr>'
            + _metric_cell("New sessions", f"{self.visitors:,}")
            + _metric_cell("Time window", f"{self.window_seconds}s")
            + "</tr></table></td></tr>",
            EMAIL_FOOTER.format(
                reason=f"You're receiving this because traffic spike alerts are enabled for {domain}.",
                dashboard_url=html_lib.escape(self.dashboard_url, quote=True),
            ),
        ]
        return "".join(parts)

    def render_text(self) -> str:
        return (
            f"Traffic spike on {self.domain}: {self.visitors} new sessions in the last "
            f"{self.window_seconds}s (threshold {self.threshold}) at {self.date}. "
            f"Dashboard: {self.dashboard_url}"
        )


# =============================================================================
# WEEKLY SUMMARY
# =============================================================================

@dataclass
class WeeklySummaryEmail:
    domain: str
    period_start: str
    period_end: str
    total_visitors: int
    total_pageviews: int
    dashboard_url: str
    top_pages: List[Tuple[str, int]] = field(default_factory=list)
    top_referrers: List[Tuple[str, int]] = field(default_factory=list)
    top_countries: List[Tuple[str, int]] = field(default_factory=list)

    @property
    def subject(self) -> str:
        return f"Weekly Summary for {self.domain}"

    def render_html(self) -> str:
        domain = html_lib.escape(self.domain)
        parts = [
            EMAIL_HEADER.format(title=html_lib.escape(self.subject), kicker="Weekly Summary", domain=domain),
            '<tr><td style="padding: 0 32px;">'
            f'<p style="margin: 0; color: #4b5563; font-size: 13px;">{html_lib.escape(self.period_start)} - {html_lib.escape(self.period_end)}</p>'
            '<table role="presentation" style="width: 100%; border-collapse: separate; border-spacing: 8px; margin-top: 16px;"><tr>'
            + _metric_cell("Visitors", f"{self.total_visitors:,}")
            + _metric_cell("Pageviews", f"{self.total_pageviews:,}")
            + "</tr></table></td></tr>",
            _ranked_table("Top pages", self.top_pages),
            _ranked_table("Top referrers", self.top_referrers),
            _ranked_table("Top countries", self.top_countries),
            EMAIL_FOOTER.format(
                reason=f"You're receiving this because weekly summaries are enabled for {domain}.",
                dashboard_url=html_lib.escape(self.dashboard_url, quote=True),
            ),
        ]
        return "".join(parts)

    def render_text(self) -> str:
        return (
            f"Weekly analytics summary for {self.domain} from {self.period_start} to "
            f"{self.period_end}. Total visitors: {self.total_visitors}, "
            f"Pageviews: {self.total_pageviews}"
        )


# =============================================================================
# SENDER
# =============================================================================

class EmailSender:
    """
    Resend-backed email collaborator.

    Usage:
        sender = EmailSender(api_key=settings.RESEND_API_KEY, from_email=settings.RESEND_FROM_EMAIL)
        message_id = await sender.send_email("owner@example.com", subject, html, text)
    """

    def __init__(self, api_key: Optional[str], from_email: str):
        self.api_key = api_key
        self.from_email = from_email
        if api_key:
            resend.api_key = api_key
            logger.info("[EMAIL] Resend client initialized")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_settings(cls, settings) -> "EmailSender":
        return cls(api_key=settings.RESEND_API_KEY, from_email=settings.RESEND_FROM_EMAIL)

    async def send_email(self, to: str, subject: str, html: str, text: str) -> Optional[str]:
        if not self.configured:
            logger.warning(f"[EMAIL] Resend not configured, would send: {subject} to {to}")
            return None

        params = {
            "from": self.from_email,
            "to": [to],
            "subject": subject,
            "html": html,
            "text": text,
        }
        try:
            response = await asyncio.to_thread(resend.Emails.send, params)
        except Exception as e:
            logger.exception(f"[EMAIL] Failed to send email: {e}")
            return None

        message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
        logger.info(f"[EMAIL] Email sent: {subject} to {to}, id={message_id}")
        return message_id
