"""Initial analytics schema.

Revision ID: 20260101_000001
Revises:
Create Date: 2026-01-01

WHAT: Create users, websites, team_members, visitors, analytics_sessions,
      pageviews, analytics_events and payments
WHY: Every tracked row hangs off a website and is deleted with it
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20260101_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "websites",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("domain", sa.String(), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("timezone", sa.String(), nullable=False, server_default="UTC"),
        sa.Column("excluded_ips", sa.JSON(), nullable=False),
        sa.Column("excluded_paths", sa.JSON(), nullable=False),
        sa.Column("excluded_countries", sa.JSON(), nullable=False),
        sa.Column("notifications", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_websites_domain", "websites", ["domain"], unique=True)
    op.create_index("ix_websites_user_id", "websites", ["user_id"])

    op.create_table(
        "team_members",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("website_id", sa.Uuid(), sa.ForeignKey("websites.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_team_members_website_user", "team_members", ["website_id", "user_id"])

    op.create_table(
        "visitors",
        sa.Column("website_id", sa.Uuid(), sa.ForeignKey("websites.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("avatar", sa.String(), nullable=True),
        sa.Column("is_customer", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("first_seen", sa.DateTime(), nullable=False),
        sa.Column("last_seen", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_visitors_website_last_seen", "visitors", ["website_id", "last_seen"])

    op.create_table(
        "analytics_sessions",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("visitor_id", sa.String(100), nullable=False),
        sa.Column("website_id", sa.Uuid(), sa.ForeignKey("websites.id", ondelete="CASCADE"), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(), nullable=False),
        sa.Column("referrer", sa.Text(), nullable=True),
        sa.Column("utm_source", sa.String(), nullable=True),
        sa.Column("utm_medium", sa.String(), nullable=True),
        sa.Column("utm_campaign", sa.String(), nullable=True),
        sa.Column("screen_width", sa.Integer(), nullable=True),
        sa.Column("screen_height", sa.Integer(), nullable=True),
        sa.Column("language", sa.String(), nullable=True),
        sa.Column("timezone", sa.String(), nullable=True),
        sa.Column("browser", sa.String(), nullable=True),
        sa.Column("browser_version", sa.String(), nullable=True),
        sa.Column("os", sa.String(), nullable=True),
        sa.Column("os_version", sa.String(), nullable=True),
        sa.Column("device_type", sa.String(), nullable=True),
        sa.Column("is_pwa", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("country", sa.String(), nullable=True),
        sa.Column("region", sa.String(), nullable=True),
        sa.Column("city", sa.String(), nullable=True),
    )
    op.create_index("ix_analytics_sessions_visitor_id", "analytics_sessions", ["visitor_id"])
    op.create_index("ix_analytics_sessions_website_started", "analytics_sessions", ["website_id", "started_at"])
    op.create_index("ix_analytics_sessions_website_activity", "analytics_sessions", ["website_id", "last_activity_at"])

    op.create_table(
        "pageviews",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("session_id", sa.String(100), sa.ForeignKey("analytics_sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("website_id", sa.Uuid(), sa.ForeignKey("websites.id", ondelete="CASCADE"), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("pathname", sa.String(), nullable=False),
        sa.Column("referrer", sa.Text(), nullable=True),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("viewport_width", sa.Integer(), nullable=True),
        sa.Column("viewport_height", sa.Integer(), nullable=True),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_pageviews_session_id", "pageviews", ["session_id"])
    op.create_index("ix_pageviews_website_timestamp", "pageviews", ["website_id", "timestamp"])
    op.create_index("ix_pageviews_website_referrer", "pageviews", ["website_id", "referrer"])

    op.create_table(
        "analytics_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("session_id", sa.String(100), sa.ForeignKey("analytics_sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("website_id", sa.Uuid(), sa.ForeignKey("websites.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_analytics_events_session_id", "analytics_events", ["session_id"])
    op.create_index("ix_analytics_events_website_timestamp", "analytics_events", ["website_id", "timestamp"])
    op.create_index("ix_analytics_events_website_type_name", "analytics_events", ["website_id", "type", "name"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("website_id", sa.Uuid(), sa.ForeignKey("websites.id", ondelete="CASCADE"), nullable=False),
        sa.Column("visitor_id", sa.String(100), nullable=False),
        sa.Column("session_id", sa.String(100), sa.ForeignKey("analytics_sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("transaction_id", sa.String(), nullable=True),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_payments_session_id", "payments", ["session_id"])
    op.create_index("ix_payments_website_timestamp", "payments", ["website_id", "timestamp"])


def downgrade() -> None:
    op.drop_table("payments")
    op.drop_table("analytics_events")
    op.drop_table("pageviews")
    op.drop_table("analytics_sessions")
    op.drop_table("visitors")
    op.drop_table("team_members")
    op.drop_table("websites")
    op.drop_table("users")
