"""
Telemetry Module
================

Observability for the tracker API.

Components:
- sentry.py: Error tracking (FastAPI, SQLAlchemy, Redis and logging integrations)

Environment Variables:
- SENTRY_DSN: Sentry project DSN (optional; unset disables Sentry)
- ENVIRONMENT: Environment name reported with every event

Usage:
    from openwebtrack.telemetry import init_observability

    status = init_observability(settings)
"""

from .sentry import capture_exception, init_sentry


def init_observability(settings) -> dict:
    """Initialize every observability tool; returns {tool: enabled}."""
    return {
        "sentry": init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
]
