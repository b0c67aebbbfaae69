"""
Sentry Error Tracking
=====================

Centralized error tracking for the API process.

Related files:
- main.py: Initializes Sentry before the app is created
- deps.py: SENTRY_DSN / ENVIRONMENT settings
- services/ingestion.py: Datastore failures are logged at ERROR and
  therefore reach Sentry through the logging integration

Setup:
1. Create a project with the "FastAPI" platform on sentry.io
2. Copy the DSN to the SENTRY_DSN environment variable

Without a DSN every function here is a no-op.
"""

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry(dsn: Optional[str], environment: str = "development", release: Optional[str] = None) -> bool:
    """
    Initialize the Sentry SDK.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        the SDK rejected the configuration.
    """
    global _initialized
    if not dsn:
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,         # INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            # Visitor IPs never leave the process
            send_default_pii=False,
            release=release,
        )
    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False

    _initialized = True
    logger.info(f"[SENTRY] Initialized for {environment} environment")
    return True


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Report a handled exception.

    Example:
        try:
            await sender.send_email(...)
        except SomeError as e:
            capture_exception(e, extra={"website_id": str(site.id)})
    """
    if not _initialized:
        logger.error(f"Exception (Sentry disabled): {exception}")
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)
