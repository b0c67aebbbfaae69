"""Scheduled jobs triggered over HTTP.

WHAT:
    GET /api/cron/weekly-summary sends the weekly digest emails.

WHY:
    The hosting scheduler calls a URL; the shared CRON_SECRET in the
    Authorization header keeps anybody else from triggering a mail run.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_async_db
from ..deps import Settings, get_settings, get_tracker_state
from ..exceptions import AuthenticationError
from ..schemas import CronResponse
from ..services.weekly_summary import send_weekly_summaries

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["Cron"])


def verify_cron_secret(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    expected = f"Bearer {settings.CRON_SECRET}" if settings.CRON_SECRET else None
    if not expected or not authorization or not hmac.compare_digest(authorization, expected):
        logger.warning("[WEEKLY] Rejected cron call with invalid secret")
        raise AuthenticationError("Invalid cron secret")


@router.get(
    "/weekly-summary",
    response_model=CronResponse,
    dependencies=[Depends(verify_cron_secret)],
    summary="Send weekly summary emails",
)
async def weekly_summary(
    db: AsyncSession = Depends(get_async_db),
    settings: Settings = Depends(get_settings),
    tracker=Depends(get_tracker_state),
):
    sender = tracker.email_sender
    if not sender.configured:
        return CronResponse(message="Email not configured")

    result = await send_weekly_summaries(db, sender, settings.FRONTEND_URL)
    return CronResponse(message=result.message)
