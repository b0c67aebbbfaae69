"""FastAPI application entrypoint.

Configures CORS, registers the error handler, includes routers, builds the
tracker state in the lifespan and exposes a healthcheck endpoint.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .exceptions import TrackerError
from .routers import activity as activity_router
from .routers import cron as cron_router
from .routers import stats as stats_router
from .routers import team as team_router
from .routers import track as track_router
from .routers import websites as websites_router
from .state import build_tracker_state
from .telemetry import init_observability
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


TRACK_PATH = "/api/track"

TRACK_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Max-Age": "86400",
}


class TrackCORSMiddleware(BaseHTTPMiddleware):
    """Permissive CORS for the tracking endpoint.

    WHY: The snippet is embedded on arbitrary customer domains and sends no
    credentials, so every origin is allowed. Error responses (400/403/404/429)
    need the headers too or the browser hides them from the snippet.
    """

    async def dispatch(self, request, call_next):
        if request.url.path != TRACK_PATH:
            return await call_next(request)

        if request.method == "OPTIONS":
            return StarletteResponse(status_code=204, headers=TRACK_CORS_HEADERS)

        response = await call_next(request)
        for key, value in TRACK_CORS_HEADERS.items():
            response.headers[key] = value
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    tracker = build_tracker_state(settings)
    app.state.tracker = tracker
    tracker.start_sweeper(settings.SWEEP_INTERVAL_SECONDS)
    logger.info(
        f"[STARTUP] Tracker ready (rate limit {settings.RATE_LIMIT_BACKEND}, "
        f"email {'on' if tracker.email_sender.configured else 'off'})"
    )
    try:
        yield
    finally:
        await tracker.aclose()
        logger.info("[STARTUP] Tracker shut down")


async def tracker_error_handler(request: Request, exc: TrackerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"[TRACK] {request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


def create_app(use_lifespan: bool = True) -> FastAPI:
    settings = get_settings()
    status = init_observability(settings)
    logger.info(f"[STARTUP] Observability: {status}")

    app = FastAPI(
        title="OpenWebTrack API",
        description="""
        Self-hosted web analytics.

        - `POST /api/track`: public ingestion endpoint for the browser snippet
        - `/api/websites/{id}/...`: dashboard statistics, settings and team (JWT required)
        - `/api/cron/...`: scheduled jobs (CRON_SECRET required)
        """,
        version="1.0.0",
        lifespan=lifespan if use_lifespan else None,
    )

    # BACKEND_CORS_ORIGINS can be a comma-separated list: "https://app.example.com,http://localhost:3000"
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Added after CORSMiddleware so it runs first
    app.add_middleware(TrackCORSMiddleware)

    app.add_exception_handler(TrackerError, tracker_error_handler)

    app.include_router(track_router.router)
    app.include_router(stats_router.router)
    app.include_router(activity_router.router)
    app.include_router(cron_router.router)
    app.include_router(websites_router.router)
    app.include_router(team_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
