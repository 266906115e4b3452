from __future__ import annotations

import time
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from discotrack.config import get_settings, get_tracker_config
from discotrack.errors import StorageError
from discotrack.pipeline.notifier import DiscordNotifier
from discotrack.pipeline.tracker import Tracker
from discotrack.storage.database import init_db, dispose_db, get_session_factory
from discotrack.storage.snapshots import get_snapshot_store
from discotrack.utils.logging import setup_logging
from discotrack.api.changes import router as changes_router
from discotrack.api.health import router as health_router

logger = structlog.get_logger()


def build_tracker() -> Tracker:
    config = get_tracker_config()
    route = config.webhook_route()
    return Tracker(
        services=config.service_descriptors(),
        snapshots=get_snapshot_store(),
        session_factory=get_session_factory(),
        notifier=DiscordNotifier(route) if route else None,
        check_interval=config.check_interval,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_level)

    # ConfigError propagates and aborts startup
    config = get_tracker_config()
    await init_db()

    tracker = build_tracker()
    app.state.tracker = tracker
    app.state.started_at = time.monotonic()
    logger.info(
        "tracker_configured",
        services=len(config.services),
        check_interval=config.check_interval,
        discord_enabled=tracker.notifications_enabled,
    )
    tracker.start()
    try:
        yield
    finally:
        await tracker.stop(settings.shutdown_grace_seconds)
        await dispose_db()


app = FastAPI(title="Discovery Document Tracker", version="0.1.0", lifespan=lifespan)
app.state.started_at = time.monotonic()

app.include_router(changes_router)
app.include_router(health_router)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("change_log_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": "Change log unavailable"})
