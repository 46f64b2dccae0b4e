"""FastAPI application: health, metrics, job callback and snapshot APIs."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    generate_latest,
    multiprocess,
)
from starlette.responses import PlainTextResponse, Response

from snapshotter.api.jobs import router as jobs_router
from snapshotter.api.saves import router as saves_router
from snapshotter.config import settings
from snapshotter.logging_config import setup_logging
from snapshotter.services import get_dispatcher

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Logging setup on start, inline job drain on shutdown."""
    setup_logging()
    logger.info(
        "Snapshot service starting",
        extra={"env": settings.APP_ENV, "snapshots_enabled": settings.SNAPSHOTS_ENABLED},
    )
    if settings.SNAPSHOT_LOCAL_MODE and not settings.is_development:
        logger.warning("SNAPSHOT_LOCAL_MODE is enabled outside development")
    yield
    await get_dispatcher().drain()
    logger.info("Snapshot service shutting down")


app = FastAPI(
    title="Backpocket Snapshots",
    version="0.1.0",
    description="Archives saved pages as readable snapshots",
    lifespan=lifespan,
)

app.include_router(jobs_router)
app.include_router(saves_router)


# ── Health ──
@app.get("/health", tags=["ops"])
async def health() -> dict[str, str]:
    """Liveness probe."""
    return {"status": "ok", "service": "backpocket-snapshots"}


# ── Prometheus Metrics ──
@app.get("/metrics", tags=["ops"])
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    try:
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        data = generate_latest(registry)
    except ValueError:
        # Not running in multiprocess mode
        data = generate_latest()
    return PlainTextResponse(content=data, media_type=CONTENT_TYPE_LATEST)
