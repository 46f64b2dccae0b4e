"""Broker callback: one snapshot job delivery per request."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from snapshotter.services import get_worker
from snapshotter.workers.snapshot import SnapshotWorker

router = APIRouter(prefix="/api/jobs", tags=["jobs"])
logger = logging.getLogger(__name__)


@router.post("/snapshot")
async def snapshot_job(
    request: Request,
    worker: SnapshotWorker = Depends(get_worker),
) -> JSONResponse:
    # Signature is computed over the raw bytes.
    raw_body = await request.body()
    result = await worker.handle_delivery(raw_body, request.headers)
    return JSONResponse(status_code=result.status_code, content=result.body)
