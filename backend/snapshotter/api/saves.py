"""Save creation and per-save snapshot endpoints for the owning user.

Caller identity comes from the upstream auth gateway as ``X-User-Id`` and
``X-Space-Id`` headers.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse

from snapshotter.config import settings
from snapshotter.dispatcher import JobDispatcher
from snapshotter.models import Save, SnapshotStatus
from snapshotter.schemas.job import SnapshotJob
from snapshotter.schemas.snapshot import (
    CreateSavePayload,
    RequestSnapshotPayload,
    SnapshotRecordOut,
    TriggerSnapshotPayload,
    dump_camel,
)
from snapshotter.services import get_dispatcher, get_quota_gate, get_storage, get_store, get_worker
from snapshotter.snapshot_state_service import SnapshotStore, request_resnapshot
from snapshotter.state_engine import status_of
from snapshotter.storage import ObjectStorage, deserialize_snapshot
from snapshotter.throttle import UserQuotaGate
from snapshotter.urls import normalize_url
from snapshotter.workers.snapshot import SnapshotWorker

router = APIRouter(tags=["snapshots"])
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    user_id: str
    space_id: uuid.UUID


def get_caller(
    x_user_id: str | None = Header(default=None),
    x_space_id: str | None = Header(default=None),
) -> Caller:
    if not x_user_id or not x_space_id:
        raise HTTPException(status_code=401, detail="Missing caller identity")
    try:
        space_id = uuid.UUID(x_space_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Malformed space id")
    return Caller(user_id=x_user_id, space_id=space_id)


async def _owned_save(store: SnapshotStore, save_id: uuid.UUID, caller: Caller) -> Save:
    save = await store.get_save(save_id)
    if save is None or save.space_id != caller.space_id:
        raise HTTPException(status_code=404, detail="Save not found")
    return save


@router.post("/api/saves", status_code=201)
async def create_save(
    payload: CreateSavePayload,
    caller: Caller = Depends(get_caller),
    store: SnapshotStore = Depends(get_store),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    """Create a save and kick off its snapshot. Archiving problems never fail the save."""
    url = payload.url.strip()
    normalized = normalize_url(url)
    if normalized is None:
        raise HTTPException(status_code=400, detail="URL must be an absolute http(s) URL")

    existing = await store.find_duplicate_save(caller.space_id, normalized)
    if existing is not None:
        return JSONResponse(
            status_code=409,
            content={"error": "Duplicate save", "existingSaveId": str(existing.id)},
        )

    save = await store.create_save(
        space_id=caller.space_id,
        url=url,
        normalized_url=normalized,
        created_by=caller.user_id,
        title=payload.title or None,
        description=payload.description or None,
    )

    snapshot_state = "skipped"
    if settings.SNAPSHOTS_ENABLED:
        try:
            await store.create_pending(save.id, caller.space_id)
            result = await dispatcher.enqueue(save.id, caller.space_id, url)
            if result.ok:
                snapshot_state = SnapshotStatus.PENDING.value
        except Exception:
            logger.exception("Failed to schedule snapshot for save=%s", save.id)

    return {
        "id": str(save.id),
        "spaceId": str(save.space_id),
        "url": save.url,
        "normalizedUrl": save.normalized_url,
        "snapshot": snapshot_state,
    }


@router.get("/api/saves/{save_id}/snapshot")
async def get_save_snapshot(
    save_id: uuid.UUID,
    includeContent: bool = False,
    caller: Caller = Depends(get_caller),
    store: SnapshotStore = Depends(get_store),
    storage: ObjectStorage = Depends(get_storage),
):
    if not settings.SNAPSHOTS_ENABLED:
        return None

    await _owned_save(store, save_id, caller)
    snapshot = await store.get_snapshot(save_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Snapshot not found")

    body: dict = {"snapshot": dump_camel(SnapshotRecordOut.model_validate(snapshot))}
    if includeContent and status_of(snapshot.status) == SnapshotStatus.READY and snapshot.storage_path:
        try:
            data = await storage.get(snapshot.storage_path)
            if data is not None:
                body["content"] = deserialize_snapshot(data).to_dict()
        except Exception as exc:
            logger.error("Failed to load snapshot content for save=%s: %s", save_id, exc)
    return body


@router.post("/api/saves/{save_id}/snapshot")
async def request_save_snapshot(
    save_id: uuid.UUID,
    payload: RequestSnapshotPayload | None = None,
    caller: Caller = Depends(get_caller),
    store: SnapshotStore = Depends(get_store),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
    quota: UserQuotaGate = Depends(get_quota_gate),
):
    """Request a first snapshot or a forced re-snapshot, within the user's quota."""
    if not settings.SNAPSHOTS_ENABLED:
        raise HTTPException(status_code=412, detail="Snapshots are disabled")
    force = payload.force if payload is not None else False

    save = await _owned_save(store, save_id, caller)

    rate = await quota.check_user_rate_limit(caller.user_id)
    if not rate.allowed:
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Try again in 24 hours.")

    existing = await store.get_snapshot(save_id)
    if existing is not None:
        current = status_of(existing.status)
        if current == SnapshotStatus.PROCESSING:
            return {"status": "processing", "message": "Snapshot is already being processed"}
        if current == SnapshotStatus.READY and not force:
            return {
                "status": "ready",
                "message": "Snapshot already exists. Use force=true to re-snapshot.",
            }

    await request_resnapshot(store, save_id, save.space_id)
    result = await dispatcher.enqueue(save_id, save.space_id, save.url)
    if not result.ok:
        raise HTTPException(status_code=500, detail=result.error or "Failed to enqueue snapshot job")

    return {
        "status": "pending",
        "message": "Snapshot job enqueued",
        "remaining": rate.remaining,
    }


@router.get("/api/snapshots/quota")
async def get_snapshot_quota(
    caller: Caller = Depends(get_caller),
    quota: UserQuotaGate = Depends(get_quota_gate),
):
    if not settings.SNAPSHOTS_ENABLED:
        return {"enabled": False, "used": 0, "remaining": 0, "limit": 0}
    usage = await quota.get_user_quota(caller.user_id)
    return {"enabled": True, "used": usage.used, "remaining": usage.remaining, "limit": usage.limit}


@router.post("/api/dev/trigger-snapshot")
async def trigger_snapshot(
    payload: TriggerSnapshotPayload,
    store: SnapshotStore = Depends(get_store),
    worker: SnapshotWorker = Depends(get_worker),
) -> JSONResponse:
    """Development only: run the worker inline for one save, bypassing the broker."""
    if not settings.is_development:
        return JSONResponse(
            status_code=403,
            content={"error": "This endpoint is only available in development"},
        )

    save = await store.get_save(payload.save_id)
    if save is None:
        return JSONResponse(status_code=404, content={"error": "Save not found"})

    await request_resnapshot(store, save.id, save.space_id)
    try:
        job = SnapshotJob(save_id=save.id, space_id=save.space_id, url=save.url, attempt=1)
    except ValueError as exc:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    result = await worker.process_job(job)
    return JSONResponse(status_code=result.status_code, content=result.body)
