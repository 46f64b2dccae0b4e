"""Snapshot worker: one job delivery drives one snapshot attempt.

Deliveries are authenticated (broker signature or shared worker secret),
validated, gated by per-domain politeness, run through the content
extractor and object storage, and every outcome is written back to the
snapshot record. An unexpected exception forces the record to ``failed``
so it is never left in ``processing``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from snapshotter.broker import (
    SIGNATURE_HEADER,
    WORKER_SECRET_HEADER,
    SignatureVerifier,
    verify_worker_secret,
)
from snapshotter.config import settings
from snapshotter.dispatcher import JobDispatcher, politeness_delay_seconds, retry_delay_ms
from snapshotter.extraction.types import (
    ContentExtractor,
    ExtractionFailure,
    ExtractionResult,
    ExtractionSuccess,
)
from snapshotter.metrics import (
    SNAPSHOT_JOBS_TOTAL,
    SNAPSHOT_POLITENESS_DEFERRALS_TOTAL,
    SNAPSHOT_PROCESSING_SECONDS,
)
from snapshotter.models import SaveSnapshot
from snapshotter.reasons import FailureReason, RetriableReason, is_retriable, parse_reason
from snapshotter.schemas.job import SnapshotJob
from snapshotter.snapshot_state_service import SnapshotStore, transition_snapshot
from snapshotter.state_engine import (
    FINAL_STATUSES,
    crash_fields,
    deferred_fields,
    processing_fields,
    ready_fields,
    retry_fields,
    status_of,
    terminal_fields,
    terminal_status_for,
)
from snapshotter.storage import (
    SNAPSHOT_CONTENT_TYPE,
    ObjectStorage,
    serialize_snapshot,
    snapshot_storage_path,
)
from snapshotter.throttle import PolitenessGate
from snapshotter.urls import extract_hostname

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WorkerResponse:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


class SnapshotWorker:
    def __init__(
        self,
        *,
        store: SnapshotStore,
        dispatcher: JobDispatcher,
        extractor: ContentExtractor,
        storage: ObjectStorage,
        politeness: PolitenessGate,
        verifier: SignatureVerifier,
        worker_secret: str | None = None,
        enabled: bool | None = None,
        max_attempts: int | None = None,
        timeout_s: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.extractor = extractor
        self.storage = storage
        self.politeness = politeness
        self.verifier = verifier
        self.worker_secret = worker_secret if worker_secret is not None else settings.SNAPSHOT_WORKER_SECRET
        self.enabled = settings.SNAPSHOTS_ENABLED if enabled is None else enabled
        self.max_attempts = max_attempts or settings.SNAPSHOT_MAX_ATTEMPTS
        self.timeout_s = timeout_s or settings.SNAPSHOT_WORKER_TIMEOUT_S
        self._clock = clock

    # ── delivery ──

    def authenticate(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        lowered = {str(k).lower(): v for k, v in headers.items()}
        if self.verifier.verify(lowered.get(SIGNATURE_HEADER), raw_body):
            return True
        return verify_worker_secret(lowered.get(WORKER_SECRET_HEADER), self.worker_secret)

    async def handle_delivery(self, raw_body: bytes, headers: Mapping[str, str]) -> WorkerResponse:
        """Entry point for an inbound job delivery (HTTP body + headers)."""
        if not self.enabled:
            return WorkerResponse(503, {"error": "Snapshots are disabled"})

        if not self.authenticate(raw_body, headers):
            logger.warning("Rejected unauthenticated snapshot delivery")
            SNAPSHOT_JOBS_TOTAL.labels(outcome="unauthorized").inc()
            return WorkerResponse(401, {"error": "Unauthorized"})

        try:
            job = SnapshotJob.model_validate_json(raw_body)
        except ValidationError as exc:
            logger.warning("Invalid snapshot payload: %s", exc.errors(include_url=False))
            SNAPSHOT_JOBS_TOTAL.labels(outcome="invalid").inc()
            return WorkerResponse(400, {"error": "Invalid payload"})

        return await self.process_job(job)

    # ── processing ──

    async def process_job(self, job: SnapshotJob) -> WorkerResponse:
        """Run one attempt for an already authenticated and validated job."""
        logger.info("Processing snapshot save=%s url=%s attempt=%s", job.save_id, job.url, job.attempt)
        started = time.perf_counter()
        response: WorkerResponse | None = None
        try:
            response = await self._process(job)
        except Exception as exc:
            logger.exception("Snapshot job crashed for save=%s", job.save_id)
            await self._force_failed(job, str(exc) or type(exc).__name__)
            response = WorkerResponse(500, {"status": "error", "message": str(exc) or type(exc).__name__})
        finally:
            SNAPSHOT_PROCESSING_SECONDS.observe(time.perf_counter() - started)

        outcome = str(response.body.get("status") or response.status_code)
        SNAPSHOT_JOBS_TOTAL.labels(outcome=outcome).inc()
        logger.info(
            "Snapshot job finished save=%s attempt=%s outcome=%s",
            job.save_id,
            job.attempt,
            outcome,
        )
        return response

    async def _process(self, job: SnapshotJob) -> WorkerResponse:
        snapshot = await self.store.get_snapshot(job.save_id)
        if snapshot is None:
            logger.warning("No snapshot record for save=%s, dropping job", job.save_id)
            return WorkerResponse(200, {"status": "skipped", "reason": "missing_record"})
        if status_of(snapshot.status) in FINAL_STATUSES:
            logger.info("Snapshot save=%s already %s, ignoring redelivery", job.save_id, snapshot.status)
            return WorkerResponse(200, {"status": status_of(snapshot.status).value, "replay": True})

        snapshot = await transition_snapshot(
            self.store, snapshot, processing_fields(job.attempt), reason="delivery"
        )

        domain = extract_hostname(job.url) or ""
        decision = await self.politeness.check_politeness(domain)
        if not decision.allowed:
            return await self._defer(snapshot, job, domain, decision.wait_ms)

        path = snapshot_storage_path(job.space_id, job.save_id)
        try:
            result = await asyncio.wait_for(self._extract_and_upload(job, path), timeout=self.timeout_s)
        except TimeoutError:
            result = ExtractionFailure(
                RetriableReason.TIMEOUT, f"Snapshot exceeded the {self.timeout_s}s worker budget"
            )
        finally:
            await self.politeness.mark_fetched(domain)

        if isinstance(result, ExtractionFailure):
            return await self._fail(snapshot, job, parse_reason(result.reason), result.message)
        return await self._mark_ready(snapshot, job, result, path)

    async def _extract_and_upload(self, job: SnapshotJob, path: str) -> ExtractionResult:
        result = await self.extractor.process(job.url)
        if isinstance(result, ExtractionFailure):
            return result
        upload = await self.storage.put(
            path,
            serialize_snapshot(result.content),
            content_type=SNAPSHOT_CONTENT_TYPE,
            overwrite=True,
        )
        if not upload.ok:
            return ExtractionFailure(
                RetriableReason.STORAGE_ERROR, f"Storage upload failed: {upload.error}"
            )
        return result

    async def _defer(
        self, snapshot: SaveSnapshot, job: SnapshotJob, domain: str, wait_ms: int
    ) -> WorkerResponse:
        await transition_snapshot(
            self.store, snapshot, deferred_fields(self._clock(), wait_ms), reason="politeness"
        )
        SNAPSHOT_POLITENESS_DEFERRALS_TOTAL.labels(domain=domain[:64]).inc()
        requeued = await self.dispatcher.requeue(job, politeness_delay_seconds(wait_ms))
        if not requeued.ok:
            logger.warning("Politeness requeue failed for save=%s: %s", job.save_id, requeued.error)
        return WorkerResponse(200, {"status": "delayed", "waitMs": wait_ms})

    async def _fail(
        self,
        snapshot: SaveSnapshot,
        job: SnapshotJob,
        reason: FailureReason,
        message: str,
    ) -> WorkerResponse:
        if is_retriable(reason) and job.attempt < self.max_attempts:
            retry = await self.dispatcher.enqueue_retry(
                job.save_id, job.space_id, job.url, job.attempt
            )
            delay_ms = retry_delay_ms(job.attempt, self.dispatcher.retry_delays_ms)
            await transition_snapshot(
                self.store,
                snapshot,
                retry_fields(self._clock(), delay_ms, message),
                reason=reason.value,
            )
            logger.info(
                "Snapshot save=%s attempt=%s failed with %s, retry scheduled=%s",
                job.save_id,
                job.attempt,
                reason.value,
                retry.ok,
            )
            return WorkerResponse(
                200,
                {
                    "status": "retrying",
                    "reason": reason.value,
                    "message": message,
                    "retry": {
                        "ok": retry.ok,
                        "messageId": retry.message_id,
                        "error": retry.error,
                    },
                },
            )

        final_status = terminal_status_for(reason)
        await transition_snapshot(
            self.store, snapshot, terminal_fields(reason, message), reason=reason.value
        )
        logger.info(
            "Snapshot save=%s ended %s (%s): %s", job.save_id, final_status.value, reason.value, message
        )
        return WorkerResponse(
            200, {"status": final_status.value, "reason": reason.value, "message": message}
        )

    async def _mark_ready(
        self, snapshot: SaveSnapshot, job: SnapshotJob, result: ExtractionSuccess, path: str
    ) -> WorkerResponse:
        metadata = result.metadata
        await transition_snapshot(
            self.store, snapshot, ready_fields(self._clock(), path, metadata), reason="ready"
        )
        await self._backfill_save(job, result)
        return WorkerResponse(
            200, {"status": "ready", "wordCount": metadata.word_count, "title": metadata.title}
        )

    async def _backfill_save(self, job: SnapshotJob, result: ExtractionSuccess) -> None:
        metadata = result.metadata
        candidates = {
            "title": metadata.title,
            "site_name": metadata.site_name,
            "image_url": metadata.image_url,
            "description": metadata.description or metadata.excerpt,
        }
        try:
            filled = await self.store.backfill_save_metadata(job.save_id, candidates)
        except Exception as exc:
            logger.warning("Save metadata backfill failed for save=%s: %s", job.save_id, exc)
            return
        if filled:
            logger.info("Backfilled save=%s fields=%s", job.save_id, ",".join(filled))

    async def _force_failed(self, job: SnapshotJob, message: str) -> None:
        try:
            await self.store.update_snapshot(job.save_id, crash_fields(message))
        except Exception:
            logger.exception("Could not mark snapshot failed for save=%s", job.save_id)
