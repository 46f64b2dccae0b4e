"""Periodic recovery of snapshot records that stopped progressing.

* ``processing`` longer than the worker could possibly run: the delivery
  died. Retry while the attempt budget lasts, else fail with ``fetch_error``.
* ``pending`` well past its ``next_attempt_at`` (or never scheduled): the
  message was lost or never published. Republish at the current attempt.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from snapshotter.celery_app import celery
from snapshotter.config import settings
from snapshotter.dispatcher import JobDispatcher, retry_delay_ms
from snapshotter.models import SnapshotStatus
from snapshotter.reasons import TerminalReason
from snapshotter.schemas.job import SnapshotJob
from snapshotter.snapshot_state_service import (
    SnapshotStore,
    StaleSnapshot,
    transition_snapshot,
)
from snapshotter.state_engine import (
    crash_fields,
    deferred_fields,
    retry_fields,
    status_of,
    terminal_fields,
)

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    retried: int = 0
    failed: int = 0
    republished: int = 0


@celery.task(name="snapshotter.workers.sweeper.run_snapshot_sweep")
def run_snapshot_sweep() -> dict[str, int]:
    report = asyncio.run(_run_snapshot_sweep())
    return {"retried": report.retried, "failed": report.failed, "republished": report.republished}


async def _run_snapshot_sweep() -> SweepReport:
    from snapshotter.db import engine
    from snapshotter.services import get_dispatcher, get_store

    if not settings.SNAPSHOTS_ENABLED:
        return SweepReport()
    dispatcher = get_dispatcher()
    try:
        report = await sweep_stale_snapshots(get_store(), dispatcher)
        await dispatcher.drain()
    finally:
        await engine.dispose()
    return report


async def sweep_stale_snapshots(
    store: SnapshotStore,
    dispatcher: JobDispatcher,
    *,
    now: datetime | None = None,
    stale_processing_s: int | None = None,
    stale_pending_s: int | None = None,
    batch_size: int | None = None,
) -> SweepReport:
    now = now or datetime.now(timezone.utc)
    stale_processing_s = stale_processing_s or settings.SWEEPER_STALE_PROCESSING_S
    stale_pending_s = stale_pending_s or settings.SWEEPER_STALE_PENDING_S
    report = SweepReport()

    stale = await store.find_stale(
        processing_before=now - timedelta(seconds=stale_processing_s),
        pending_due_before=now - timedelta(seconds=stale_pending_s),
        limit=batch_size or settings.SWEEPER_BATCH_SIZE,
    )
    for item in stale:
        try:
            await _recover(store, dispatcher, item, now, report)
        except Exception:
            logger.exception("Sweep failed for snapshot save=%s", item.snapshot.save_id)

    if stale:
        logger.info(
            "Snapshot sweep: %s retried, %s failed, %s republished",
            report.retried,
            report.failed,
            report.republished,
        )
    return report


async def _recover(
    store: SnapshotStore,
    dispatcher: JobDispatcher,
    item: StaleSnapshot,
    now: datetime,
    report: SweepReport,
) -> None:
    snapshot = item.snapshot
    attempt = max(1, int(snapshot.attempts or 0))

    try:
        job = SnapshotJob(
            save_id=snapshot.save_id,
            space_id=snapshot.space_id,
            url=item.url,
            attempt=min(attempt, dispatcher.max_attempts),
        )
    except ValidationError:
        await transition_snapshot(
            store,
            snapshot,
            terminal_fields(TerminalReason.INVALID_URL, f"Save URL is not fetchable: {item.url}"),
            reason="sweep_invalid_url",
        )
        report.failed += 1
        return

    if status_of(snapshot.status) == SnapshotStatus.PROCESSING:
        if attempt < dispatcher.max_attempts:
            await dispatcher.enqueue_retry(job.save_id, job.space_id, job.url, attempt)
            await transition_snapshot(
                store,
                snapshot,
                retry_fields(
                    now,
                    retry_delay_ms(attempt, dispatcher.retry_delays_ms),
                    "Worker did not finish the attempt",
                ),
                reason="stale_processing",
            )
            report.retried += 1
        else:
            await transition_snapshot(
                store,
                snapshot,
                crash_fields("Worker did not finish the final attempt"),
                reason="stale_processing",
            )
            report.failed += 1
        return

    result = await dispatcher.requeue(job, 0)
    if result.ok:
        # Reset the clock so the record is not republished on every sweep.
        await transition_snapshot(store, snapshot, deferred_fields(now, 0), reason="stale_pending")
        report.republished += 1
