"""Snapshot job dispatch: initial enqueue, backoff retries, politeness requeue.

Publishing never raises to the caller. Every outcome comes back as an
``EnqueueResult`` so a failed enqueue can be logged and treated as
"snapshot skipped" without failing the save that triggered it.
"""
from __future__ import annotations

import asyncio
import logging
import math
import random
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

from pydantic import ValidationError

from snapshotter.broker import BrokerError, MessageBroker
from snapshotter.config import settings
from snapshotter.metrics import SNAPSHOT_ENQUEUE_TOTAL
from snapshotter.schemas.job import SnapshotJob

logger = logging.getLogger(__name__)

WORKER_PATH = "/api/jobs/snapshot"

LocalRunner = Callable[[SnapshotJob], Awaitable[Any]]


@dataclass(frozen=True)
class EnqueueResult:
    ok: bool
    message_id: str | None = None
    error: str | None = None


def retry_delay_ms(attempt: int, delays: Sequence[int] | None = None) -> int:
    """Delay before the delivery that follows ``attempt``.

    Attempts past the end of the table reuse its last entry.
    """
    table = list(delays if delays is not None else settings.SNAPSHOT_RETRY_DELAYS_MS)
    if not table:
        return 0
    index = max(attempt - 1, 0)
    return int(table[index] if index < len(table) else table[-1])


def politeness_delay_seconds(wait_ms: int) -> int:
    return max(1, math.ceil(wait_ms / 1000))


def _job_error(exc: ValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else {}
    return f"Invalid snapshot job: {first.get('msg', str(exc))}"


def build_worker_url(app_url: str | None) -> str:
    if not app_url:
        raise ValueError("APP_URL must be set for the snapshot worker callback")
    base = app_url.strip().rstrip("/")
    if not base.startswith(("http://", "https://")):
        scheme = "http" if base.startswith("localhost") else "https"
        base = f"{scheme}://{base}"
    return f"{base}{WORKER_PATH}"


class JobDispatcher:
    def __init__(
        self,
        broker: MessageBroker | None,
        *,
        app_url: str | None = None,
        enabled: bool | None = None,
        local_mode: bool | None = None,
        local_runner: LocalRunner | None = None,
        max_attempts: int | None = None,
        retry_delays_ms: Sequence[int] | None = None,
        initial_jitter_s: int | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.broker = broker
        self.app_url = app_url if app_url is not None else settings.APP_URL
        self.enabled = settings.SNAPSHOTS_ENABLED if enabled is None else enabled
        self.local_mode = settings.SNAPSHOT_LOCAL_MODE if local_mode is None else local_mode
        self.local_runner = local_runner
        self.max_attempts = max_attempts or settings.SNAPSHOT_MAX_ATTEMPTS
        self.retry_delays_ms = list(
            retry_delays_ms if retry_delays_ms is not None else settings.SNAPSHOT_RETRY_DELAYS_MS
        )
        self.initial_jitter_s = (
            settings.SNAPSHOT_INITIAL_JITTER_S if initial_jitter_s is None else initial_jitter_s
        )
        self._rng = rng or random.Random()
        self._inline_tasks: set[asyncio.Task] = set()

    async def enqueue(self, save_id: uuid.UUID, space_id: uuid.UUID, url: str) -> EnqueueResult:
        """Schedule the first attempt for a save."""
        if not self.enabled:
            return self._record("initial", EnqueueResult(ok=False, error="Snapshots are disabled"))
        try:
            job = SnapshotJob(save_id=save_id, space_id=space_id, url=url, attempt=1)
        except ValidationError as exc:
            return self._record("initial", EnqueueResult(ok=False, error=_job_error(exc)))
        jitter = int(self._rng.random() * self.initial_jitter_s) if self.initial_jitter_s > 0 else 0
        result = await self._dispatch(
            job,
            delay_seconds=jitter,
            max_retries=self.max_attempts - 1,
        )
        return self._record("initial", result)

    async def enqueue_retry(
        self, save_id: uuid.UUID, space_id: uuid.UUID, url: str, attempt: int
    ) -> EnqueueResult:
        """Schedule ``attempt + 1`` after the backoff delay for ``attempt``."""
        if not self.enabled:
            return self._record("retry", EnqueueResult(ok=False, error="Snapshots are disabled"))
        if attempt >= self.max_attempts:
            return self._record("retry", EnqueueResult(ok=False, error="Max attempts exceeded"))
        try:
            job = SnapshotJob(save_id=save_id, space_id=space_id, url=url, attempt=attempt + 1)
        except ValidationError as exc:
            return self._record("retry", EnqueueResult(ok=False, error=_job_error(exc)))
        delay_s = retry_delay_ms(attempt, self.retry_delays_ms) // 1000
        result = await self._dispatch(job, delay_seconds=delay_s)
        return self._record("retry", result)

    async def requeue(self, job: SnapshotJob, delay_seconds: int) -> EnqueueResult:
        """Republish the same attempt later (politeness wait, stale pending)."""
        if not self.enabled:
            return self._record("requeue", EnqueueResult(ok=False, error="Snapshots are disabled"))
        result = await self._dispatch(job, delay_seconds=max(0, int(delay_seconds)))
        return self._record("requeue", result)

    def _record(self, kind: str, result: EnqueueResult) -> EnqueueResult:
        SNAPSHOT_ENQUEUE_TOTAL.labels(kind=kind, result="ok" if result.ok else "error").inc()
        if not result.ok:
            logger.warning("Snapshot %s enqueue skipped: %s", kind, result.error)
        return result

    async def _dispatch(
        self,
        job: SnapshotJob,
        *,
        delay_seconds: int,
        max_retries: int | None = None,
    ) -> EnqueueResult:
        if self.local_mode:
            return self._run_inline(job, delay_seconds)

        if self.broker is None:
            return EnqueueResult(ok=False, error="Message broker not configured")

        try:
            worker_url = build_worker_url(self.app_url)
        except ValueError as exc:
            return EnqueueResult(ok=False, error=str(exc))

        try:
            message_id = await self.broker.publish(
                worker_url,
                job.to_message(),
                delay_seconds=delay_seconds,
                max_retries=max_retries,
            )
        except BrokerError as exc:
            logger.error("Failed to publish snapshot job for save=%s: %s", job.save_id, exc)
            return EnqueueResult(ok=False, error=str(exc))

        logger.info(
            "Enqueued snapshot job save=%s attempt=%s delay=%ss message=%s",
            job.save_id,
            job.attempt,
            delay_seconds,
            message_id,
        )
        return EnqueueResult(ok=True, message_id=message_id)

    def _run_inline(self, job: SnapshotJob, delay_seconds: int) -> EnqueueResult:
        if self.local_runner is None:
            return EnqueueResult(ok=False, error="Local mode without an inline runner")

        async def _runner() -> None:
            if delay_seconds > 0:
                await asyncio.sleep(delay_seconds)
            try:
                await self.local_runner(job)
            except Exception:
                logger.exception("Inline snapshot job failed for save=%s", job.save_id)

        task = asyncio.get_running_loop().create_task(_runner())
        self._inline_tasks.add(task)
        task.add_done_callback(self._inline_tasks.discard)
        logger.info("Processing snapshot inline for save=%s attempt=%s", job.save_id, job.attempt)
        return EnqueueResult(ok=True, message_id=f"local-{job.save_id}-{job.attempt}")

    async def drain(self) -> None:
        """Wait for inline jobs still running (shutdown, tests)."""
        if self._inline_tasks:
            await asyncio.gather(*list(self._inline_tasks), return_exceptions=True)
