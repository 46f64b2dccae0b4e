from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any

import pytest

from snapshotter.broker import BrokerError, SignatureVerifier
from snapshotter.dispatcher import JobDispatcher
from snapshotter.extraction.types import (
    ExtractionFailure,
    ExtractionSuccess,
    SnapshotContent,
    SnapshotMetadata,
)
from snapshotter.models import Save, SaveSnapshot, SnapshotStatus
from snapshotter.snapshot_state_service import BACKFILL_FIELDS, StaleSnapshot
from snapshotter.state_engine import reset_fields
from snapshotter.storage import StorageResult
from snapshotter.throttle import PolitenessGate
from snapshotter.workers.snapshot import SnapshotWorker

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
WORKER_SECRET = "test-worker-secret"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCache:
    """In-memory stand-in for the Redis commands the gates use, with TTLs."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock or FakeClock()
        self.data: dict[str, str] = {}
        self.expiry: dict[str, float] = {}

    def _evict(self, key: str) -> None:
        deadline = self.expiry.get(key)
        if deadline is not None and self.clock() >= deadline:
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    async def get(self, key: str) -> str | None:
        self._evict(key)
        return self.data.get(key)

    async def set(self, key: str, value: Any, ex: int | None = None) -> bool:
        self.data[key] = str(value)
        if ex:
            self.expiry[key] = self.clock() + ex
        else:
            self.expiry.pop(key, None)
        return True

    async def incr(self, key: str) -> int:
        self._evict(key)
        value = int(self.data.get(key, "0")) + 1
        self.data[key] = str(value)
        return value

    async def expire(self, key: str, seconds: int) -> bool:
        self.expiry[key] = self.clock() + seconds
        return True


class BrokenCache:
    async def get(self, key: str) -> None:
        raise ConnectionError("cache down")

    async def set(self, key: str, value: Any, ex: int | None = None) -> None:
        raise ConnectionError("cache down")

    async def incr(self, key: str) -> None:
        raise ConnectionError("cache down")

    async def expire(self, key: str, seconds: int) -> None:
        raise ConnectionError("cache down")


@dataclass
class Published:
    url: str
    body: dict[str, Any]
    delay_seconds: int
    max_retries: int | None


class FakeBroker:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published: list[Published] = []

    async def publish(
        self,
        url: str,
        body: dict[str, Any],
        *,
        delay_seconds: int = 0,
        max_retries: int | None = None,
    ) -> str:
        if self.fail:
            raise BrokerError("broker unreachable")
        self.published.append(Published(url, body, delay_seconds, max_retries))
        return f"msg-{len(self.published)}"


class FakeStorage:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.objects: dict[str, bytes] = {}

    async def put(
        self, path: str, data: bytes, *, content_type: str, overwrite: bool = True
    ) -> StorageResult:
        if self.fail:
            return StorageResult(ok=False, path=path, error="bucket unavailable")
        self.objects[path] = data
        return StorageResult(ok=True, path=path)

    async def get(self, path: str) -> bytes | None:
        return self.objects.get(path)


class FakeExtractor:
    def __init__(self, result: Any = None) -> None:
        self.result = result if result is not None else make_success()
        self.calls: list[str] = []

    async def process(self, url: str):
        self.calls.append(url)
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


class FakeStore:
    """Dict-backed ``SnapshotStore`` holding transient ORM instances."""

    def __init__(self) -> None:
        self.saves: dict[uuid.UUID, Save] = {}
        self.snapshots: dict[uuid.UUID, SaveSnapshot] = {}
        self.updates: list[dict[str, Any]] = []

    def add_save(self, url: str = "https://example.com/article", **fields: Any) -> Save:
        save = Save(
            id=fields.pop("id", uuid.uuid4()),
            space_id=fields.pop("space_id", uuid.uuid4()),
            url=url,
            normalized_url=fields.pop("normalized_url", None),
            created_by=fields.pop("created_by", "user-1"),
            title=fields.pop("title", None),
            description=fields.pop("description", None),
            site_name=fields.pop("site_name", None),
            image_url=fields.pop("image_url", None),
            created_at=NOW,
            updated_at=NOW,
        )
        self.saves[save.id] = save
        return save

    def add_snapshot(self, save: Save, **fields: Any) -> SaveSnapshot:
        values = {**reset_fields(), **fields}
        snapshot = SaveSnapshot(
            save_id=save.id,
            space_id=save.space_id,
            created_at=NOW,
            updated_at=fields.pop("updated_at", NOW),
            **{k: v for k, v in values.items() if k != "updated_at"},
        )
        self.snapshots[save.id] = snapshot
        return snapshot

    async def get_snapshot(self, save_id: uuid.UUID) -> SaveSnapshot | None:
        return self.snapshots.get(save_id)

    async def get_save(self, save_id: uuid.UUID) -> Save | None:
        return self.saves.get(save_id)

    async def create_pending(self, save_id: uuid.UUID, space_id: uuid.UUID) -> SaveSnapshot:
        if save_id in self.snapshots:
            return self.snapshots[save_id]
        return self.add_snapshot(self.saves[save_id])

    async def update_snapshot(self, save_id: uuid.UUID, values: dict[str, Any]) -> SaveSnapshot | None:
        snapshot = self.snapshots.get(save_id)
        if snapshot is None:
            return None
        self.updates.append(dict(values))
        for name, value in values.items():
            setattr(snapshot, name, value)
        return snapshot

    async def reset_for_resnapshot(self, save_id: uuid.UUID, space_id: uuid.UUID) -> SaveSnapshot:
        if save_id not in self.snapshots:
            return self.add_snapshot(self.saves[save_id])
        await self.update_snapshot(save_id, reset_fields())
        return self.snapshots[save_id]

    async def backfill_save_metadata(
        self, save_id: uuid.UUID, candidates: dict[str, str | None]
    ) -> list[str]:
        save = self.saves.get(save_id)
        if save is None:
            return []
        filled = []
        for name in BACKFILL_FIELDS:
            if candidates.get(name) and not getattr(save, name):
                setattr(save, name, candidates[name])
                filled.append(name)
        return filled

    async def find_stale(
        self, *, processing_before: datetime, pending_due_before: datetime, limit: int
    ) -> list[StaleSnapshot]:
        out = []
        for snapshot in self.snapshots.values():
            status = snapshot.status
            if status == SnapshotStatus.PROCESSING.value and snapshot.updated_at < processing_before:
                out.append(StaleSnapshot(snapshot, self.saves[snapshot.save_id].url))
            elif status == SnapshotStatus.PENDING.value:
                due = snapshot.next_attempt_at or snapshot.updated_at
                if due < pending_due_before:
                    out.append(StaleSnapshot(snapshot, self.saves[snapshot.save_id].url))
        return out[:limit]

    async def find_duplicate_save(self, space_id: uuid.UUID, normalized_url: str) -> Save | None:
        for save in self.saves.values():
            if save.space_id == space_id and save.normalized_url == normalized_url:
                return save
        return None

    async def create_save(
        self,
        *,
        space_id: uuid.UUID,
        url: str,
        normalized_url: str | None,
        created_by: str,
        title: str | None = None,
        description: str | None = None,
    ) -> Save:
        return self.add_save(
            url,
            space_id=space_id,
            normalized_url=normalized_url,
            created_by=created_by,
            title=title,
            description=description,
        )


def make_success(title: str = "A Readable Article", words: int = 120) -> ExtractionSuccess:
    text = " ".join(["word"] * words)
    content = SnapshotContent(
        title=title,
        byline="Jane Writer",
        content=f"<p>{text}</p>",
        text_content=text,
        excerpt="word word word...",
        site_name="Example News",
        language="en",
        word_count=words,
        image_url="https://example.com/cover.png",
    )
    metadata = SnapshotMetadata(
        canonical_url="https://example.com/article",
        title=title,
        byline="Jane Writer",
        excerpt="word word word...",
        word_count=words,
        language="en",
        content_sha256="a" * 64,
        site_name="Example News",
        image_url="https://example.com/cover.png",
        description="An article about words",
    )
    return ExtractionSuccess(content=content, metadata=metadata)


def make_failure(reason, message: str = "boom") -> ExtractionFailure:
    return ExtractionFailure(reason, message)


def job_body(save: Save, attempt: int = 1, url: str | None = None) -> dict[str, Any]:
    return {
        "saveId": str(save.id),
        "spaceId": str(save.space_id),
        "url": url or save.url,
        "attempt": attempt,
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> FakeCache:
    return FakeCache(clock)


@pytest.fixture
def env(cache: FakeCache, clock: FakeClock) -> SimpleNamespace:
    """A worker wired to in-memory collaborators."""
    store = FakeStore()
    broker = FakeBroker()
    storage = FakeStorage()
    extractor = FakeExtractor()
    dispatcher = JobDispatcher(
        broker,
        app_url="https://app.example.test",
        enabled=True,
        local_mode=False,
        initial_jitter_s=0,
    )
    worker = SnapshotWorker(
        store=store,
        dispatcher=dispatcher,
        extractor=extractor,
        storage=storage,
        politeness=PolitenessGate(cache, clock=clock),
        verifier=SignatureVerifier(None),
        worker_secret=WORKER_SECRET,
        enabled=True,
        clock=lambda: NOW,
    )
    return SimpleNamespace(
        store=store,
        broker=broker,
        storage=storage,
        extractor=extractor,
        dispatcher=dispatcher,
        worker=worker,
        cache=cache,
        clock=clock,
    )
