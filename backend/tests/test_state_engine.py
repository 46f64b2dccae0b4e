from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from snapshotter.extraction.types import SnapshotMetadata
from snapshotter.models import SnapshotStatus
from snapshotter.reasons import (
    RetriableReason,
    TerminalReason,
    blocked_reason_for,
    is_retriable,
    parse_reason,
)
from snapshotter.snapshot_state_service import (
    InvalidTransition,
    SnapshotNotFound,
    request_resnapshot,
    transition_snapshot,
)
from snapshotter.state_engine import (
    can_transition,
    crash_fields,
    deferred_fields,
    invariant_violations,
    processing_fields,
    ready_fields,
    reset_fields,
    retry_fields,
    status_of,
    terminal_fields,
    terminal_status_for,
)

from conftest import NOW, FakeStore


def _metadata() -> SnapshotMetadata:
    return SnapshotMetadata(
        canonical_url="https://example.com/a",
        title="Title",
        byline=None,
        excerpt="Excerpt",
        word_count=42,
        language="en",
        content_sha256="b" * 64,
    )


def test_reason_parsing_and_classification() -> None:
    assert parse_reason("timeout") is RetriableReason.TIMEOUT
    assert parse_reason("NOARCHIVE") is TerminalReason.NOARCHIVE
    assert parse_reason("something_new") is TerminalReason.PARSE_FAILED
    assert is_retriable(RetriableReason.STORAGE_ERROR)
    assert not is_retriable(TerminalReason.FORBIDDEN)


def test_storage_errors_are_recorded_as_fetch_errors() -> None:
    assert blocked_reason_for(RetriableReason.STORAGE_ERROR) == "fetch_error"
    assert blocked_reason_for(TerminalReason.TOO_LARGE) == "too_large"


def test_only_noarchive_ends_blocked() -> None:
    assert terminal_status_for(TerminalReason.NOARCHIVE) == SnapshotStatus.BLOCKED
    for reason in (TerminalReason.FORBIDDEN, TerminalReason.SSRF_BLOCKED, RetriableReason.TIMEOUT):
        assert terminal_status_for(reason) == SnapshotStatus.FAILED


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        ("pending", "processing", True),
        ("processing", "ready", True),
        ("processing", "pending", True),
        ("failed", "processing", True),
        ("ready", "pending", True),
        ("ready", "processing", False),
        ("blocked", "processing", False),
        ("pending", "ready", False),
        ("pending", "blocked", False),
    ],
)
def test_transition_table(current: str, target: str, allowed: bool) -> None:
    assert can_transition(current, target) is allowed


def test_status_of_accepts_enum_reprs() -> None:
    assert status_of("SnapshotStatus.READY") == SnapshotStatus.READY
    assert status_of(None) == SnapshotStatus.PENDING
    assert status_of(SnapshotStatus.BLOCKED) == SnapshotStatus.BLOCKED


def test_field_builders_keep_record_invariants() -> None:
    store = FakeStore()
    snapshot = store.add_snapshot(store.add_save())

    for fields in (
        processing_fields(1),
        deferred_fields(NOW, 500),
        retry_fields(NOW, 300_000, "HTTP 502"),
        ready_fields(NOW, "snapshots/s/a/latest.json.gz", _metadata()),
        terminal_fields(TerminalReason.NOARCHIVE, "opted out"),
        crash_fields("boom"),
        reset_fields(),
    ):
        for name, value in fields.items():
            setattr(snapshot, name, value)
        assert invariant_violations(snapshot) == []


def test_retry_fields_use_the_real_delay() -> None:
    fields = retry_fields(NOW, 1_800_000, "timeout")
    assert fields["next_attempt_at"] == NOW + timedelta(minutes=30)
    assert fields["status"] == "pending"


def test_invariant_violations_report_problems() -> None:
    store = FakeStore()
    snapshot = store.add_snapshot(store.add_save(), status="failed", blocked_reason=None)
    assert invariant_violations(snapshot) == ["failed without blocked_reason"]

    snapshot.status = "ready"
    problems = invariant_violations(snapshot)
    assert "ready without storage_path" in problems


def test_transition_rejects_reopening_a_ready_snapshot() -> None:
    store = FakeStore()
    save = store.add_save()
    snapshot = store.add_snapshot(save, **ready_fields(NOW, "p", _metadata()))

    with pytest.raises(InvalidTransition) as excinfo:
        asyncio.run(transition_snapshot(store, snapshot, processing_fields(1)))

    assert excinfo.value.current == SnapshotStatus.READY
    assert excinfo.value.target == SnapshotStatus.PROCESSING
    assert store.updates == []


def test_transition_raises_when_record_disappears() -> None:
    store = FakeStore()
    save = store.add_save()
    snapshot = store.add_snapshot(save)
    del store.snapshots[save.id]

    with pytest.raises(SnapshotNotFound):
        asyncio.run(transition_snapshot(store, snapshot, processing_fields(1)))


def test_resnapshot_resets_a_ready_record() -> None:
    store = FakeStore()
    save = store.add_save()
    store.add_snapshot(save, attempts=2, **ready_fields(NOW, "p", _metadata()))

    snapshot = asyncio.run(request_resnapshot(store, save.id, save.space_id))

    assert snapshot.status == "pending"
    assert snapshot.attempts == 0
    assert snapshot.storage_path is None
    assert snapshot.fetched_at is None
