"""Snapshot status state machine.

Owns which status transitions are legal and which columns each outcome
writes, so that the record invariants hold after every update:

* ``pending``/``processing``: no ``blocked_reason``, no stored content.
* ``ready``: ``storage_path``, ``fetched_at`` and metadata set,
  ``blocked_reason`` and ``error_message`` cleared.
* ``blocked``/``failed``: ``blocked_reason`` carries the final reason.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from snapshotter.extraction.types import SnapshotMetadata
from snapshotter.models.snapshot import SaveSnapshot, SnapshotStatus
from snapshotter.reasons import FailureReason, RetriableReason, TerminalReason, blocked_reason_for

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[SnapshotStatus, frozenset[SnapshotStatus]] = {
    SnapshotStatus.PENDING: frozenset(
        {SnapshotStatus.PROCESSING, SnapshotStatus.PENDING, SnapshotStatus.FAILED}
    ),
    SnapshotStatus.PROCESSING: frozenset(
        {
            SnapshotStatus.PROCESSING,
            SnapshotStatus.PENDING,
            SnapshotStatus.READY,
            SnapshotStatus.BLOCKED,
            SnapshotStatus.FAILED,
        }
    ),
    SnapshotStatus.FAILED: frozenset(
        {SnapshotStatus.PROCESSING, SnapshotStatus.PENDING, SnapshotStatus.FAILED}
    ),
    SnapshotStatus.READY: frozenset({SnapshotStatus.PENDING, SnapshotStatus.FAILED}),
    SnapshotStatus.BLOCKED: frozenset({SnapshotStatus.PENDING, SnapshotStatus.FAILED}),
}

# Statuses a new delivery must not reopen (only a user reset can).
FINAL_STATUSES = frozenset({SnapshotStatus.READY, SnapshotStatus.BLOCKED})

_CONTENT_FIELDS = (
    "fetched_at",
    "storage_path",
    "canonical_url",
    "title",
    "byline",
    "excerpt",
    "word_count",
    "language",
    "content_sha256",
)


def status_of(value: SnapshotStatus | str | None) -> SnapshotStatus:
    if isinstance(value, SnapshotStatus):
        return value
    raw = str(value or SnapshotStatus.PENDING.value)
    if raw.startswith("SnapshotStatus."):
        return SnapshotStatus[raw.split(".", 1)[1]]
    return SnapshotStatus(raw)


def can_transition(current: SnapshotStatus | str, target: SnapshotStatus | str) -> bool:
    return status_of(target) in ALLOWED_TRANSITIONS[status_of(current)]


def terminal_status_for(reason: FailureReason) -> SnapshotStatus:
    """``noarchive`` is the owner's opt-out and is recorded as blocked."""
    if reason is TerminalReason.NOARCHIVE:
        return SnapshotStatus.BLOCKED
    return SnapshotStatus.FAILED


def _cleared_content() -> dict[str, Any]:
    return {name: None for name in _CONTENT_FIELDS}


def processing_fields(attempt: int) -> dict[str, Any]:
    return {
        **_cleared_content(),
        "status": SnapshotStatus.PROCESSING.value,
        "attempts": attempt,
        "blocked_reason": None,
    }


def deferred_fields(now: datetime, wait_ms: int) -> dict[str, Any]:
    """Politeness wait: back to pending with a concrete resume time."""
    return {
        "status": SnapshotStatus.PENDING.value,
        "blocked_reason": None,
        "next_attempt_at": now + timedelta(milliseconds=wait_ms),
    }


def retry_fields(now: datetime, delay_ms: int, message: str) -> dict[str, Any]:
    return {
        "status": SnapshotStatus.PENDING.value,
        "blocked_reason": None,
        "error_message": message,
        "next_attempt_at": now + timedelta(milliseconds=delay_ms),
    }


def terminal_fields(reason: FailureReason, message: str) -> dict[str, Any]:
    return {
        **_cleared_content(),
        "status": terminal_status_for(reason).value,
        "blocked_reason": blocked_reason_for(reason),
        "error_message": message,
        "next_attempt_at": None,
    }


def crash_fields(message: str) -> dict[str, Any]:
    return terminal_fields(RetriableReason.FETCH_ERROR, message)


def ready_fields(now: datetime, storage_path: str, metadata: SnapshotMetadata) -> dict[str, Any]:
    return {
        "status": SnapshotStatus.READY.value,
        "blocked_reason": None,
        "error_message": None,
        "next_attempt_at": None,
        "fetched_at": now,
        "storage_path": storage_path,
        "canonical_url": metadata.canonical_url,
        "title": metadata.title,
        "byline": metadata.byline,
        "excerpt": metadata.excerpt,
        "word_count": metadata.word_count,
        "language": metadata.language,
        "content_sha256": metadata.content_sha256,
    }


def reset_fields() -> dict[str, Any]:
    """User-requested (re-)snapshot: a fresh pending record."""
    return {
        **_cleared_content(),
        "status": SnapshotStatus.PENDING.value,
        "attempts": 0,
        "blocked_reason": None,
        "error_message": None,
        "next_attempt_at": None,
    }


def invariant_violations(snapshot: SaveSnapshot) -> list[str]:
    """Describe every record invariant the snapshot currently breaks."""
    status = status_of(snapshot.status)
    problems: list[str] = []

    if status in (SnapshotStatus.BLOCKED, SnapshotStatus.FAILED):
        if not snapshot.blocked_reason:
            problems.append(f"{status.value} without blocked_reason")
    elif snapshot.blocked_reason is not None:
        problems.append(f"blocked_reason set while {status.value}")

    if status == SnapshotStatus.READY:
        for name in ("storage_path", "fetched_at", "content_sha256", "word_count"):
            if getattr(snapshot, name) is None:
                problems.append(f"ready without {name}")
    else:
        for name in ("storage_path", "fetched_at"):
            if getattr(snapshot, name) is not None:
                problems.append(f"{name} set while {status.value}")

    return problems
