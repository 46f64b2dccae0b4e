"""Snapshot record persistence and state transitions.

``transition_snapshot`` is the only path the worker uses to change a
record: it validates the move against the state machine, persists it and
counts it.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from snapshotter.metrics import SNAPSHOT_STATE_TRANSITIONS_TOTAL
from snapshotter.models import Save, SaveSnapshot, SnapshotStatus
from snapshotter.state_engine import (
    can_transition,
    invariant_violations,
    reset_fields,
    status_of,
)

logger = logging.getLogger(__name__)

BACKFILL_FIELDS = ("title", "site_name", "image_url", "description")


class InvalidTransition(RuntimeError):
    def __init__(self, current: SnapshotStatus, target: SnapshotStatus) -> None:
        super().__init__(f"illegal snapshot transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class SnapshotNotFound(LookupError):
    pass


@dataclass(frozen=True)
class StaleSnapshot:
    snapshot: SaveSnapshot
    url: str


class SnapshotStore(Protocol):
    async def get_snapshot(self, save_id: uuid.UUID) -> SaveSnapshot | None: ...

    async def get_save(self, save_id: uuid.UUID) -> Save | None: ...

    async def create_pending(self, save_id: uuid.UUID, space_id: uuid.UUID) -> SaveSnapshot: ...

    async def update_snapshot(
        self, save_id: uuid.UUID, values: dict[str, Any]
    ) -> SaveSnapshot | None: ...

    async def reset_for_resnapshot(
        self, save_id: uuid.UUID, space_id: uuid.UUID
    ) -> SaveSnapshot: ...

    async def backfill_save_metadata(
        self, save_id: uuid.UUID, candidates: dict[str, str | None]
    ) -> list[str]: ...

    async def find_stale(
        self,
        *,
        processing_before: datetime,
        pending_due_before: datetime,
        limit: int,
    ) -> list[StaleSnapshot]: ...

    async def find_duplicate_save(
        self, space_id: uuid.UUID, normalized_url: str
    ) -> Save | None: ...

    async def create_save(
        self,
        *,
        space_id: uuid.UUID,
        url: str,
        normalized_url: str | None,
        created_by: str,
        title: str | None = None,
        description: str | None = None,
    ) -> Save: ...


class SqlSnapshotStore:
    """``SnapshotStore`` on SQLAlchemy, one session per operation."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_snapshot(self, save_id: uuid.UUID) -> SaveSnapshot | None:
        async with self._session_factory() as session:
            return await session.get(SaveSnapshot, save_id)

    async def get_save(self, save_id: uuid.UUID) -> Save | None:
        async with self._session_factory() as session:
            return await session.get(Save, save_id)

    async def create_pending(self, save_id: uuid.UUID, space_id: uuid.UUID) -> SaveSnapshot:
        async with self._session_factory() as session:
            existing = await session.get(SaveSnapshot, save_id)
            if existing is not None:
                return existing
            snapshot = SaveSnapshot(save_id=save_id, space_id=space_id, **reset_fields())
            session.add(snapshot)
            await session.commit()
            return snapshot

    async def update_snapshot(
        self, save_id: uuid.UUID, values: dict[str, Any]
    ) -> SaveSnapshot | None:
        async with self._session_factory() as session:
            snapshot = await session.get(SaveSnapshot, save_id)
            if snapshot is None:
                return None
            for name, value in values.items():
                setattr(snapshot, name, value)
            await session.commit()
            return snapshot

    async def reset_for_resnapshot(
        self, save_id: uuid.UUID, space_id: uuid.UUID
    ) -> SaveSnapshot:
        async with self._session_factory() as session:
            snapshot = await session.get(SaveSnapshot, save_id)
            if snapshot is None:
                snapshot = SaveSnapshot(save_id=save_id, space_id=space_id)
                session.add(snapshot)
            for name, value in reset_fields().items():
                setattr(snapshot, name, value)
            await session.commit()
            return snapshot

    async def backfill_save_metadata(
        self, save_id: uuid.UUID, candidates: dict[str, str | None]
    ) -> list[str]:
        """Fill display fields that are still empty. Never overwrites a value."""
        filled: list[str] = []
        async with self._session_factory() as session:
            for name in BACKFILL_FIELDS:
                value = candidates.get(name)
                if not value:
                    continue
                column = getattr(Save, name)
                stmt = (
                    update(Save)
                    .where(Save.id == save_id, or_(column.is_(None), column == ""))
                    .values({name: value})
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                if result.rowcount:
                    filled.append(name)
            await session.commit()
        return filled

    async def find_stale(
        self,
        *,
        processing_before: datetime,
        pending_due_before: datetime,
        limit: int,
    ) -> list[StaleSnapshot]:
        stuck_processing = and_(
            SaveSnapshot.status == SnapshotStatus.PROCESSING.value,
            SaveSnapshot.updated_at < processing_before,
        )
        overdue_pending = and_(
            SaveSnapshot.status == SnapshotStatus.PENDING.value,
            or_(
                SaveSnapshot.next_attempt_at < pending_due_before,
                and_(
                    SaveSnapshot.next_attempt_at.is_(None),
                    SaveSnapshot.updated_at < pending_due_before,
                ),
            ),
        )
        stmt = (
            select(SaveSnapshot, Save.url)
            .join(Save, Save.id == SaveSnapshot.save_id)
            .where(or_(stuck_processing, overdue_pending))
            .order_by(SaveSnapshot.updated_at)
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [StaleSnapshot(snapshot=row[0], url=row[1]) for row in rows]

    async def find_duplicate_save(
        self, space_id: uuid.UUID, normalized_url: str
    ) -> Save | None:
        stmt = (
            select(Save)
            .where(Save.space_id == space_id, Save.normalized_url == normalized_url)
            .order_by(Save.created_at)
            .limit(1)
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

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
        save = Save(
            id=uuid.uuid4(),
            space_id=space_id,
            url=url,
            normalized_url=normalized_url,
            created_by=created_by,
            title=title,
            description=description,
            site_name=None,
            image_url=None,
        )
        async with self._session_factory() as session:
            session.add(save)
            await session.commit()
        return save


async def transition_snapshot(
    store: SnapshotStore,
    snapshot: SaveSnapshot,
    updates: dict[str, Any],
    *,
    reason: str | None = None,
) -> SaveSnapshot:
    """Apply ``updates`` to ``snapshot`` if the status change is legal.

    Raises ``InvalidTransition`` for a forbidden move and
    ``SnapshotNotFound`` when the record disappeared underneath us.
    """
    old_status = status_of(snapshot.status)
    new_status = status_of(updates.get("status", old_status))
    if not can_transition(old_status, new_status):
        raise InvalidTransition(old_status, new_status)

    updated = await store.update_snapshot(snapshot.save_id, updates)
    if updated is None:
        raise SnapshotNotFound(str(snapshot.save_id))

    if old_status != new_status:
        SNAPSHOT_STATE_TRANSITIONS_TOTAL.labels(
            from_status=old_status.value,
            to_status=new_status.value,
            reason=(reason or "unknown")[:64],
        ).inc()

    problems = invariant_violations(updated)
    if problems:
        logger.warning("Snapshot %s breaks invariants: %s", snapshot.save_id, "; ".join(problems))
    return updated


async def request_resnapshot(
    store: SnapshotStore, save_id: uuid.UUID, space_id: uuid.UUID
) -> SaveSnapshot:
    """Reset (or create) the record as a fresh pending snapshot."""
    current = await store.get_snapshot(save_id)
    old_status = status_of(current.status) if current is not None else None
    if old_status is not None and not can_transition(old_status, SnapshotStatus.PENDING):
        raise InvalidTransition(old_status, SnapshotStatus.PENDING)
    snapshot = await store.reset_for_resnapshot(save_id, space_id)
    if old_status is not None and old_status != SnapshotStatus.PENDING:
        SNAPSHOT_STATE_TRANSITIONS_TOTAL.labels(
            from_status=old_status.value,
            to_status=SnapshotStatus.PENDING.value,
            reason="resnapshot",
        ).inc()
    return snapshot
