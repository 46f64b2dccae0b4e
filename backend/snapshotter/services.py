"""Process-wide wiring of the snapshot pipeline collaborators.

Built lazily on first use so importing the API or the Celery app does not
touch the network. FastAPI routes receive these through ``Depends`` and
tests override them.
"""
from __future__ import annotations

import logging

from snapshotter.broker import build_default_broker, build_default_verifier
from snapshotter.db import async_session_factory
from snapshotter.dispatcher import JobDispatcher
from snapshotter.extraction.extractor import HttpContentExtractor
from snapshotter.snapshot_state_service import SnapshotStore, SqlSnapshotStore
from snapshotter.storage import ObjectStorage, build_default_storage
from snapshotter.throttle import PolitenessGate, UserQuotaGate
from snapshotter.workers.snapshot import SnapshotWorker

logger = logging.getLogger(__name__)

_store: SnapshotStore | None = None
_storage: ObjectStorage | None = None
_dispatcher: JobDispatcher | None = None
_worker: SnapshotWorker | None = None
_quota: UserQuotaGate | None = None


def get_store() -> SnapshotStore:
    global _store
    if _store is None:
        _store = SqlSnapshotStore(async_session_factory)
    return _store


def get_storage() -> ObjectStorage:
    global _storage
    if _storage is None:
        _storage = build_default_storage()
    return _storage


def get_quota_gate() -> UserQuotaGate:
    global _quota
    if _quota is None:
        _quota = UserQuotaGate()
    return _quota


def get_dispatcher() -> JobDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = JobDispatcher(build_default_broker())
        if _dispatcher.local_mode:
            # Inline jobs run the same worker logic as broker deliveries.
            _dispatcher.local_runner = lambda job: get_worker().process_job(job)
    return _dispatcher


def get_worker() -> SnapshotWorker:
    global _worker
    if _worker is None:
        _worker = SnapshotWorker(
            store=get_store(),
            dispatcher=get_dispatcher(),
            extractor=HttpContentExtractor(),
            storage=get_storage(),
            politeness=PolitenessGate(),
            verifier=build_default_verifier(),
        )
    return _worker


def reset_services() -> None:
    global _store, _storage, _dispatcher, _worker, _quota
    _store = _storage = _dispatcher = _worker = _quota = None
