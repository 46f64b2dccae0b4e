"""Celery application: maintenance tasks for the snapshot pipeline.

Job delivery itself goes through the HTTP broker; Celery only runs the
periodic sweep that recovers stuck and overdue snapshot records.
"""
from __future__ import annotations

from celery import Celery
from kombu import Exchange, Queue

from snapshotter.config import settings

celery = Celery(
    "snapshotter",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

# ── Serialisation ──
celery.conf.accept_content = ["json"]
celery.conf.task_serializer = "json"
celery.conf.result_serializer = "json"
celery.conf.timezone = "UTC"
celery.conf.enable_utc = True

# ── Reliability ──
celery.conf.task_acks_late = True
celery.conf.worker_prefetch_multiplier = 1
celery.conf.task_reject_on_worker_lost = True

# ── Exchanges & Queues ──
default_exchange = Exchange("snapshotter", type="direct")

celery.conf.task_queues = (
    Queue("maintenance", default_exchange, routing_key="maintenance"),
)

celery.conf.task_default_queue = "maintenance"
celery.conf.task_default_exchange = "snapshotter"
celery.conf.task_default_routing_key = "maintenance"

# ── Task routes ──
celery.conf.task_routes = {
    "snapshotter.workers.sweeper.run_snapshot_sweep": {"queue": "maintenance"},
}

# ── Beat Schedule ──
celery.conf.beat_schedule = {
    "snapshot-sweep-every-minute": {
        "task": "snapshotter.workers.sweeper.run_snapshot_sweep",
        "schedule": 60.0,
    },
}

celery.conf.imports = ("snapshotter.workers.sweeper",)
