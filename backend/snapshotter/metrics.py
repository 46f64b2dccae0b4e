"""Prometheus metrics for the snapshot pipeline."""
from __future__ import annotations

from prometheus_client import Counter, Histogram


SNAPSHOT_JOBS_TOTAL = Counter(
    "snapshot_jobs_total",
    "Snapshot job deliveries by outcome",
    ["outcome"],
)

SNAPSHOT_STATE_TRANSITIONS_TOTAL = Counter(
    "snapshot_state_transitions_total",
    "Snapshot record state transitions",
    ["from_status", "to_status", "reason"],
)

SNAPSHOT_ENQUEUE_TOTAL = Counter(
    "snapshot_enqueue_total",
    "Snapshot job publishes by kind and result",
    ["kind", "result"],
)

SNAPSHOT_PROCESSING_SECONDS = Histogram(
    "snapshot_processing_seconds",
    "Extraction + upload latency per delivery",
    buckets=(0.25, 0.5, 1, 2, 5, 10, 15, 20, 30, 45),
)

SNAPSHOT_POLITENESS_DEFERRALS_TOTAL = Counter(
    "snapshot_politeness_deferrals_total",
    "Deliveries deferred by the per-domain politeness gate",
    ["domain"],
)

SNAPSHOT_QUOTA_REJECTIONS_TOTAL = Counter(
    "snapshot_quota_rejections_total",
    "Snapshot requests rejected by the per-user quota",
)
