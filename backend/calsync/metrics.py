"""Sync-level Prometheus metrics, exposed by the /metrics endpoint."""
from prometheus_client import Counter, Histogram

SYNC_RUN_COUNT = Counter(
    "calsync_sync_runs_total", "Sync runs by provider and outcome", ["provider", "outcome"]
)
SYNC_RUN_DURATION = Histogram(
    "calsync_sync_run_duration_seconds", "Wall time of a sync run", ["provider"]
)
SYNC_EVENT_OPS = Counter(
    "calsync_sync_event_operations_total",
    "Per-event sync operations",
    ["provider", "direction", "action"],
)
