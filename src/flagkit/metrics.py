"""
Prometheus metrics shared by the SDK components. The SDK only records them;
exposing a registry is up to the application.
"""

from prometheus_client import Counter, Histogram

decision_duration = Histogram(
    "flagkit_decision_seconds",
    "Decision duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=["api"],
)

datafile_sync_failures = Counter(
    "flagkit_datafile_sync_failures_total",
    "Number of datafile sync attempts that failed",
    labelnames=["sdk_key", "reason"],
)

events_dispatched = Counter(
    "flagkit_events_dispatched_total",
    "Number of event batches handed to the dispatcher",
    labelnames=["outcome"],
)

events_dropped = Counter(
    "flagkit_events_dropped_total",
    "Number of events dropped because the event queue was full",
)

cmab_fetches = Counter(
    "flagkit_cmab_fetch_total",
    "Number of CMAB prediction fetches",
    labelnames=["outcome"],
)
