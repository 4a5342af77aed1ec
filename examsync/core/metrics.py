"""
Prometheus counters for the cache, the batch queues and the worker loops.
"""
from prometheus_client import Counter

CACHE_ERRORS = Counter(
    "examsync_cache_errors_total",
    "Cache backend errors by operation",
    ["operation"],
)

QUEUE_ENQUEUED = Counter(
    "examsync_queue_enqueued_total",
    "Items pushed onto a batch queue",
    ["queue"],
)

QUEUE_SHED = Counter(
    "examsync_queue_shed_total",
    "Oldest items trimmed because a queue hit its length cap",
    ["queue"],
)

QUEUE_DRAINED = Counter(
    "examsync_queue_drained_total",
    "Items removed from a batch queue by a consumer",
    ["queue"],
)

RECONCILE_ITEMS = Counter(
    "examsync_reconcile_items_total",
    "Reconciliation outcomes per loop",
    ["loop", "outcome"],
)
