"""Prometheus-compatible metrics for cache, concurrency and datastore monitoring.

Exported on /metrics by the FastAPI app. The in-memory recorders in
services/ remain the source for the JSON admin endpoints; these series are
the scrape-friendly view of the same activity.
"""

from prometheus_client import Counter, Gauge, Histogram


# Cache wrapper metrics
cache_requests_total = Counter(
    'cache_requests_total',
    'Cache lookups by key prefix and outcome',
    ['key_prefix', 'outcome']
)

permits_in_use = Gauge(
    'fluid_compute_permits_in_use',
    'Concurrency permits currently held',
    ['key_prefix']
)

permit_waiters = Gauge(
    'fluid_compute_permit_waiters',
    'Callers suspended waiting for a permit',
    ['key_prefix']
)

# Datastore metrics
datastore_operation_duration_seconds = Histogram(
    'datastore_operation_duration_seconds',
    'Duration of tracked datastore operations',
    ['database', 'operation', 'collection', 'status'],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0]
)

datastore_up = Gauge(
    'datastore_up',
    'Result of the last liveness probe (1 connected, 0 error)',
    ['database']
)

datastore_probe_seconds = Gauge(
    'datastore_probe_seconds',
    'Latency of the last liveness probe',
    ['database']
)

# Analytics metrics
analytics_events_total = Counter(
    'analytics_events_total',
    'Analytics events by type and tracking outcome',
    ['event_type', 'status']
)


def record_cache_lookup(key_prefix: str, hit: bool):
    """Record a cache lookup.

    Args:
        key_prefix: Namespace of the cached function or view
        hit: Whether a valid entry was found
    """
    cache_requests_total.labels(
        key_prefix=key_prefix,
        outcome='hit' if hit else 'miss'
    ).inc()


def update_permit_gauges(key_prefix: str, active: int, waiting: int):
    permits_in_use.labels(key_prefix=key_prefix).set(active)
    permit_waiters.labels(key_prefix=key_prefix).set(waiting)


def record_datastore_operation(
    database: str,
    operation: str,
    collection: str,
    duration_seconds: float,
    success: bool
):
    """Record the duration of a tracked datastore operation.

    Args:
        database: Database type ('mongodb' or 'postgres')
        operation: Operation name ('find', 'insert', 'count', ...)
        collection: Collection or table name
        duration_seconds: Wall-clock duration in seconds
        success: False when the operation raised
    """
    datastore_operation_duration_seconds.labels(
        database=database,
        operation=operation,
        collection=collection,
        status='success' if success else 'error'
    ).observe(duration_seconds)


def record_probe(database: str, connected: bool, duration_seconds: float):
    datastore_up.labels(database=database).set(1 if connected else 0)
    datastore_probe_seconds.labels(database=database).set(duration_seconds)


def record_analytics_event(event_type: str, success: bool):
    analytics_events_total.labels(
        event_type=event_type,
        status='tracked' if success else 'failed'
    ).inc()


# HTTP metrics
http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'Duration of HTTP requests by endpoint',
    ['endpoint', 'method', 'status'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0]
)


def record_request_duration(endpoint: str, method: str, status: int, duration_seconds: float):
    http_request_duration_seconds.labels(
        endpoint=endpoint,
        method=method,
        status=str(status)
    ).observe(duration_seconds)
