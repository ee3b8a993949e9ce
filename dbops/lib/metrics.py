"""Prometheus metrics for query instrumentation, backups and health."""

from prometheus_client import Counter, Gauge, Histogram

# Query metrics
query_duration_seconds = Histogram(
    'dbops_query_duration_seconds',
    'Instrumented statement execution time in seconds',
    ['query_type'],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0],
)

query_failures_total = Counter(
    'dbops_query_failures_total',
    'Instrumented statements that raised',
    ['query_type', 'error_type'],
)

query_cache_lookups_total = Counter(
    'dbops_query_cache_lookups_total',
    'Metric cache lookups by outcome',
    ['result'],
)

slow_queries_total = Counter(
    'dbops_slow_queries_total',
    'Statements slower than the configured threshold',
    ['query_type'],
)

metric_log_failures_total = Counter(
    'dbops_metric_log_failures_total',
    'Query metrics that could not be persisted',
)

# Backup metrics
backups_total = Counter(
    'dbops_backups_total',
    'Backup attempts by type and outcome',
    ['backup_type', 'status'],
)

backup_size_bytes = Gauge(
    'dbops_backup_size_bytes',
    'Stored size of the most recent backup',
    ['backup_type'],
)

last_backup_timestamp_seconds = Gauge(
    'dbops_last_backup_timestamp_seconds',
    'Unix time of the most recent successful backup',
)

restores_total = Counter(
    'dbops_restores_total',
    'Restore attempts by outcome',
    ['status'],
)

# Health metrics
health_status = Gauge(
    'dbops_health_status',
    'Overall health (0=healthy, 1=warning, 2=critical)',
)

# Operator API metrics
request_duration_seconds = Histogram(
    'dbops_request_duration_seconds',
    'Operator API request duration in seconds',
    ['endpoint', 'method', 'status'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0],
)

HEALTH_LEVELS = {'healthy': 0, 'warning': 1, 'critical': 2}


def record_query(query_type: str, duration_ms: float, slow: bool) -> None:
    """Record one measured statement execution.

    Args:
        query_type: Leading SQL keyword (select, insert, ...)
        duration_ms: Measured execution time in milliseconds
        slow: Whether the execution crossed the slow-query threshold
    """
    query_duration_seconds.labels(query_type=query_type).observe(duration_ms / 1000)
    if slow:
        slow_queries_total.labels(query_type=query_type).inc()


def record_query_failure(query_type: str, error_type: str) -> None:
    query_failures_total.labels(query_type=query_type, error_type=error_type).inc()


def record_cache_lookup(hit: bool) -> None:
    query_cache_lookups_total.labels(result='hit' if hit else 'miss').inc()


def record_metric_log_failure() -> None:
    metric_log_failures_total.inc()


def record_backup(backup_type: str, status: str, size_bytes: int = 0, timestamp: float | None = None) -> None:
    """Record a backup attempt.

    Args:
        backup_type: 'full' or 'incremental'
        status: 'success', 'failure' or 'skipped'
        size_bytes: Stored payload size, for successful backups
        timestamp: Unix time of a successful backup
    """
    backups_total.labels(backup_type=backup_type, status=status).inc()
    if status == 'success':
        backup_size_bytes.labels(backup_type=backup_type).set(size_bytes)
        if timestamp is not None:
            last_backup_timestamp_seconds.set(timestamp)


def record_restore(status: str) -> None:
    restores_total.labels(status=status).inc()


def record_health_status(overall: str) -> None:
    health_status.set(HEALTH_LEVELS.get(overall, 2))


def record_request_duration(endpoint: str, method: str, status: int, duration_seconds: float) -> None:
    """Record operator API request duration.

    Args:
        endpoint: API endpoint path
        method: HTTP method (GET, POST, etc.)
        status: HTTP status code
        duration_seconds: Request duration in seconds
    """
    request_duration_seconds.labels(
        endpoint=endpoint,
        method=method,
        status=str(status),
    ).observe(duration_seconds)
