"""Database performance monitoring.

Wraps datastore calls to keep running per-operation latency statistics and a
bounded log of slow operations for each observed database. Failures are
recorded under a separate ":error" bucket and re-raised unchanged.
"""

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

from analytics_server.lib.metrics import record_datastore_operation

logger = logging.getLogger(__name__)

T = TypeVar('T')

SUPPORTED_DATABASES = ('mongodb', 'postgres')


@dataclass
class OperationStats:
    """Running latency aggregate for one operation:collection key."""

    count: int = 0
    total_time: float = 0.0
    avg_time: float = 0.0
    min_time: float = float('inf')
    max_time: float = 0.0

    def add(self, duration_ms: float) -> None:
        self.count += 1
        self.total_time += duration_ms
        self.avg_time = self.total_time / self.count
        self.min_time = min(self.min_time, duration_ms)
        self.max_time = max(self.max_time, duration_ms)


@dataclass
class ErrorStats:
    count: int = 0
    total_time: float = 0.0


@dataclass
class MetricSample:
    database: str
    operation: str
    collection: str
    duration_ms: float
    timestamp: datetime


@dataclass
class DatabaseMetrics:
    max_slow_queries: int
    operations: Dict[str, Any] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    slow_queries: Deque[MetricSample] = field(init=False)

    def __post_init__(self):
        self.slow_queries = deque(maxlen=self.max_slow_queries)


@dataclass
class PerformanceConfig:
    slow_query_threshold_ms: float = 500.0
    max_slow_queries: int = 100
    verbose: bool = True


def _sample_to_dict(sample: MetricSample) -> Dict[str, Any]:
    return {
        'database': sample.database,
        'operation': sample.operation,
        'collection': sample.collection,
        'execution_time': sample.duration_ms,
        'timestamp': sample.timestamp.isoformat(),
    }


class DatabasePerformanceMonitor:
    """In-memory latency metrics for MongoDB and PostgreSQL operations.

    Usage:
        monitor = DatabasePerformanceMonitor(slow_query_threshold_ms=250)
        docs = await monitor.track_mongo_operation('find', 'conversations', lambda: cursor.to_list(50))
        snapshot = monitor.get_metrics('mongodb')
    """

    def __init__(
        self,
        slow_query_threshold_ms: float = 500.0,
        max_slow_queries: int = 100,
        verbose: bool = True,
        timer: Callable[[], float] = time.perf_counter
    ):
        """Initialize the monitor.

        Args:
            slow_query_threshold_ms: Operations slower than this are logged as slow
            max_slow_queries: Maximum slow entries kept per database
            verbose: Log slow operations and failures
            timer: Monotonic clock in seconds (injectable for tests)
        """
        self.config = PerformanceConfig(
            slow_query_threshold_ms=slow_query_threshold_ms,
            max_slow_queries=max_slow_queries,
            verbose=verbose,
        )
        self._timer = timer
        self._metrics: Dict[str, DatabaseMetrics] = {
            database: DatabaseMetrics(max_slow_queries) for database in SUPPORTED_DATABASES
        }

    def _require(self, database: str) -> DatabaseMetrics:
        if database not in self._metrics:
            raise ValueError(f'Unsupported database type: {database}')
        return self._metrics[database]

    async def track_operation(
        self,
        database: str,
        operation: str,
        collection: str,
        work: Callable[[], Awaitable[T]]
    ) -> T:
        """Run `work` and record how long it took.

        Args:
            database: Database type ('mongodb' or 'postgres')
            operation: The operation being performed (find, insert, count, ...)
            collection: The collection or table being accessed
            work: Zero-argument coroutine function to execute and measure

        Returns:
            The result of `work`

        Raises:
            ValueError: If the database type is not supported
            Exception: Whatever `work` raised, after it has been recorded
        """
        metrics = self._require(database)
        start = self._timer()

        try:
            result = await work()
        except Exception as e:
            duration_ms = (self._timer() - start) * 1000
            error_key = f'{operation}:{collection}:error'
            stats = metrics.operations.setdefault(error_key, ErrorStats())
            stats.count += 1
            stats.total_time += duration_ms
            metrics.last_updated = datetime.now(timezone.utc)
            record_datastore_operation(database, operation, collection, duration_ms / 1000, False)

            if self.config.verbose:
                logger.error(
                    f'Error in {database} {operation} on {collection}: {e}',
                    extra={'database': database, 'operation': operation, 'collection': collection},
                )
            raise

        duration_ms = (self._timer() - start) * 1000
        stats = metrics.operations.setdefault(f'{operation}:{collection}', OperationStats())
        stats.add(duration_ms)
        metrics.last_updated = datetime.now(timezone.utc)
        record_datastore_operation(database, operation, collection, duration_ms / 1000, True)

        if duration_ms > self.config.slow_query_threshold_ms:
            metrics.slow_queries.appendleft(MetricSample(
                database=database,
                operation=operation,
                collection=collection,
                duration_ms=duration_ms,
                timestamp=datetime.now(timezone.utc),
            ))
            if self.config.verbose:
                logger.warning(
                    f'Slow {database} {operation} on {collection}: {duration_ms:.2f}ms',
                    extra={'database': database, 'duration_ms': round(duration_ms, 2)},
                )

        return result

    async def track_mongo_operation(self, operation: str, collection: str, work: Callable[[], Awaitable[T]]) -> T:
        return await self.track_operation('mongodb', operation, collection, work)

    async def track_postgres_operation(self, operation: str, table: str, work: Callable[[], Awaitable[T]]) -> T:
        return await self.track_operation('postgres', operation, table, work)

    def _snapshot(self, metrics: DatabaseMetrics) -> Dict[str, Any]:
        return {
            'operations': {key: asdict(stats) for key, stats in metrics.operations.items()},
            'last_updated': metrics.last_updated.isoformat(),
            'slow_queries': [_sample_to_dict(sample) for sample in metrics.slow_queries],
        }

    def get_metrics(self, database: Optional[str] = None) -> Dict[str, Any]:
        """Get a snapshot of the recorded metrics.

        The snapshot is a copy; mutating it does not affect the monitor.

        Args:
            database: Optional database type; all databases when None

        Returns:
            Metrics for one database, or a mapping of database -> metrics
        """
        if database:
            return self._snapshot(self._require(database))
        return {name: self._snapshot(metrics) for name, metrics in self._metrics.items()}

    def get_slow_queries(self, database: str) -> list[Dict[str, Any]]:
        """Get the slow queries for a database, newest first."""
        return [_sample_to_dict(sample) for sample in self._require(database).slow_queries]

    def reset_metrics(self, database: Optional[str] = None) -> None:
        """Reset counters for one database or all of them."""
        names = [database] if database else list(self._metrics)
        for name in names:
            self._require(name)
            self._metrics[name] = DatabaseMetrics(self.config.max_slow_queries)

    def update_config(self, **changes: Any) -> Dict[str, Any]:
        """Update threshold, slow log size or verbosity.

        Shrinking max_slow_queries keeps the newest entries.
        """
        for key, value in changes.items():
            if not hasattr(self.config, key):
                raise ValueError(f'Unknown performance monitor setting: {key}')
            setattr(self.config, key, value)

        if 'max_slow_queries' in changes:
            for metrics in self._metrics.values():
                newest = list(metrics.slow_queries)[:self.config.max_slow_queries]
                metrics.slow_queries = deque(newest, maxlen=self.config.max_slow_queries)
        return asdict(self.config)
