"""Connection health monitoring for MongoDB and PostgreSQL.

Probes are plain async callables returning pool statistics. The monitor keeps
one current status record per database; statuses are overwritten on every
check and never historised.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from analytics_server.lib.database import pool_statistics
from analytics_server.lib.metrics import record_probe
from analytics_server.lib.structured_logger import log_event
from analytics_server.services.db_performance import DatabasePerformanceMonitor

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[Optional[Dict[str, Any]]]]

MONITORED_DATABASES = ('mongodb', 'postgres')

# Payload key for each database in get_connection_status()
_STATUS_KEYS = {'mongodb': 'mongodb', 'postgres': 'postgresql'}
_ALIASES = {'postgresql': 'postgres'}


def default_pool_stats() -> Dict[str, Any]:
    return {
        'connected': False,
        'pool_size': 0,
        'available_connections': 0,
        'max_pool_size': 10,
        'min_pool_size': 5,
    }


@dataclass
class ConnectionStatus:
    database: str
    status: str = 'unknown'
    last_checked: Optional[datetime] = None
    response_time_ms: Optional[float] = None
    error: Optional[str] = None
    pool_stats: Dict[str, Any] = field(default_factory=default_pool_stats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'database': self.database,
            'status': self.status,
            'last_checked': self.last_checked.isoformat() if self.last_checked else None,
            'response_time_ms': self.response_time_ms,
            'error': self.error,
            'pool_stats': dict(self.pool_stats),
        }


@dataclass
class MonitorConfig:
    check_interval_seconds: float = 60.0
    connection_timeout_seconds: float = 5.0
    enable_automatic_checks: bool = False


class MongoProbe:
    """Liveness probe for MongoDB using the pymongo async client.

    Pool figures come from the client's configured pool options; pymongo does
    not expose live checkout counts without a CMAP listener.
    """

    def __init__(self, client, db_name: str, monitor: Optional[DatabasePerformanceMonitor] = None):
        self.client = client
        self.db_name = db_name
        self.monitor = monitor

    async def __call__(self) -> Dict[str, Any]:
        async def ping():
            return await self.client[self.db_name].command('ping')

        if self.monitor is None:
            await ping()
        else:
            await self.monitor.track_mongo_operation('ping', self.db_name, ping)
        pool_options = self.client.options.pool_options
        return {
            'connected': True,
            'pool_size': pool_options.min_pool_size,
            'available_connections': pool_options.min_pool_size,
            'max_pool_size': pool_options.max_pool_size,
            'min_pool_size': pool_options.min_pool_size,
        }


class PostgresProbe:
    """Liveness probe for PostgreSQL: runs SELECT 1 and reads QueuePool stats."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def __call__(self) -> Dict[str, Any]:
        async with self.engine.connect() as conn:
            await conn.execute(text('SELECT 1'))
        return pool_statistics(self.engine)


class ConnectionMonitor:
    """Tracks datastore liveness, on demand or on a fixed interval.

    Usage:
        monitor = ConnectionMonitor({'mongodb': MongoProbe(client, 'app'), 'postgres': PostgresProbe(engine)})
        await monitor.check_all()
        monitor.start_automatic_checks(interval_seconds=30)
    """

    def __init__(
        self,
        probes: Dict[str, Probe],
        config: Optional[MonitorConfig] = None,
        timer: Callable[[], float] = time.perf_counter
    ):
        """Initialize the monitor.

        Args:
            probes: Mapping of database name to async probe
            config: Interval, timeout and auto-check settings
            timer: Monotonic clock in seconds (injectable for tests)
        """
        self.probes = {self._normalize(name): probe for name, probe in probes.items()}
        self.config = config or MonitorConfig()
        self._timer = timer
        self._statuses: Dict[str, ConnectionStatus] = {
            database: ConnectionStatus(database=_STATUS_KEYS[database]) for database in MONITORED_DATABASES
        }
        self._task: Optional[asyncio.Task] = None

    @staticmethod
    def _normalize(database: str) -> str:
        database = _ALIASES.get(database, database)
        if database not in MONITORED_DATABASES:
            raise ValueError(f'Unsupported database type: {database}')
        return database

    @property
    def monitoring_enabled(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check_status(self, database: str) -> Dict[str, Any]:
        """Probe one database and store the result.

        Probe failures and timeouts are recorded as status "error"; they are
        never raised to the caller.

        Args:
            database: 'mongodb' or 'postgres' ('postgresql' is accepted)

        Returns:
            The new ConnectionStatus as a dict
        """
        database = self._normalize(database)
        current = self._statuses[database]
        probe = self.probes.get(database)
        timeout = self.config.connection_timeout_seconds
        start = self._timer()

        try:
            if probe is None:
                raise RuntimeError(f'No probe configured for {database}')
            pool_stats = await asyncio.wait_for(probe(), timeout=timeout)
        except Exception as e:
            elapsed_ms = (self._timer() - start) * 1000
            message = f'Connection timed out after {timeout}s' if isinstance(e, asyncio.TimeoutError) else str(e)
            self._statuses[database] = ConnectionStatus(
                database=current.database,
                status='error',
                last_checked=datetime.now(timezone.utc),
                response_time_ms=round(elapsed_ms, 2),
                error=message or type(e).__name__,
                pool_stats=current.pool_stats,
            )
            record_probe(database, False, elapsed_ms / 1000)
            logger.error(f'{database} connection check failed: {message}', extra={'database': database})
            return self._statuses[database].to_dict()

        elapsed_ms = (self._timer() - start) * 1000
        stats = dict(pool_stats) if pool_stats else dict(current.pool_stats)
        stats['connected'] = True
        self._statuses[database] = ConnectionStatus(
            database=current.database,
            status='connected',
            last_checked=datetime.now(timezone.utc),
            response_time_ms=round(elapsed_ms, 2),
            pool_stats=stats,
        )
        record_probe(database, True, elapsed_ms / 1000)
        logger.debug(f'{database} connection ok in {elapsed_ms:.2f}ms', extra={'database': database})
        return self._statuses[database].to_dict()

    async def check_all(self) -> Dict[str, Any]:
        """Probe every configured database concurrently.

        Returns:
            The same payload as get_connection_status()
        """
        await asyncio.gather(*(self.check_status(database) for database in self.probes))
        return self.get_connection_status()

    async def _run_checks(self, interval: float) -> None:
        while True:
            try:
                await self.check_all()
            except Exception as e:
                logger.error(f'Automatic connection check failed: {e}')
            await asyncio.sleep(interval)

    def start_automatic_checks(self, interval_seconds: Optional[float] = None) -> None:
        """Start the polling loop, replacing any loop already running.

        The first check runs immediately. Must be called with an event loop running.
        """
        self.stop_automatic_checks()
        if interval_seconds is not None:
            self.config.check_interval_seconds = interval_seconds

        interval = self.config.check_interval_seconds
        self._task = asyncio.get_running_loop().create_task(self._run_checks(interval))
        log_event('monitor.automatic_checks_started', context={'interval_seconds': interval})

    def stop_automatic_checks(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            log_event('monitor.automatic_checks_stopped')

    def update_config(self, **changes: Any) -> Dict[str, Any]:
        """Merge configuration changes.

        A running loop is restarted when the interval changes. Toggling
        enable_automatic_checks starts or stops the loop.
        """
        previous_interval = self.config.check_interval_seconds
        for key, value in changes.items():
            if not hasattr(self.config, key):
                raise ValueError(f'Unknown connection monitor setting: {key}')
            setattr(self.config, key, value)

        if 'enable_automatic_checks' in changes and not self.config.enable_automatic_checks:
            self.stop_automatic_checks()
        elif self.monitoring_enabled:
            if self.config.check_interval_seconds != previous_interval:
                self.start_automatic_checks()
        elif changes.get('enable_automatic_checks'):
            self.start_automatic_checks()

        return asdict(self.config)

    def get_connection_status(self) -> Dict[str, Any]:
        """Current status of every database. Does not probe."""
        payload: Dict[str, Any] = {
            _STATUS_KEYS[database]: status.to_dict() for database, status in self._statuses.items()
        }
        payload['monitoring_enabled'] = self.monitoring_enabled
        payload['check_interval'] = self.config.check_interval_seconds
        payload['timestamp'] = datetime.now(timezone.utc).isoformat()
        return payload
