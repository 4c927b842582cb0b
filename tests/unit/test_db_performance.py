"""Unit tests for DatabasePerformanceMonitor."""

import logging
from datetime import datetime, timezone

import pytest

from analytics_server.services.db_performance import DatabasePerformanceMonitor


class StepTimer:
    """Timer that returns the next configured duration on every second call."""

    def __init__(self, *durations: float):
        self.durations = list(durations)
        self.now = 0.0
        self._started = False

    def __call__(self) -> float:
        if self._started:
            self.now += self.durations.pop(0)
        self._started = not self._started
        return self.now


def returning(value):
    async def work():
        return value
    return work


def failing(message):
    async def work():
        raise ConnectionError(message)
    return work


@pytest.fixture
def monitor_factory():
    def build(*durations, **kwargs):
        kwargs.setdefault('verbose', False)
        return DatabasePerformanceMonitor(timer=StepTimer(*durations), **kwargs)
    return build


class TestTrackOperation:
    """Latency aggregation per operation:collection key."""

    async def test_returns_result_and_aggregates(self, monitor_factory):
        monitor = monitor_factory(0.125, 0.25, 0.5)

        assert await monitor.track_mongo_operation('find', 'posts', returning([1, 2])) == [1, 2]
        await monitor.track_mongo_operation('find', 'posts', returning(None))
        await monitor.track_mongo_operation('find', 'posts', returning(None))

        stats = monitor.get_metrics('mongodb')['operations']['find:posts']
        assert stats == {
            'count': 3,
            'total_time': 875.0,
            'avg_time': 875.0 / 3,
            'min_time': 125.0,
            'max_time': 500.0,
        }

    async def test_keys_are_separate_per_database(self, monitor_factory):
        monitor = monitor_factory(0.125, 0.125)

        await monitor.track_mongo_operation('count', 'users', returning(3))
        await monitor.track_postgres_operation('count', 'users', returning(3))

        assert monitor.get_metrics('mongodb')['operations']['count:users']['count'] == 1
        assert monitor.get_metrics('postgres')['operations']['count:users']['count'] == 1

    async def test_unknown_database_is_rejected_before_running(self, monitor_factory):
        monitor = monitor_factory()
        called = []

        async def work():
            called.append(True)

        with pytest.raises(ValueError, match='Unsupported database type'):
            await monitor.track_operation('mysql', 'find', 'posts', work)
        assert called == []

    async def test_failure_is_recorded_and_reraised(self, monitor_factory):
        monitor = monitor_factory(0.25)

        with pytest.raises(ConnectionError, match='socket closed'):
            await monitor.track_postgres_operation('insert', 'analytics_events', failing('socket closed'))

        operations = monitor.get_metrics('postgres')['operations']
        assert operations == {'insert:analytics_events:error': {'count': 1, 'total_time': 250.0}}

    async def test_failure_updates_last_updated(self, monitor_factory):
        monitor = monitor_factory(0.25)
        stale = datetime(2020, 1, 1, tzinfo=timezone.utc)
        monitor._metrics['postgres'].last_updated = stale

        with pytest.raises(ConnectionError):
            await monitor.track_postgres_operation('count', 'analytics_events', failing('timeout'))

        assert monitor.get_metrics('postgres')['last_updated'] != stale.isoformat()

    async def test_failure_is_logged_when_verbose(self, monitor_factory, caplog):
        monitor = monitor_factory(0.25, verbose=True)

        with caplog.at_level(logging.ERROR):
            with pytest.raises(ConnectionError):
                await monitor.track_mongo_operation('find', 'posts', failing('reset by peer'))
        assert 'Error in mongodb find on posts: reset by peer' in caplog.text


class TestSlowQueries:
    """Bounded newest-first slow query log."""

    async def test_only_operations_over_threshold_are_logged(self, monitor_factory):
        monitor = monitor_factory(0.5, 0.125, slow_query_threshold_ms=250)

        await monitor.track_mongo_operation('find', 'slow', returning(None))
        await monitor.track_mongo_operation('find', 'fast', returning(None))

        slow = monitor.get_slow_queries('mongodb')
        assert len(slow) == 1
        assert slow[0]['collection'] == 'slow'
        assert slow[0]['execution_time'] == 500.0
        assert slow[0]['database'] == 'mongodb'

    async def test_threshold_is_exclusive(self, monitor_factory):
        monitor = monitor_factory(0.25, slow_query_threshold_ms=250)
        await monitor.track_mongo_operation('find', 'edge', returning(None))
        assert monitor.get_slow_queries('mongodb') == []

    async def test_newest_first_and_bounded(self, monitor_factory):
        monitor = monitor_factory(1, 1, 1, slow_query_threshold_ms=10, max_slow_queries=2)

        for collection in ('first', 'second', 'third'):
            await monitor.track_mongo_operation('find', collection, returning(None))

        assert [entry['collection'] for entry in monitor.get_slow_queries('mongodb')] == ['third', 'second']

    async def test_shrinking_the_log_keeps_newest(self, monitor_factory):
        monitor = monitor_factory(1, 1, 1, slow_query_threshold_ms=10)
        for collection in ('first', 'second', 'third'):
            await monitor.track_mongo_operation('find', collection, returning(None))

        config = monitor.update_config(max_slow_queries=1)

        assert config['max_slow_queries'] == 1
        assert [entry['collection'] for entry in monitor.get_slow_queries('mongodb')] == ['third']

    async def test_slow_operation_warns_when_verbose(self, monitor_factory, caplog):
        monitor = monitor_factory(0.5, slow_query_threshold_ms=100, verbose=True)

        with caplog.at_level(logging.WARNING):
            await monitor.track_postgres_operation('select', 'forum_posts', returning(None))
        assert 'Slow postgres select on forum_posts: 500.00ms' in caplog.text

    async def test_quiet_monitor_does_not_warn(self, monitor_factory, caplog):
        monitor = monitor_factory(0.5, slow_query_threshold_ms=100)

        with caplog.at_level(logging.WARNING):
            await monitor.track_postgres_operation('select', 'forum_posts', returning(None))
        assert 'Slow postgres' not in caplog.text


class TestSnapshotsAndConfig:

    async def test_snapshot_is_a_copy(self, monitor_factory):
        monitor = monitor_factory(0.125)
        await monitor.track_mongo_operation('find', 'posts', returning(None))

        snapshot = monitor.get_metrics('mongodb')
        snapshot['operations']['find:posts']['count'] = 99
        snapshot['slow_queries'].append({'bogus': True})

        fresh = monitor.get_metrics('mongodb')
        assert fresh['operations']['find:posts']['count'] == 1
        assert fresh['slow_queries'] == []

    def test_all_databases_snapshot(self, monitor_factory):
        metrics = monitor_factory().get_metrics()
        assert set(metrics) == {'mongodb', 'postgres'}
        assert metrics['postgres']['operations'] == {}

    async def test_reset_single_database(self, monitor_factory):
        monitor = monitor_factory(0.125, 0.125)
        await monitor.track_mongo_operation('find', 'posts', returning(None))
        await monitor.track_postgres_operation('select', 'users', returning(None))

        monitor.reset_metrics('mongodb')

        assert monitor.get_metrics('mongodb')['operations'] == {}
        assert 'select:users' in monitor.get_metrics('postgres')['operations']

    async def test_reset_all(self, monitor_factory):
        monitor = monitor_factory(0.125)
        await monitor.track_postgres_operation('select', 'users', returning(None))
        monitor.reset_metrics()
        assert monitor.get_metrics('postgres')['operations'] == {}

    def test_reset_unknown_database(self, monitor_factory):
        with pytest.raises(ValueError):
            monitor_factory().reset_metrics('sqlite')

    def test_update_config_rejects_unknown_keys(self, monitor_factory):
        with pytest.raises(ValueError, match='Unknown performance monitor setting'):
            monitor_factory().update_config(sample_rate=0.5)

    def test_update_threshold(self, monitor_factory):
        config = monitor_factory().update_config(slow_query_threshold_ms=50)
        assert config == {'slow_query_threshold_ms': 50, 'max_slow_queries': 100, 'verbose': False}
