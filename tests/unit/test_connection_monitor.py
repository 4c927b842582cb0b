"""Unit tests for ConnectionMonitor."""

import asyncio

import pytest

from analytics_server.services.connection_monitor import ConnectionMonitor, MonitorConfig, default_pool_stats


class FakeProbe:
    """Probe returning canned pool stats, or raising when `error` is set."""

    def __init__(self, pool_stats=None, error=None, delay=0.0):
        self.pool_stats = pool_stats or {
            'connected': True,
            'pool_size': 3,
            'available_connections': 2,
            'max_pool_size': 10,
            'min_pool_size': 1,
        }
        self.error = error
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return dict(self.pool_stats)


@pytest.fixture
def probes():
    return {'mongodb': FakeProbe(), 'postgres': FakeProbe()}


@pytest.fixture
def monitor(probes):
    m = ConnectionMonitor(probes, MonitorConfig(check_interval_seconds=0.01, connection_timeout_seconds=0.5))
    yield m
    m.stop_automatic_checks()


class TestCheckStatus:

    def test_initial_status_is_unknown(self, monitor):
        status = monitor.get_connection_status()

        assert status['mongodb']['status'] == 'unknown'
        assert status['postgresql']['database'] == 'postgresql'
        assert status['postgresql']['pool_stats'] == default_pool_stats()
        assert status['monitoring_enabled'] is False
        assert status['check_interval'] == 0.01

    async def test_successful_probe(self, monitor):
        status = await monitor.check_status('mongodb')

        assert status['status'] == 'connected'
        assert status['error'] is None
        assert status['response_time_ms'] >= 0
        assert status['last_checked'] is not None
        assert status['pool_stats']['available_connections'] == 2

    async def test_postgresql_alias(self, monitor, probes):
        status = await monitor.check_status('postgresql')
        assert status['status'] == 'connected'
        assert probes['postgres'].calls == 1

    async def test_failure_keeps_last_pool_stats(self, monitor, probes):
        await monitor.check_status('postgres')
        probes['postgres'].error = ConnectionRefusedError('connection refused')

        status = await monitor.check_status('postgres')

        assert status['status'] == 'error'
        assert status['error'] == 'connection refused'
        assert status['pool_stats']['pool_size'] == 3

    async def test_timeout_is_reported(self, probes):
        probes['mongodb'].delay = 1
        monitor = ConnectionMonitor(probes, MonitorConfig(connection_timeout_seconds=0.01))

        status = await monitor.check_status('mongodb')

        assert status['status'] == 'error'
        assert status['error'] == 'Connection timed out after 0.01s'

    async def test_missing_probe_is_an_error_status(self):
        monitor = ConnectionMonitor({'mongodb': FakeProbe()})
        status = await monitor.check_status('postgres')
        assert status['status'] == 'error'
        assert 'No probe configured' in status['error']

    async def test_unknown_database(self, monitor):
        with pytest.raises(ValueError, match='Unsupported database type'):
            await monitor.check_status('cassandra')

    def test_unknown_probe_name_rejected_at_construction(self):
        with pytest.raises(ValueError):
            ConnectionMonitor({'redis': FakeProbe()})

    async def test_check_all_never_raises(self, monitor, probes):
        probes['mongodb'].error = RuntimeError('down')

        status = await monitor.check_all()

        assert status['mongodb']['status'] == 'error'
        assert status['postgresql']['status'] == 'connected'

    async def test_reading_status_does_not_probe(self, monitor, probes):
        monitor.get_connection_status()
        monitor.get_connection_status()
        assert probes['mongodb'].calls == 0


class TestAutomaticChecks:

    async def test_loop_runs_immediately_and_repeats(self, monitor, probes):
        monitor.start_automatic_checks()
        await asyncio.sleep(0.05)

        assert monitor.monitoring_enabled is True
        assert probes['mongodb'].calls >= 2

        monitor.stop_automatic_checks()
        assert monitor.monitoring_enabled is False

        calls = probes['mongodb'].calls
        await asyncio.sleep(0.03)
        assert probes['mongodb'].calls == calls

    async def test_start_replaces_existing_loop(self, monitor):
        monitor.start_automatic_checks()
        first = monitor._task

        monitor.start_automatic_checks(interval_seconds=5)
        await asyncio.sleep(0.01)

        assert first.cancelled()
        assert monitor._task is not first
        assert monitor.get_connection_status()['check_interval'] == 5

    async def test_update_config_restarts_on_interval_change(self, monitor):
        monitor.start_automatic_checks()
        first = monitor._task

        config = monitor.update_config(check_interval_seconds=2)

        assert config['check_interval_seconds'] == 2
        assert monitor._task is not first
        assert monitor.monitoring_enabled

    async def test_update_config_toggles_loop(self, monitor):
        monitor.update_config(enable_automatic_checks=True)
        assert monitor.monitoring_enabled

        monitor.update_config(enable_automatic_checks=False)
        assert not monitor.monitoring_enabled

    def test_update_config_rejects_unknown_keys(self, monitor):
        with pytest.raises(ValueError):
            monitor.update_config(retries=3)
