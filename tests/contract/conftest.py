"""Shared fixtures for contract tests.

Services are attached to app.state directly; the lifespan (and with it any
real datastore connection) is never entered.
"""

import pytest

from analytics_server.services.cache_control import ModerationCache
from analytics_server.services.connection_monitor import ConnectionMonitor, MonitorConfig
from analytics_server.services.db_performance import DatabasePerformanceMonitor


class StaticProbe:
  def __init__(self, error=None):
    self.error = error

  async def __call__(self):
    if self.error is not None:
      raise self.error
    return {'connected': True, 'pool_size': 2, 'available_connections': 1, 'max_pool_size': 10, 'min_pool_size': 0}


@pytest.fixture
def performance_monitor():
  return DatabasePerformanceMonitor(verbose=False)


@pytest.fixture
def connection_monitor():
  monitor = ConnectionMonitor(
    {'mongodb': StaticProbe(), 'postgres': StaticProbe(ConnectionRefusedError('connection refused'))},
    MonitorConfig(check_interval_seconds=30),
  )
  yield monitor
  monitor.stop_automatic_checks()


@pytest.fixture
def wired_app(app, memory_store, analytics_service, performance_monitor, connection_monitor):
  """App with every service attached."""
  app.state.store = memory_store
  app.state.moderation_cache = ModerationCache(memory_store)
  app.state.analytics_service = analytics_service
  app.state.performance_monitor = performance_monitor
  app.state.connection_monitor = connection_monitor
  return app
