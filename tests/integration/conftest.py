"""Integration fixtures: the full app over the in-memory stores.

Everything from the routers down to the key-value store is real; only the
relational event store is replaced by the in-memory FakeEventStore.
"""

import pytest
from fastapi.testclient import TestClient

from analytics_server.services.cache_control import ModerationCache
from analytics_server.services.db_performance import DatabasePerformanceMonitor


@pytest.fixture
def integration_client(app, memory_store, analytics_service):
  app.state.store = memory_store
  app.state.moderation_cache = ModerationCache(memory_store)
  app.state.analytics_service = analytics_service
  app.state.performance_monitor = DatabasePerformanceMonitor(verbose=False)
  return TestClient(app)
