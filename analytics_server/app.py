"""FastAPI application for moderation analytics and datastore monitoring."""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pymongo import AsyncMongoClient

from analytics_server.config import Settings, get_settings
from analytics_server.lib.cache import create_store
from analytics_server.lib.database import create_database_engine, create_session_factory
from analytics_server.lib.metrics import record_request_duration
from analytics_server.lib.structured_logger import (
  StructuredLogger,
  configure_logging,
  generate_correlation_id,
  set_correlation_id,
)
from analytics_server.routers import router
from analytics_server.services.analytics_service import AnalyticsService
from analytics_server.services.cache_control import ModerationCache
from analytics_server.services.connection_monitor import ConnectionMonitor, MongoProbe, MonitorConfig, PostgresProbe
from analytics_server.services.db_performance import DatabasePerformanceMonitor
from analytics_server.services.event_store import SqlEventStore
from analytics_server.services.fluid_compute import drain_background_tasks

logger = StructuredLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
  """Build the services on startup and release their connections on shutdown."""
  settings: Settings = app.state.settings
  configure_logging(settings.log_level)

  store = create_store(settings)
  performance_monitor = DatabasePerformanceMonitor(
    slow_query_threshold_ms=settings.slow_query_threshold_ms,
    max_slow_queries=settings.max_slow_queries,
    verbose=not settings.is_production,
  )
  mongo_client = AsyncMongoClient(
    settings.mongodb_uri,
    serverSelectionTimeoutMS=int(settings.connection_timeout_seconds * 1000),
  )
  probes = {'mongodb': MongoProbe(mongo_client, settings.mongodb_db_name, performance_monitor)}

  engine = None
  app.state.analytics_service = None
  if settings.database_url:
    engine = create_database_engine(
      settings.database_url,
      connect_timeout_seconds=settings.connection_timeout_seconds,
    )
    probes['postgres'] = PostgresProbe(engine)
    app.state.analytics_service = AnalyticsService(
      SqlEventStore(create_session_factory(engine), performance_monitor),
      store,
      ttl_seconds=settings.analytics_cache_ttl_seconds,
    )
  else:
    logger.warning('DATABASE_URL not set; analytics endpoints will return 503')

  app.state.store = store
  app.state.moderation_cache = ModerationCache(store)
  app.state.performance_monitor = performance_monitor
  app.state.connection_monitor = ConnectionMonitor(
    probes,
    MonitorConfig(
      check_interval_seconds=settings.check_interval_seconds,
      connection_timeout_seconds=settings.connection_timeout_seconds,
      enable_automatic_checks=settings.enable_automatic_checks,
    ),
  )
  if settings.enable_automatic_checks:
    app.state.connection_monitor.start_automatic_checks()

  logger.info('Analytics server started', endpoint='lifespan')
  try:
    yield
  finally:
    app.state.connection_monitor.stop_automatic_checks()
    await drain_background_tasks()
    await mongo_client.close()
    if engine is not None:
      await engine.dispose()
    await store.close()


async def add_correlation_id(request: Request, call_next):
  """Propagate X-Correlation-ID and record request duration.

  - Uses the X-Correlation-ID header or generates a new UUID
  - Sets it in context for logging and echoes it on the response
  """
  correlation_id = request.headers.get('X-Correlation-ID')
  if correlation_id:
    set_correlation_id(correlation_id)
  else:
    correlation_id = generate_correlation_id()
  request.state.correlation_id = correlation_id

  start_time = time.time()
  response = await call_next(request)
  duration_seconds = time.time() - start_time

  response.headers['X-Correlation-ID'] = correlation_id

  if request.url.path not in ['/health', '/metrics']:
    route = request.scope.get('route')
    endpoint = getattr(route, 'path', request.url.path)
    record_request_duration(endpoint, request.method, response.status_code, duration_seconds)
    logger.info(
      f'{request.method} {endpoint} -> {response.status_code}',
      endpoint=endpoint,
      status_code=response.status_code,
      duration_ms=round(duration_seconds * 1000, 2),
    )

  return response


async def validation_exception_handler(request: Request, exc: RequestValidationError):
  """Return 422 with the validation errors."""
  return JSONResponse(status_code=422, content={'detail': exc.errors()})


async def health():
  """Health check endpoint (for load balancers)."""
  return {'status': 'healthy'}


async def metrics():
  """Prometheus metrics endpoint."""
  return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
  """Create the FastAPI application.

  Services are built by the lifespan handler. Tests may set them on
  app.state directly instead of entering the lifespan.

  Args:
      settings: Settings to use; loaded from the environment when omitted
  """
  app = FastAPI(
    title='Moderation Analytics API',
    description='Analytics aggregation, caching and datastore monitoring',
    version='0.1.0',
    lifespan=lifespan,
  )
  app.state.settings = settings or get_settings()

  app.middleware('http')(add_correlation_id)
  app.add_exception_handler(RequestValidationError, validation_exception_handler)
  app.add_api_route('/health', health, methods=['GET'])
  app.add_api_route('/metrics', metrics, methods=['GET'])
  app.include_router(router)
  return app


app = create_app()
