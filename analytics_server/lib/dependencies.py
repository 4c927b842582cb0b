"""FastAPI dependencies resolving the services built at startup.

Each service lives on app.state; a missing one means its backing datastore
is not configured, which the API reports as 503.
"""

from typing import Any

from fastapi import HTTPException, Request

from analytics_server.config import Settings


def _require_state(request: Request, name: str, reason: str) -> Any:
  service = getattr(request.app.state, name, None)
  if service is None:
    raise HTTPException(status_code=503, detail=f'Service unavailable: {reason}')
  return service


def get_app_settings(request: Request) -> Settings:
  return request.app.state.settings


def get_performance_monitor(request: Request):
  return _require_state(request, 'performance_monitor', 'performance monitor not initialized')


def get_connection_monitor(request: Request):
  return _require_state(request, 'connection_monitor', 'connection monitor not initialized')


def get_analytics_service(request: Request):
  return _require_state(request, 'analytics_service', 'DATABASE_URL not configured')


def get_moderation_cache(request: Request):
  return _require_state(request, 'moderation_cache', 'key-value store not initialized')


def get_store(request: Request):
  return _require_state(request, 'store', 'key-value store not initialized')
