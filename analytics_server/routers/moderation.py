"""Moderation cache API endpoints (admin only)."""

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from analytics_server.lib.auth import require_admin_key
from analytics_server.lib.cache import KeyValueStore
from analytics_server.lib.dependencies import get_moderation_cache, get_store
from analytics_server.services.cache_control import ModerationCache, moderation_cache_key
from analytics_server.services.fluid_compute import list_pending_background_tasks, run_post_response_task

logger = logging.getLogger(__name__)

router = APIRouter(
  prefix='/api/moderation',
  tags=['Moderation'],
  dependencies=[Depends(require_admin_key)],
)

INVALIDATION_TIMEOUT_SECONDS = 30


class InvalidateRequest(BaseModel):
  kind: str = Field(..., min_length=1, max_length=50, pattern='^[A-Za-z0-9_-]+$', description='Moderation item kind (comment, post, ...)')
  entity_id: str = Field(..., min_length=1, max_length=255)


@router.post('/cache/invalidate', status_code=202)
async def invalidate_moderation_cache(
  body: InvalidateRequest,
  cache: ModerationCache = Depends(get_moderation_cache),
  store: KeyValueStore = Depends(get_store),
):
  """Drop cached views of a moderated item after the response is sent.

  Returns:
      The background task key used to follow the invalidation
  """
  task_key = await run_post_response_task(
    lambda: cache.invalidate(body.kind, body.entity_id),
    key=moderation_cache_key(body.kind, body.entity_id, 'invalidate'),
    store=store,
    timeout_seconds=INVALIDATION_TIMEOUT_SECONDS,
  )
  return {'success': True, 'task': task_key}


@router.get('/cache/background-tasks')
async def get_pending_tasks(store: KeyValueStore = Depends(get_store)):
  """List post-response tasks that have not finished, oldest first."""
  return {'pending': await list_pending_background_tasks(store)}


class AnalyticsCacheRequest(BaseModel):
  data: Any = Field(..., description='JSON-serializable analytics payload')
  expiration_seconds: int = Field(300, ge=1, le=86400)


@router.get('/analytics/{key}')
async def get_cached_moderation_analytics(key: str, cache: ModerationCache = Depends(get_moderation_cache)):
  """Read a cached moderation analytics view (null when absent or expired)."""
  return {'key': key, 'data': await cache.get_cached_analytics(key)}


@router.put('/analytics/{key}')
async def cache_moderation_analytics(
  key: str,
  body: AnalyticsCacheRequest,
  cache: ModerationCache = Depends(get_moderation_cache),
):
  await cache.cache_analytics(key, body.data, body.expiration_seconds)
  return {'success': True, 'key': key}
