"""Analytics API endpoints.

Event submission is open to any caller; reading and exporting analytics
require the admin key.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import Response

from analytics_server.config import Settings
from analytics_server.lib.auth import require_admin_key
from analytics_server.lib.dependencies import get_analytics_service, get_app_settings
from analytics_server.models.event_schemas import AnalyticsEventValidationError, validate_event
from analytics_server.services.analytics_service import AnalyticsService, to_csv
from analytics_server.services.cache_control import cached_json_response
from analytics_server.services.fluid_compute import FluidComputeOptions, fluid_compute

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/analytics', tags=['Analytics'])

PERIOD_PATTERN = '^(day|week|month|year)$'

# data_type -> (service method, headers, filename stem)
EXPORTS = {
  'events': (
    'get_events_for_export',
    ['Type', 'Entity Type', 'Entity ID', 'User ID', 'Group ID', 'Timestamp', 'Metadata'],
    'analytics-events',
  ),
  'users': (
    'get_user_activity_for_export',
    ['User ID', 'User Name', 'Event Count', 'Last Activity', 'First Activity'],
    'user-activity',
  ),
  'content': (
    'get_content_performance_for_export',
    ['Content ID', 'Title', 'Type', 'Views', 'Likes', 'Comments', 'Author'],
    'content-performance',
  ),
}

EXPORT_FORMATS = {
  'csv': ('text/csv', 'csv'),
  'excel': ('application/vnd.ms-excel', 'xlsx'),
}

EXPORT_CONCURRENCY = 2


def _export_runner(request: Request):
  """Concurrency-limited export renderer, created once per application."""
  state = request.app.state
  runner = getattr(state, 'export_runner', None)
  if runner is None:

    async def render_export(data_type: str, period: str, group_id: Optional[str], limit: int) -> str:
      service: AnalyticsService = state.analytics_service
      method, headers, _ = EXPORTS[data_type]
      rows = await getattr(service, method)(period, group_id, limit)
      return to_csv(rows, headers)

    # Rows are cached by the analytics service; this only bounds concurrent renders
    runner = fluid_compute(
      render_export,
      FluidComputeOptions(key_prefix='analytics-export', concurrency=EXPORT_CONCURRENCY, cache_ttl_seconds=None),
    )
    state.export_runner = runner
  return runner


@router.post('/events', status_code=202)
async def track_event(
  payload: Dict[str, Any] = Body(...),
  service: AnalyticsService = Depends(get_analytics_service),
):
  """Track one analytics event.

  The payload is validated against the schema of its `type` (422 on
  mismatch) before it is stored.

  Args:
      payload: Event fields in snake_case or camelCase
      service: Analytics service (from dependency)

  Returns:
      The stored event
  """
  try:
    event = validate_event(payload)
  except AnalyticsEventValidationError as e:
    raise HTTPException(status_code=422, detail=jsonable_encoder(e.errors)) from e

  stored = await service.track_event(event)
  if stored is None:
    raise HTTPException(status_code=500, detail='Failed to track analytics event')
  return {'success': True, 'event': stored}


@router.get('', dependencies=[Depends(require_admin_key)])
async def get_analytics(
  period: str = Query('week', pattern=PERIOD_PATTERN),
  group_id: Optional[str] = Query(None, max_length=255),
  data_type: str = Query('overview', pattern='^(overview|engagement|timeSeries|topContent)$'),
  limit: int = Query(10, ge=1, le=100),
  service: AnalyticsService = Depends(get_analytics_service),
  settings: Settings = Depends(get_app_settings),
):
  """Get analytics data (admin only).

  Args:
      period: Time window ("day", "week", "month", "year")
      group_id: Optional group filter
      data_type: "overview", "engagement", "timeSeries" or "topContent"
      limit: Number of top items for "topContent"

  Returns:
      JSON response with medium-tier CDN cache headers
  """
  if data_type == 'engagement':
    body = await service.get_engagement_metrics(period, group_id)
  elif data_type == 'timeSeries':
    body = await service.get_activity_time_series(period, group_id)
  elif data_type == 'topContent':
    body = await service.get_top_content(period, group_id, limit)
  else:
    engagement, activity, top_content = await asyncio.gather(
      service.get_engagement_metrics(period, group_id),
      service.get_activity_time_series(period, group_id),
      service.get_top_content(period, group_id, 5),
    )
    body = {'engagement': engagement, 'activity': activity, 'top_content': top_content}

  return cached_json_response(
    body,
    duration='medium',
    stale_while_revalidate=True,
    environment=settings.environment,
    durations=settings.cache_tier_seconds,
  )


@router.get('/export', dependencies=[Depends(require_admin_key)])
async def export_analytics(
  request: Request,
  period: str = Query('week', pattern=PERIOD_PATTERN),
  group_id: Optional[str] = Query(None, max_length=255),
  data_type: str = Query('events', pattern='^(events|users|content)$'),
  format: str = Query('csv', pattern='^(csv|excel)$'),
  limit: int = Query(1000, ge=1, le=10000),
  service: AnalyticsService = Depends(get_analytics_service),
):
  """Export analytics rows as CSV (admin only).

  The "excel" format is the same CSV served with an Excel content type.
  """
  content = await _export_runner(request)(data_type, period, group_id, limit)
  media_type, extension = EXPORT_FORMATS[format]
  filename = f'{EXPORTS[data_type][2]}-{period}.{extension}'
  logger.info(f'Exported {data_type} analytics ({period}, group={group_id})')
  return Response(
    content=content,
    media_type=media_type,
    headers={'Content-Disposition': f'attachment; filename="{filename}"'},
  )
