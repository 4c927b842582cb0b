"""Database monitoring API endpoints.

All endpoints require the admin key.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from analytics_server.lib.auth import require_admin_key
from analytics_server.lib.dependencies import get_connection_monitor, get_performance_monitor
from analytics_server.services.connection_monitor import ConnectionMonitor
from analytics_server.services.db_performance import DatabasePerformanceMonitor

logger = logging.getLogger(__name__)

router = APIRouter(
  prefix='/api/admin/database',
  tags=['Database Monitoring'],
  dependencies=[Depends(require_admin_key)],
)


class ResetMetricsRequest(BaseModel):
  database: Optional[str] = Field(None, pattern='^(mongodb|postgres)$', description='Database to reset (all when omitted)')


class PerformanceConfigRequest(BaseModel):
  slow_query_threshold_ms: Optional[float] = Field(None, gt=0)
  max_slow_queries: Optional[int] = Field(None, ge=1, le=10000)
  verbose: Optional[bool] = None


class MonitoringRequest(BaseModel):
  enabled: bool = Field(..., description='Start or stop automatic connection checks')
  interval_seconds: Optional[float] = Field(None, gt=0, description='Check interval (keeps the current one when omitted)')


def summarize_database(snapshot: Dict[str, Any]) -> Dict[str, Any]:
  """Flatten one database snapshot into per-operation rows and totals.

  Error buckets are reported as an error count rather than as operations.
  """
  slow_counts: Dict[str, int] = {}
  for query in snapshot.get('slow_queries', []):
    key = f'{query["operation"]}:{query["collection"]}'
    slow_counts[key] = slow_counts.get(key, 0) + 1

  operations = []
  total_operations = 0
  total_time = 0.0
  error_count = 0
  for key, stats in snapshot.get('operations', {}).items():
    if key.endswith(':error'):
      error_count += stats['count']
      continue
    operation, _, collection = key.partition(':')
    total_operations += stats['count']
    total_time += stats['total_time']
    operations.append({
      'operation': operation,
      'collection': collection,
      'count': stats['count'],
      'total_time': stats['total_time'],
      'avg_time': stats['avg_time'],
      'slow_count': slow_counts.get(key, 0),
    })

  return {
    'operations': operations,
    'total_operations': total_operations,
    'average_response_time': total_time / total_operations if total_operations else 0,
    'slow_operations': sum(op['slow_count'] for op in operations),
    'error_count': error_count,
    'last_updated': snapshot.get('last_updated'),
  }


@router.get('/metrics')
async def get_database_metrics(
  database: Optional[str] = Query(None, pattern='^(mongodb|postgres)$'),
  include_slow_queries: bool = False,
  monitor: DatabasePerformanceMonitor = Depends(get_performance_monitor),
):
  """Get operation statistics for the monitored databases.

  Args:
      database: Restrict the report to one database
      include_slow_queries: Include the raw slow query log of each database
      monitor: Performance monitor (from dependency)

  Returns:
      Dictionary with mongodb and postgresql summaries plus a current data point
  """
  snapshots = {database: monitor.get_metrics(database)} if database else monitor.get_metrics()
  payload: Dict[str, Any] = {}
  for name, key in (('mongodb', 'mongodb'), ('postgres', 'postgresql')):
    if name not in snapshots:
      continue
    payload[key] = summarize_database(snapshots[name])
    if include_slow_queries:
      payload[key]['slow_queries'] = snapshots[name]['slow_queries']

  # Current point only; samples are not historised
  payload['timeSeriesData'] = [{
    'timestamp': datetime.now(timezone.utc).isoformat(),
    'mongodb_avg_time': payload.get('mongodb', {}).get('average_response_time', 0),
    'postgresql_avg_time': payload.get('postgresql', {}).get('average_response_time', 0),
    'mongodb_op_count': payload.get('mongodb', {}).get('total_operations', 0),
    'postgresql_op_count': payload.get('postgresql', {}).get('total_operations', 0),
  }]
  return payload


@router.post('/metrics/reset')
async def reset_database_metrics(
  body: ResetMetricsRequest,
  monitor: DatabasePerformanceMonitor = Depends(get_performance_monitor),
):
  monitor.reset_metrics(body.database)
  logger.info(f'Database metrics reset (database={body.database or "all"})')
  return {
    'success': True,
    'message': f'Metrics for {body.database} have been reset' if body.database else 'All database metrics have been reset',
  }


@router.post('/metrics/config')
async def update_performance_config(
  body: PerformanceConfigRequest,
  monitor: DatabasePerformanceMonitor = Depends(get_performance_monitor),
):
  changes = body.model_dump(exclude_none=True)
  if not changes:
    raise HTTPException(status_code=400, detail='No configuration changes provided')
  return {'success': True, 'config': monitor.update_config(**changes)}


@router.get('/connections')
async def get_connections(monitor: ConnectionMonitor = Depends(get_connection_monitor)):
  """Get the last known connection status. Does not probe the databases."""
  return {
    'success': True,
    'timestamp': datetime.now(timezone.utc).isoformat(),
    'status': monitor.get_connection_status(),
  }


@router.post('/connections/check')
async def check_connections(monitor: ConnectionMonitor = Depends(get_connection_monitor)):
  """Probe every configured database now."""
  status = await monitor.check_all()
  return {
    'success': True,
    'timestamp': datetime.now(timezone.utc).isoformat(),
    'status': status,
  }


@router.post('/connections/monitoring')
async def configure_monitoring(
  body: MonitoringRequest,
  monitor: ConnectionMonitor = Depends(get_connection_monitor),
):
  """Start or stop automatic connection checks."""
  if body.enabled:
    monitor.start_automatic_checks(body.interval_seconds)
  else:
    monitor.stop_automatic_checks()

  return {
    'success': True,
    'monitoring_enabled': monitor.monitoring_enabled,
    'check_interval': monitor.config.check_interval_seconds,
  }
