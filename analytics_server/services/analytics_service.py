"""Analytics aggregation service.

Computes engagement metrics, activity time series, top content and export
rows from the analytics event log, caching each derived view in the
key-value store. New events invalidate the cached views they affect
according to INVALIDATION_RULES.
"""

import asyncio
import calendar
import csv
import io
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from analytics_server.lib.cache import KeyValueStore
from analytics_server.lib.metrics import record_analytics_event
from analytics_server.models.event_schemas import event_to_record, validate_event
from analytics_server.services.event_store import EventStore

logger = logging.getLogger(__name__)

ENGAGEMENT_METRICS = 'engagement_metrics'
ACTIVITY_SERIES = 'activity_series'
TOP_CONTENT = 'top_content'
USER_ACTIVITY = 'user_activity'
CONTENT_PERFORMANCE = 'content_performance'

DEFAULT_PERIOD = 'month'

# period -> (date_trunc unit, interval label)
TIME_SERIES_BUCKETS = {
    'day': ('hour', 'Hour'),
    'week': ('day', 'Day'),
    'month': ('day', 'Day'),
    'year': ('month', 'Month'),
}


@dataclass(frozen=True)
class InvalidationRule:
    """Cached views to drop when an event is tracked.

    Attributes:
        bases: Cache key bases to invalidate
        scope: 'global' for the ungrouped views, 'group' for the event's group
        event_types: Restrict the rule to these event types (all when empty)
    """

    bases: Tuple[str, ...]
    scope: str = 'global'
    event_types: FrozenSet[str] = frozenset()

    def applies_to(self, event_type: str, group_id: Optional[str]) -> bool:
        if self.scope == 'group' and not group_id:
            return False
        return not self.event_types or event_type in self.event_types


INVALIDATION_RULES = (
    InvalidationRule(bases=(ENGAGEMENT_METRICS, ACTIVITY_SERIES)),
    InvalidationRule(bases=(ENGAGEMENT_METRICS, ACTIVITY_SERIES, TOP_CONTENT), scope='group'),
    InvalidationRule(
        bases=(CONTENT_PERFORMANCE,),
        event_types=frozenset({'POST_VIEW', 'POST_LIKE'}),
    ),
    InvalidationRule(
        bases=(CONTENT_PERFORMANCE,),
        scope='group',
        event_types=frozenset({'POST_VIEW', 'POST_LIKE'}),
    ),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _shift_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def date_range_for_period(period: str, now: datetime) -> Tuple[datetime, datetime]:
    """Get the (start, end) window ending at `now` for a period name.

    Months and years are calendar-based with the day clamped to the target
    month, e.g. March 31 minus one month is February 28 (or 29).

    Args:
        period: 'day', 'week', 'month' or 'year'; anything else is treated as 'month'
        now: End of the window

    Returns:
        Tuple of (start, end)
    """
    if period == 'day':
        return now - timedelta(days=1), now
    if period == 'week':
        return now - timedelta(days=7), now
    if period == 'year':
        return _shift_months(now, -12), now
    return _shift_months(now, -1), now


def build_cache_key(base: str, group_id: Optional[str] = None, params: Optional[Dict[str, Any]] = None) -> str:
    """Build `base[:group:<gid>][:params:k1=v1,k2=v2]` with params sorted by name."""
    key = base
    if group_id:
        key += f':group:{group_id}'
    if params:
        rendered = ','.join(
            f'{name}={"" if params[name] is None else params[name]}' for name in sorted(params)
        )
        key += f':params:{rendered}'
    return key


def invalidation_targets(event_type: str, group_id: Optional[str] = None) -> List[Tuple[str, Optional[str]]]:
    """Resolve INVALIDATION_RULES into (base, group_id) pairs for one event."""
    targets: List[Tuple[str, Optional[str]]] = []
    for rule in INVALIDATION_RULES:
        if not rule.applies_to(event_type, group_id):
            continue
        for base in rule.bases:
            target = (base, group_id if rule.scope == 'group' else None)
            if target not in targets:
                targets.append(target)
    return targets


def _csv_value(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def to_csv(rows: Sequence[Dict[str, Any]], headers: Sequence[str]) -> str:
    """Render export rows as CSV.

    The column key for each header is the header lower-cased with spaces
    replaced by underscores ('Entity ID' -> 'entity_id').

    Args:
        rows: Export rows
        headers: Display headers, in column order

    Returns:
        CSV text with CRLF line endings
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator='\r\n')
    writer.writerow(headers)
    keys = [header.lower().replace(' ', '_') for header in headers]
    for row in rows:
        writer.writerow([_csv_value(row.get(key)) for key in keys])
    return buffer.getvalue()


class AnalyticsService:
    """Tracks events and serves cached analytics views.

    Usage:
        service = AnalyticsService(SqlEventStore(session_factory), store)
        await service.track_event({'type': 'POST_VIEW', 'entity_type': 'post', 'entity_id': 'p1'})
        metrics = await service.get_engagement_metrics('week')
    """

    def __init__(
        self,
        event_store: EventStore,
        store: Optional[KeyValueStore] = None,
        ttl_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow
    ):
        """Initialize the service.

        Args:
            event_store: Event persistence and aggregate queries
            store: Key-value store for derived views; no caching when None
            ttl_seconds: Lifetime of cached views
            clock: Returns the current timezone-aware time
        """
        self.event_store = event_store
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    async def _get_cached(self, key: str) -> Any:
        if self.store is None:
            return None
        try:
            cached = await self.store.get(key)
        except Exception as e:
            logger.warning(f'Analytics cache read failed for {key}: {e}', extra={'cache_key': key})
            return None
        if cached is not None:
            logger.debug(f'Analytics cache hit: {key}', extra={'cache_key': key})
        return cached

    async def _set_cached(self, key: str, value: Any) -> None:
        if self.store is None:
            return
        try:
            await self.store.set(key, value, ttl_seconds=self.ttl_seconds)
        except Exception as e:
            logger.warning(f'Analytics cache write failed for {key}: {e}', extra={'cache_key': key})

    async def _cached(self, key: str, compute: Callable[[], Any]) -> Any:
        cached = await self._get_cached(key)
        if cached is not None:
            return cached
        logger.debug(f'Analytics cache miss: {key}', extra={'cache_key': key})
        result = await compute()
        await self._set_cached(key, result)
        return result

    async def invalidate_related_caches(self, event_type: str, group_id: Optional[str] = None) -> None:
        """Drop every cached view affected by an event of this type and group.

        All params variants (periods, limits, ...) of each view are removed.
        Global invalidation leaves group-scoped entries in place.
        """
        if self.store is None:
            return
        for base, target_group in invalidation_targets(event_type, group_id):
            key = build_cache_key(base, target_group)
            try:
                await self.store.delete(key)
                await self.store.delete_pattern(f'{key}:params:*')
            except Exception as e:
                logger.warning(f'Analytics cache invalidation failed for {key}: {e}', extra={'cache_key': key})

    async def track_event(self, event: Any) -> Optional[Dict[str, Any]]:
        """Validate, store and apply cache invalidation for one event.

        Never raises: tracking failures are logged and None is returned so
        that analytics cannot break the calling request.

        Args:
            event: Raw payload dict (snake_case or camelCase) or a validated event model

        Returns:
            The stored event, or None when validation or storage failed
        """
        event_type = event.get('type', 'unknown') if isinstance(event, dict) else getattr(event, 'type', 'unknown')
        try:
            validated = validate_event(event)
            record = event_to_record(validated)
            if record['timestamp'] is None:
                record['timestamp'] = self.clock()
            stored = await self.event_store.add_event(record)
        except Exception as e:
            logger.error(f'Analytics tracking error: {e}', extra={'event_type': str(event_type)})
            record_analytics_event(str(event_type), False)
            return None

        record_analytics_event(record['type'], True)
        await self.invalidate_related_caches(record['type'], record['group_id'])
        return stored

    async def get_engagement_metrics(self, period: str = 'month', group_id: Optional[str] = None) -> Dict[str, Any]:
        """Get engagement counts for the platform or one group.

        Args:
            period: 'day', 'week', 'month' or 'year'
            group_id: Optional group filter

        Returns:
            Dictionary with event totals, active users and per-type counts
        """
        key = build_cache_key(ENGAGEMENT_METRICS, group_id, {'period': period})

        async def compute() -> Dict[str, Any]:
            start, end = date_range_for_period(period, self.clock())
            total_events, by_type, active_users = await asyncio.gather(
                self.event_store.count_events(start, end, group_id),
                self.event_store.count_by_type(start, end, group_id),
                self.event_store.count_active_users(start, end, group_id),
            )
            return {
                'total_events': total_events,
                'active_users': active_users,
                'post_views': by_type.get('POST_VIEW', 0),
                'post_creates': by_type.get('POST_CREATE', 0),
                'comment_creates': by_type.get('COMMENT_CREATE', 0),
                'likes': by_type.get('POST_LIKE', 0) + by_type.get('COMMENT_LIKE', 0),
                'group_joins': by_type.get('GROUP_JOIN', 0),
                'period': period,
                'start_date': start.isoformat(),
                'end_date': end.isoformat(),
            }

        return await self._cached(key, compute)

    async def get_activity_time_series(
        self,
        period: str = 'week',
        group_id: Optional[str] = None,
        event_types: Optional[Sequence[str]] = None
    ) -> Dict[str, Any]:
        """Get event counts per time bucket, by type and aggregated.

        A failing bucket query yields an empty series instead of an error.
        """
        key = build_cache_key(ACTIVITY_SERIES, group_id, {
            'period': period,
            'event_types': ','.join(event_types) if event_types else None,
        })

        async def compute() -> Dict[str, Any]:
            start, end = date_range_for_period(period, self.clock())
            bucket, interval_label = TIME_SERIES_BUCKETS.get(period, TIME_SERIES_BUCKETS[DEFAULT_PERIOD])
            try:
                rows = await self.event_store.time_buckets(start, end, bucket, group_id, event_types)
            except Exception as e:
                logger.error(f'Error fetching time series data: {e}')
                rows = []

            by_type: Dict[str, List[Dict[str, Any]]] = {}
            totals: Dict[str, int] = {}
            for row in rows:
                by_type.setdefault(row['type'], []).append(
                    {'time_segment': row['time_segment'], 'count': int(row['count'])}
                )
                totals[row['time_segment']] = totals.get(row['time_segment'], 0) + int(row['count'])

            return {
                'time_series': {
                    'by_type': by_type,
                    'aggregated': [
                        {'time_segment': segment, 'count': count} for segment, count in sorted(totals.items())
                    ],
                },
                'period': period,
                'interval_label': interval_label,
                'start_date': start.isoformat(),
                'end_date': end.isoformat(),
            }

        return await self._cached(key, compute)

    async def get_top_content(
        self,
        period: str = 'month',
        group_id: Optional[str] = None,
        limit: int = 10
    ) -> Dict[str, Any]:
        """Get the most viewed posts and the most active groups.

        Posts are ordered by views, highest first; posts with equal views keep
        the order the event store returned them in.
        """
        key = build_cache_key(TOP_CONTENT, group_id, {'period': period, 'limit': limit})

        async def compute() -> Dict[str, Any]:
            start, end = date_range_for_period(period, self.clock())
            top_post_ids, top_group_ids = await asyncio.gather(
                self.event_store.top_entities('POST_VIEW', start, end, group_id, limit),
                self.event_store.top_groups(start, end, limit),
            )
            posts, groups = await asyncio.gather(
                self.event_store.get_posts([post_id for post_id, _ in top_post_ids]),
                self.event_store.get_groups([gid for gid, _ in top_group_ids]),
            )

            views = dict(top_post_ids)
            top_posts = [{**post, 'views': views.get(post['id'], 0)} for post in posts]
            top_posts.sort(key=lambda post: post['views'], reverse=True)

            activity = dict(top_group_ids)
            top_groups = [{**group, 'event_count': activity.get(group['id'], 0)} for group in groups]
            top_groups.sort(key=lambda group: group['event_count'], reverse=True)

            return {'top_posts': top_posts, 'top_groups': top_groups}

        return await self._cached(key, compute)

    async def get_events_for_export(
        self,
        period: str = 'month',
        group_id: Optional[str] = None,
        limit: int = 1000
    ) -> List[Dict[str, Any]]:
        """Get raw events for export, newest first."""
        key = build_cache_key(USER_ACTIVITY, group_id, {'period': period, 'limit': limit, 'export': 'events'})

        async def compute() -> List[Dict[str, Any]]:
            start, end = date_range_for_period(period, self.clock())
            events = await self.event_store.list_events(start, end, group_id, limit)
            return [
                {
                    'type': event['type'],
                    'entity_type': event['entity_type'],
                    'entity_id': event.get('entity_id') or '',
                    'user_id': event.get('user_id') or '',
                    'group_id': event.get('group_id') or '',
                    'timestamp': event['timestamp'],
                    'metadata': event.get('metadata') or {},
                }
                for event in events
            ]

        return await self._cached(key, compute)

    async def get_user_activity_for_export(
        self,
        period: str = 'month',
        group_id: Optional[str] = None,
        limit: int = 1000
    ) -> List[Dict[str, Any]]:
        """Get per-user activity for export, most active first."""
        key = build_cache_key(USER_ACTIVITY, group_id, {'period': period, 'limit': limit, 'export': 'users'})

        async def compute() -> List[Dict[str, Any]]:
            start, end = date_range_for_period(period, self.clock())
            activity = await self.event_store.user_activity(start, end, group_id, limit)
            users = await self.event_store.get_users([row['user_id'] for row in activity])
            names = {user['id']: user.get('name') for user in users}
            return [
                {
                    'user_id': row['user_id'],
                    'user_name': names.get(row['user_id']) or 'Unknown User',
                    'event_count': row['event_count'],
                    'last_activity': row.get('last_activity'),
                    'first_activity': row.get('first_activity'),
                }
                for row in activity
            ]

        return await self._cached(key, compute)

    async def get_content_performance_for_export(
        self,
        period: str = 'month',
        group_id: Optional[str] = None,
        limit: int = 1000
    ) -> List[Dict[str, Any]]:
        """Get per-post view, like and comment counts for export.

        Posts that have views but no longer exist are skipped.
        """
        key = build_cache_key(CONTENT_PERFORMANCE, group_id, {'period': period, 'limit': limit})

        async def compute() -> List[Dict[str, Any]]:
            start, end = date_range_for_period(period, self.clock())
            post_views = await self.event_store.top_entities('POST_VIEW', start, end, group_id, limit)
            posts = {post['id']: post for post in await self.event_store.get_posts([pid for pid, _ in post_views])}

            rows = []
            for post_id, views in post_views:
                post = posts.get(post_id)
                if post is None:
                    continue
                rows.append({
                    'content_id': post_id,
                    'title': post.get('title'),
                    'type': 'Post',
                    'views': views,
                    'likes': post.get('likes', 0),
                    'comments': post.get('comments', 0),
                    'author': (post.get('author') or {}).get('name'),
                })
            return rows

        return await self._cached(key, compute)
