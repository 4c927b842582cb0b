"""Persistence and aggregate queries for analytics events.

`EventStore` is the interface the analytics service depends on;
`SqlEventStore` implements it over the `analytics_events` table and the forum
read models with SQLAlchemy async sessions.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics_server.models.analytics_event import AnalyticsEvent
from analytics_server.models.content import ForumGroup, ForumPost, User
from analytics_server.services.db_performance import DatabasePerformanceMonitor

logger = logging.getLogger(__name__)

EVENTS_TABLE = AnalyticsEvent.__tablename__

# Label format of each date_trunc bucket
BUCKET_FORMATS = {
    'hour': '%Y-%m-%d %H:00:00',
    'day': '%Y-%m-%d',
    'month': '%Y-%m',
}


class EventStore(Protocol):
    """Async event persistence used by AnalyticsService.

    All window arguments are inclusive timezone-aware datetimes; `group_id`
    restricts the query to one group when given.
    """

    async def add_event(self, record: Dict[str, Any]) -> Dict[str, Any]: ...

    async def count_events(self, start: datetime, end: datetime, group_id: Optional[str] = None) -> int: ...

    async def count_by_type(self, start: datetime, end: datetime, group_id: Optional[str] = None) -> Dict[str, int]: ...

    async def count_active_users(self, start: datetime, end: datetime, group_id: Optional[str] = None) -> int: ...

    async def time_buckets(
        self,
        start: datetime,
        end: datetime,
        bucket: str,
        group_id: Optional[str] = None,
        event_types: Optional[Sequence[str]] = None
    ) -> List[Dict[str, Any]]: ...

    async def top_entities(
        self,
        event_type: str,
        start: datetime,
        end: datetime,
        group_id: Optional[str] = None,
        limit: int = 10
    ) -> List[Tuple[str, int]]: ...

    async def top_groups(self, start: datetime, end: datetime, limit: int = 10) -> List[Tuple[str, int]]: ...

    async def list_events(
        self,
        start: datetime,
        end: datetime,
        group_id: Optional[str] = None,
        limit: int = 1000
    ) -> List[Dict[str, Any]]: ...

    async def user_activity(
        self,
        start: datetime,
        end: datetime,
        group_id: Optional[str] = None,
        limit: int = 1000
    ) -> List[Dict[str, Any]]: ...

    async def get_posts(self, post_ids: Sequence[str]) -> List[Dict[str, Any]]: ...

    async def get_groups(self, group_ids: Sequence[str]) -> List[Dict[str, Any]]: ...

    async def get_users(self, user_ids: Sequence[str]) -> List[Dict[str, Any]]: ...


def _window(query, start: datetime, end: datetime, group_id: Optional[str] = None):
    query = query.where(AnalyticsEvent.timestamp >= start, AnalyticsEvent.timestamp <= end)
    if group_id:
        query = query.where(AnalyticsEvent.group_id == group_id)
    return query


class SqlEventStore:
    """EventStore backed by PostgreSQL.

    Each call opens its own short-lived session so that independent aggregate
    queries can be awaited concurrently. When a performance monitor is given,
    every statement is timed under the table it reads.
    """

    def __init__(self, session_factory: async_sessionmaker, monitor: Optional[DatabasePerformanceMonitor] = None):
        """Initialize the store.

        Args:
            session_factory: Factory from create_session_factory()
            monitor: Optional recorder for statement latency
        """
        self.session_factory = session_factory
        self.monitor = monitor

    async def _run(self, operation: str, table: str, work: Callable[[AsyncSession], Awaitable[Any]]) -> Any:
        async def in_session() -> Any:
            async with self.session_factory() as session:
                return await work(session)

        if self.monitor is None:
            return await in_session()
        return await self.monitor.track_postgres_operation(operation, table, in_session)

    async def _all(self, operation: str, table: str, query) -> List[Any]:
        async def fetch(session: AsyncSession) -> List[Any]:
            result = await session.execute(query)
            return list(result.all())
        return await self._run(operation, table, fetch)

    async def _scalar(self, operation: str, query) -> int:
        async def fetch(session: AsyncSession) -> int:
            result = await session.execute(query)
            return result.scalar() or 0
        return await self._run(operation, EVENTS_TABLE, fetch)

    async def add_event(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Append one event.

        Args:
            record: Output of event_to_record()

        Returns:
            The stored event as a dict
        """
        event = AnalyticsEvent(
            id=uuid.uuid4(),
            type=record['type'],
            entity_type=record['entity_type'],
            entity_id=record.get('entity_id'),
            user_id=record.get('user_id'),
            group_id=record.get('group_id'),
            event_metadata=record.get('metadata') or {},
            timestamp=record.get('timestamp') or datetime.now(timezone.utc),
        )

        async def insert(session: AsyncSession) -> None:
            session.add(event)
            await session.commit()

        await self._run('insert', EVENTS_TABLE, insert)
        logger.debug(f'Stored analytics event {event.type} ({event.id})', extra={'event_type': event.type})
        return event.to_dict()

    async def count_events(self, start: datetime, end: datetime, group_id: Optional[str] = None) -> int:
        return await self._scalar('count', _window(select(func.count(AnalyticsEvent.id)), start, end, group_id))

    async def count_by_type(self, start: datetime, end: datetime, group_id: Optional[str] = None) -> Dict[str, int]:
        query = _window(
            select(AnalyticsEvent.type, func.count(AnalyticsEvent.id).label('count')),
            start, end, group_id
        ).group_by(AnalyticsEvent.type)
        rows = await self._all('count_by_type', EVENTS_TABLE, query)
        return {row.type: row.count for row in rows}

    async def count_active_users(self, start: datetime, end: datetime, group_id: Optional[str] = None) -> int:
        query = _window(
            select(func.count(func.distinct(AnalyticsEvent.user_id))),
            start, end, group_id
        ).where(AnalyticsEvent.user_id.isnot(None))
        return await self._scalar('count_distinct', query)

    async def time_buckets(
        self,
        start: datetime,
        end: datetime,
        bucket: str,
        group_id: Optional[str] = None,
        event_types: Optional[Sequence[str]] = None
    ) -> List[Dict[str, Any]]:
        """Count events per (time bucket, type).

        Args:
            bucket: date_trunc unit ('hour', 'day' or 'month')

        Returns:
            Rows of {time_segment, type, count} in ascending bucket order
        """
        if bucket not in BUCKET_FORMATS:
            raise ValueError(f'Unsupported time bucket: {bucket}')

        time_bucket = func.date_trunc(bucket, AnalyticsEvent.timestamp).label('time_bucket')
        query = _window(
            select(time_bucket, AnalyticsEvent.type, func.count(AnalyticsEvent.id).label('count')),
            start, end, group_id
        )
        if event_types:
            query = query.where(AnalyticsEvent.type.in_(list(event_types)))
        query = query.group_by('time_bucket', AnalyticsEvent.type).order_by('time_bucket')

        rows = await self._all('time_buckets', EVENTS_TABLE, query)
        return [
            {
                'time_segment': row.time_bucket.strftime(BUCKET_FORMATS[bucket]),
                'type': row.type,
                'count': int(row.count),
            }
            for row in rows
        ]

    async def top_entities(
        self,
        event_type: str,
        start: datetime,
        end: datetime,
        group_id: Optional[str] = None,
        limit: int = 10
    ) -> List[Tuple[str, int]]:
        count = func.count(AnalyticsEvent.id).label('count')
        query = (
            _window(select(AnalyticsEvent.entity_id, count), start, end, group_id)
            .where(AnalyticsEvent.type == event_type, AnalyticsEvent.entity_id.isnot(None))
            .group_by(AnalyticsEvent.entity_id)
            .order_by(desc('count'))
            .limit(limit)
        )
        rows = await self._all('top_entities', EVENTS_TABLE, query)
        return [(row.entity_id, int(row.count)) for row in rows]

    async def top_groups(self, start: datetime, end: datetime, limit: int = 10) -> List[Tuple[str, int]]:
        count = func.count(AnalyticsEvent.id).label('count')
        query = (
            _window(select(AnalyticsEvent.group_id, count), start, end)
            .where(AnalyticsEvent.group_id.isnot(None))
            .group_by(AnalyticsEvent.group_id)
            .order_by(desc('count'))
            .limit(limit)
        )
        rows = await self._all('top_groups', EVENTS_TABLE, query)
        return [(row.group_id, int(row.count)) for row in rows]

    async def list_events(
        self,
        start: datetime,
        end: datetime,
        group_id: Optional[str] = None,
        limit: int = 1000
    ) -> List[Dict[str, Any]]:
        query = (
            _window(select(AnalyticsEvent), start, end, group_id)
            .order_by(AnalyticsEvent.timestamp.desc())
            .limit(limit)
        )

        async def fetch(session: AsyncSession) -> List[Dict[str, Any]]:
            result = await session.execute(query)
            return [event.to_dict() for event in result.scalars().all()]

        return await self._run('select', EVENTS_TABLE, fetch)

    async def user_activity(
        self,
        start: datetime,
        end: datetime,
        group_id: Optional[str] = None,
        limit: int = 1000
    ) -> List[Dict[str, Any]]:
        """Per-user event counts with first and last activity inside the window."""
        count = func.count(AnalyticsEvent.id).label('event_count')
        query = (
            _window(
                select(
                    AnalyticsEvent.user_id,
                    count,
                    func.min(AnalyticsEvent.timestamp).label('first_activity'),
                    func.max(AnalyticsEvent.timestamp).label('last_activity'),
                ),
                start, end, group_id
            )
            .where(AnalyticsEvent.user_id.isnot(None))
            .group_by(AnalyticsEvent.user_id)
            .order_by(desc('event_count'))
            .limit(limit)
        )
        rows = await self._all('user_activity', EVENTS_TABLE, query)
        return [
            {
                'user_id': row.user_id,
                'event_count': int(row.event_count),
                'first_activity': row.first_activity.isoformat() if row.first_activity else None,
                'last_activity': row.last_activity.isoformat() if row.last_activity else None,
            }
            for row in rows
        ]

    async def _models(self, model, ids: Sequence[str]) -> List[Dict[str, Any]]:
        if not ids:
            return []
        query = select(model).where(model.id.in_(list(ids)))

        async def fetch(session: AsyncSession) -> List[Dict[str, Any]]:
            result = await session.execute(query)
            return [row.to_dict() for row in result.scalars().all()]

        return await self._run('select', model.__tablename__, fetch)

    async def get_posts(self, post_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return await self._models(ForumPost, post_ids)

    async def get_groups(self, group_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return await self._models(ForumGroup, group_ids)

    async def get_users(self, user_ids: Sequence[str]) -> List[Dict[str, Any]]:
        if not user_ids:
            return []
        rows = await self._all('select', User.__tablename__, select(User.id, User.name).where(User.id.in_(list(user_ids))))
        return [{'id': row.id, 'name': row.name} for row in rows]
