"""Shared test fixtures and utilities for all tests.

Provides fake clocks, an in-memory EventStore with call counters, and a
FastAPI app with fake services wired onto app.state.
"""

import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import pytest
from fastapi.testclient import TestClient

from analytics_server.app import create_app
from analytics_server.config import Settings
from analytics_server.lib.cache import MemoryStore
from analytics_server.services.analytics_service import AnalyticsService
from analytics_server.services.event_store import BUCKET_FORMATS

ADMIN_KEY = 'test-admin-key'
FIXED_NOW = datetime(2024, 3, 31, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Clocks
# ============================================================================


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    """Timezone-aware datetime clock that only moves when told to."""

    def __init__(self, start: datetime = FIXED_NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


# ============================================================================
# Event store
# ============================================================================


class FakeEventStore:
    """In-memory EventStore that counts calls per method.

    Set `fail_on` to method names that should raise RuntimeError.
    """

    def __init__(self):
        self.events: List[Dict[str, Any]] = []
        self.posts: Dict[str, Dict[str, Any]] = {}
        self.groups: Dict[str, Dict[str, Any]] = {}
        self.users: Dict[str, Dict[str, Any]] = {}
        self.calls: Counter = Counter()
        self.fail_on: set = set()

    def _called(self, name: str) -> None:
        self.calls[name] += 1
        if name in self.fail_on:
            raise RuntimeError(f'{name} failed')

    def _window(self, start: datetime, end: datetime, group_id: Optional[str] = None):
        return [
            event for event in self.events
            if start <= event['timestamp'] <= end and (not group_id or event['group_id'] == group_id)
        ]

    def add_post(self, post_id: str, title: str, author: str = 'Ada', likes: int = 0, comments: int = 0):
        self.posts[post_id] = {
            'id': post_id,
            'title': title,
            'author': {'id': f'author-{post_id}', 'name': author},
            'likes': likes,
            'comments': comments,
        }

    def add_group(self, group_id: str, name: str):
        self.groups[group_id] = {'id': group_id, 'name': name, 'members': 0, 'posts': 0}

    def seed(self, type: str, timestamp: datetime, **fields: Any) -> Dict[str, Any]:
        """Insert an event directly, bypassing validation and counters."""
        event = {
            'id': str(uuid.uuid4()),
            'type': type,
            'entity_type': fields.get('entity_type', 'post'),
            'entity_id': fields.get('entity_id'),
            'user_id': fields.get('user_id'),
            'group_id': fields.get('group_id'),
            'metadata': fields.get('metadata', {}),
            'timestamp': timestamp,
        }
        self.events.append(event)
        return event

    async def add_event(self, record: Dict[str, Any]) -> Dict[str, Any]:
        self._called('add_event')
        event = self.seed(record['type'], record['timestamp'], **{
            key: record.get(key) for key in ('entity_type', 'entity_id', 'user_id', 'group_id')
        })
        event['metadata'] = record.get('metadata') or {}
        return {**event, 'timestamp': event['timestamp'].isoformat()}

    async def count_events(self, start, end, group_id=None) -> int:
        self._called('count_events')
        return len(self._window(start, end, group_id))

    async def count_by_type(self, start, end, group_id=None) -> Dict[str, int]:
        self._called('count_by_type')
        return dict(Counter(event['type'] for event in self._window(start, end, group_id)))

    async def count_active_users(self, start, end, group_id=None) -> int:
        self._called('count_active_users')
        return len({event['user_id'] for event in self._window(start, end, group_id) if event['user_id']})

    async def time_buckets(self, start, end, bucket, group_id=None, event_types=None) -> List[Dict[str, Any]]:
        self._called('time_buckets')
        counts: Counter = Counter()
        for event in self._window(start, end, group_id):
            if event_types and event['type'] not in event_types:
                continue
            counts[(event['timestamp'].strftime(BUCKET_FORMATS[bucket]), event['type'])] += 1
        return [
            {'time_segment': segment, 'type': type, 'count': count}
            for (segment, type), count in sorted(counts.items())
        ]

    async def top_entities(self, event_type, start, end, group_id=None, limit=10):
        self._called('top_entities')
        counts = Counter(
            event['entity_id'] for event in self._window(start, end, group_id)
            if event['type'] == event_type and event['entity_id']
        )
        return counts.most_common(limit)

    async def top_groups(self, start, end, limit=10):
        self._called('top_groups')
        counts = Counter(event['group_id'] for event in self._window(start, end) if event['group_id'])
        return counts.most_common(limit)

    async def list_events(self, start, end, group_id=None, limit=1000):
        self._called('list_events')
        events = sorted(self._window(start, end, group_id), key=lambda event: event['timestamp'], reverse=True)
        return [{**event, 'timestamp': event['timestamp'].isoformat()} for event in events[:limit]]

    async def user_activity(self, start, end, group_id=None, limit=1000):
        self._called('user_activity')
        by_user: Dict[str, List[datetime]] = {}
        for event in self._window(start, end, group_id):
            if event['user_id']:
                by_user.setdefault(event['user_id'], []).append(event['timestamp'])
        rows = [
            {
                'user_id': user_id,
                'event_count': len(stamps),
                'first_activity': min(stamps).isoformat(),
                'last_activity': max(stamps).isoformat(),
            }
            for user_id, stamps in by_user.items()
        ]
        rows.sort(key=lambda row: row['event_count'], reverse=True)
        return rows[:limit]

    async def get_posts(self, post_ids: Sequence[str]):
        self._called('get_posts')
        return [self.posts[post_id] for post_id in post_ids if post_id in self.posts]

    async def get_groups(self, group_ids: Sequence[str]):
        self._called('get_groups')
        return [self.groups[group_id] for group_id in group_ids if group_id in self.groups]

    async def get_users(self, user_ids: Sequence[str]):
        self._called('get_users')
        return [self.users[user_id] for user_id in user_ids if user_id in self.users]


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def date_clock():
    return FakeDateClock()


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def event_store():
    return FakeEventStore()


@pytest.fixture
def analytics_service(event_store, memory_store, date_clock):
    return AnalyticsService(event_store, memory_store, ttl_seconds=300, clock=date_clock)


@pytest.fixture
def test_settings():
    return Settings(environment='test', admin_api_key=ADMIN_KEY)


@pytest.fixture
def app(test_settings):
    """App without lifespan; tests attach the services they need to app.state."""
    return create_app(test_settings)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {'X-Admin-Key': ADMIN_KEY}
