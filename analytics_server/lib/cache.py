"""Key-value cache backends.

Two interchangeable async stores share the `KeyValueStore` protocol:

- RedisStore: shared cache across processes (redis.asyncio)
- MemoryStore: in-process dict with lazy per-key expiry, used when no Redis
  URL is configured and in tests (its clock is injectable)

Values are JSON-serialised on write, so readers always receive a fresh copy
and cached results must be JSON-compatible. Backend errors propagate; the
services decide whether a failure is fatal.
"""

import fnmatch
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

import redis.asyncio as redis

from analytics_server.config import Settings

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Async key-value store consumed by the caching services."""

    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def expire(self, key: str, seconds: int) -> bool: ...

    async def delete_pattern(self, pattern: str) -> int: ...

    async def zadd(self, key: str, mapping: Dict[str, float]) -> int: ...

    async def zrange(self, key: str, start: int = 0, stop: int = -1) -> List[str]: ...

    async def zrem(self, key: str, *members: str) -> int: ...

    async def ping(self) -> bool: ...


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


class RedisStore:
    """Redis-backed store.

    Usage:
        store = RedisStore.from_url('redis://localhost:6379/0')
        await store.set('moderation:analytics:summary', {'pending': 3}, ttl_seconds=300)
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str, timeout_seconds: float = 5) -> 'RedisStore':
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=timeout_seconds,
            socket_timeout=timeout_seconds,
        )
        return cls(client)

    async def get(self, key: str) -> Any:
        value = await self.client.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds:
            await self.client.setex(key, int(ttl_seconds), _dumps(value))
        else:
            await self.client.set(key, _dumps(value))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self.client.expire(key, int(seconds)))

    async def delete_pattern(self, pattern: str) -> int:
        count = 0
        async for key in self.client.scan_iter(match=pattern):
            count += int(await self.client.delete(key))
        return count

    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        return int(await self.client.zadd(key, mapping))

    async def zrange(self, key: str, start: int = 0, stop: int = -1) -> List[str]:
        return list(await self.client.zrange(key, start, stop))

    async def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self.client.zrem(key, *members))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


class MemoryStore:
    """In-process store with Redis-like semantics.

    Expired keys are dropped when they are next touched; there is no
    background sweep.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._values: Dict[str, str] = {}
        self._expires_at: Dict[str, float] = {}
        self._sorted_sets: Dict[str, Dict[str, float]] = {}

    def _alive(self, key: str) -> bool:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)
            self._sorted_sets.pop(key, None)
            return False
        return key in self._values or key in self._sorted_sets

    def keys(self) -> List[str]:
        """Return the live keys (test helper)."""
        return [key for key in list(self._values) + list(self._sorted_sets) if self._alive(key)]

    async def get(self, key: str) -> Any:
        if not self._alive(key) or key not in self._values:
            return None
        return json.loads(self._values[key])

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        self._values[key] = _dumps(value)
        if ttl_seconds:
            self._expires_at[key] = self._clock() + ttl_seconds
        else:
            self._expires_at.pop(key, None)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self._values.pop(key, None)
            self._sorted_sets.pop(key, None)
            self._expires_at.pop(key, None)
        return removed

    async def expire(self, key: str, seconds: int) -> bool:
        if not self._alive(key):
            return False
        self._expires_at[key] = self._clock() + seconds
        return True

    async def delete_pattern(self, pattern: str) -> int:
        matching = [key for key in self.keys() if fnmatch.fnmatchcase(key, pattern)]
        return await self.delete(*matching)

    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        self._alive(key)
        members = self._sorted_sets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in members)
        members.update({member: float(score) for member, score in mapping.items()})
        return added

    async def zrange(self, key: str, start: int = 0, stop: int = -1) -> List[str]:
        if not self._alive(key) or key not in self._sorted_sets:
            return []
        ordered = [
            member
            for member, _ in sorted(self._sorted_sets[key].items(), key=lambda item: (item[1], item[0]))
        ]
        # Redis ranges are inclusive of stop
        end = len(ordered) + stop + 1 if stop < 0 else stop + 1
        return ordered[start:end]

    async def zrem(self, key: str, *members: str) -> int:
        if not self._alive(key) or key not in self._sorted_sets:
            return 0
        removed = 0
        for member in members:
            if self._sorted_sets[key].pop(member, None) is not None:
                removed += 1
        if not self._sorted_sets[key]:
            del self._sorted_sets[key]
        return removed

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


def create_store(settings: Settings) -> KeyValueStore:
    """Create the configured key-value store.

    Args:
        settings: Application settings

    Returns:
        RedisStore when REDIS_URL is set, otherwise a process-local MemoryStore
    """
    if settings.redis_url:
        logger.info('Using Redis key-value store')
        return RedisStore.from_url(settings.redis_url)

    logger.warning('REDIS_URL not set; analytics caches are process-local')
    return MemoryStore()
