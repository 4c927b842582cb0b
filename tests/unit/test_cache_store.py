"""Tests for the key-value store backends."""

from unittest.mock import AsyncMock, MagicMock

from analytics_server.config import Settings
from analytics_server.lib.cache import MemoryStore, RedisStore, create_store


class TestMemoryStore:

    async def test_values_are_copies(self, memory_store):
        value = {'items': [1]}
        await memory_store.set('k', value)
        value['items'].append(2)

        fetched = await memory_store.get('k')
        fetched['items'].append(3)
        assert await memory_store.get('k') == {'items': [1]}

    async def test_ttl_expiry(self, memory_store, clock):
        await memory_store.set('k', 'v', ttl_seconds=5)
        clock.advance(4)
        assert await memory_store.get('k') == 'v'
        clock.advance(1)
        assert await memory_store.get('k') is None

    async def test_set_without_ttl_clears_expiry(self, memory_store, clock):
        await memory_store.set('k', 'v', ttl_seconds=5)
        await memory_store.set('k', 'v2')
        clock.advance(10)
        assert await memory_store.get('k') == 'v2'

    async def test_delete_counts_live_keys(self, memory_store):
        await memory_store.set('a', 1)
        assert await memory_store.delete('a', 'missing') == 1

    async def test_expire(self, memory_store, clock):
        await memory_store.set('k', 1)
        assert await memory_store.expire('k', 2) is True
        assert await memory_store.expire('missing', 2) is False
        clock.advance(2)
        assert await memory_store.get('k') is None

    async def test_delete_pattern(self, memory_store):
        for key in ('top_content:params:limit=5', 'top_content:params:limit=10', 'top_content:group:g1:params:limit=5'):
            await memory_store.set(key, 1)

        assert await memory_store.delete_pattern('top_content:params:*') == 2
        assert memory_store.keys() == ['top_content:group:g1:params:limit=5']

    async def test_sorted_set(self, memory_store):
        assert await memory_store.zadd('z', {'b': 2, 'a': 1}) == 2
        assert await memory_store.zadd('z', {'c': 3, 'a': 0}) == 1
        assert await memory_store.zrange('z') == ['a', 'b', 'c']
        assert await memory_store.zrange('z', 0, 1) == ['a', 'b']
        assert await memory_store.zrem('z', 'a', 'missing') == 1
        assert await memory_store.zrange('z', 1, -1) == ['c']

    async def test_empty_sorted_set_disappears(self, memory_store):
        await memory_store.zadd('z', {'a': 1})
        await memory_store.zrem('z', 'a')
        assert memory_store.keys() == []
        assert await memory_store.zrange('z') == []


class TestRedisStore:
    """RedisStore against a mocked redis.asyncio client."""

    def _client(self):
        client = MagicMock()
        client.get = AsyncMock(return_value='{"a": 1}')
        client.set = AsyncMock()
        client.setex = AsyncMock()
        client.delete = AsyncMock(return_value=1)
        client.zrange = AsyncMock(return_value=['x'])
        client.aclose = AsyncMock()
        return client

    async def test_get_decodes_json(self):
        store = RedisStore(self._client())
        assert await store.get('k') == {'a': 1}

    async def test_get_returns_raw_non_json(self):
        client = self._client()
        client.get.return_value = 'plain'
        assert await RedisStore(client).get('k') == 'plain'

    async def test_set_uses_setex_with_ttl(self):
        client = self._client()
        store = RedisStore(client)

        await store.set('k', {'a': 1}, ttl_seconds=30)
        await store.set('n', [1])

        client.setex.assert_awaited_once_with('k', 30, '{"a": 1}')
        client.set.assert_awaited_once_with('n', '[1]')

    async def test_delete_pattern_scans(self):
        client = self._client()

        async def scan_iter(match):
            assert match == 'p:*'
            for key in ('p:1', 'p:2'):
                yield key

        client.scan_iter = scan_iter
        assert await RedisStore(client).delete_pattern('p:*') == 2

    async def test_delete_without_keys_skips_client(self):
        client = self._client()
        assert await RedisStore(client).delete() == 0
        client.delete.assert_not_awaited()

    async def test_close(self):
        client = self._client()
        await RedisStore(client).close()
        client.aclose.assert_awaited_once()


class TestCreateStore:

    def test_memory_store_without_redis_url(self):
        assert isinstance(create_store(Settings()), MemoryStore)

    def test_redis_store_with_url(self):
        store = create_store(Settings(redis_url='redis://localhost:6379/0'))
        assert isinstance(store, RedisStore)
