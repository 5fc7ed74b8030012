"""Tests for the persistence primitives behind the durable tier."""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock, Mock, call

from tiercache.cache.stores import RedisPersistentStore
from tiercache.core.errors import StoreError


class TestInMemoryPersistentStore:

    @pytest.mark.asyncio
    async def test_cached_returns_fresh_value(self, store):
        fetcher = AsyncMock(return_value="v")
        assert await store.cached("k", fetcher, tags=["t"], ttl=60) == "v"
        assert await store.cached("k", fetcher, tags=["t"], ttl=60) == "v"
        assert fetcher.await_count == 1

    @pytest.mark.asyncio
    async def test_revalidate_tag_removes_members(self, store):
        await store.cached("a", AsyncMock(return_value=1), tags=["x"], ttl=60)
        await store.cached("b", AsyncMock(return_value=2), tags=["y"], ttl=60)

        await store.revalidate_tag("x")
        await store.revalidate_tag("x")
        await store.revalidate_tag("never-seen")

        assert "a" not in store
        assert "b" in store
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_fetcher_error_leaves_store_untouched(self, store):
        with pytest.raises(RuntimeError):
            await store.cached("k", AsyncMock(side_effect=RuntimeError("x")), tags=[], ttl=60)
        assert len(store) == 0


def make_redis_client(cached_value=None, members=None):
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])

    pipeline_cm = MagicMock()
    pipeline_cm.__aenter__ = AsyncMock(return_value=pipe)
    pipeline_cm.__aexit__ = AsyncMock(return_value=False)

    client = Mock()
    client.get = AsyncMock(return_value=cached_value)
    client.pipeline = Mock(return_value=pipeline_cm)
    client.smembers = AsyncMock(return_value=members or set())
    client.delete = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    return client, pipe


class TestRedisPersistentStore:

    def test_requires_url_or_client(self):
        with pytest.raises(StoreError):
            RedisPersistentStore()

    @pytest.mark.asyncio
    async def test_hit_decodes_json(self):
        client, _ = make_redis_client(cached_value=json.dumps({"id": "42"}).encode())
        store = RedisPersistentStore(client=client)
        fetcher = AsyncMock()

        assert await store.cached("k", fetcher, tags=["t"], ttl=60) == {"id": "42"}
        fetcher.assert_not_awaited()
        client.get.assert_awaited_once_with("tiercache:value:k")

    @pytest.mark.asyncio
    async def test_miss_persists_value_and_tags(self):
        client, pipe = make_redis_client()
        store = RedisPersistentStore(client=client, namespace="app")

        result = await store.cached("k", AsyncMock(return_value=[1, 2]), tags=["t", "k"], ttl=30)

        assert result == [1, 2]
        pipe.setex.assert_called_once_with("app:value:k", 30, "[1, 2]")
        pipe.sadd.assert_has_calls([
            call("app:tag:t", "app:value:k"),
            call("app:tag:k", "app:value:k"),
        ])
        pipe.expire.assert_any_call("app:tag:t", 30, nx=True)
        pipe.expire.assert_any_call("app:tag:t", 30, gt=True)
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sub_second_ttl_rounds_up_to_one(self):
        client, pipe = make_redis_client()
        store = RedisPersistentStore(client=client)

        await store.cached("k", AsyncMock(return_value=1), tags=[], ttl=0.2)
        pipe.setex.assert_called_once_with("tiercache:value:k", 1, "1")

    @pytest.mark.asyncio
    async def test_non_json_value_raises_store_error(self):
        client, pipe = make_redis_client()
        store = RedisPersistentStore(client=client)

        with pytest.raises(StoreError):
            await store.cached("k", AsyncMock(return_value=object()), tags=[], ttl=30)
        pipe.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_revalidate_tag_deletes_members_and_set(self):
        client, _ = make_redis_client(members={b"tiercache:value:a", b"tiercache:value:b"})
        store = RedisPersistentStore(client=client)

        await store.revalidate_tag("t")

        deleted = [c.args for c in client.delete.await_args_list]
        assert set(deleted[0]) == {b"tiercache:value:a", b"tiercache:value:b"}
        assert deleted[1] == ("tiercache:tag:t",)

    @pytest.mark.asyncio
    async def test_revalidate_unknown_tag_only_deletes_set(self):
        client, _ = make_redis_client()
        store = RedisPersistentStore(client=client)

        await store.revalidate_tag("t")
        client.delete.assert_awaited_once_with("tiercache:tag:t")

    @pytest.mark.asyncio
    async def test_initialize_and_close(self):
        client, _ = make_redis_client()
        store = RedisPersistentStore(client=client)

        await store.initialize()
        await store.close()

        client.ping.assert_awaited_once()
        client.aclose.assert_awaited_once()
