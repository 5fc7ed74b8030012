"""Tests for the asyncpg-backed data-store executor."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from tiercache.performance.executors import AsyncpgExecutor, create_asyncpg_executor


def make_pool(records):
    conn = MagicMock()
    conn.fetch = AsyncMock(return_value=records)

    acquire_cm = MagicMock()
    acquire_cm.__aenter__ = AsyncMock(return_value=conn)
    acquire_cm.__aexit__ = AsyncMock(return_value=False)

    pool = MagicMock()
    pool.acquire = MagicMock(return_value=acquire_cm)
    pool.close = AsyncMock()
    return pool, conn


class TestAsyncpgExecutor:

    @pytest.mark.asyncio
    async def test_fetch_expands_params_and_returns_dicts(self):
        pool, conn = make_pool([{"id": 1}, {"id": 2}])
        executor = AsyncpgExecutor(pool)

        rows = await executor("SELECT * FROM properties WHERE bedrooms = $1", (3,))

        conn.fetch.assert_awaited_once_with("SELECT * FROM properties WHERE bedrooms = $1", 3)
        assert rows == [{"id": 1}, {"id": 2}]

    @pytest.mark.asyncio
    async def test_close(self):
        pool, _ = make_pool([])
        await AsyncpgExecutor(pool).close()
        pool.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_create_uses_pool_size(self):
        pytest.importorskip("asyncpg")
        pool, _ = make_pool([])

        with patch("asyncpg.create_pool", AsyncMock(return_value=pool)) as create_pool:
            executor = await create_asyncpg_executor("postgresql://localhost/test", pool_size=4)

        assert executor.pool is pool
        kwargs = create_pool.await_args.kwargs
        assert kwargs["max_size"] == 4
        assert kwargs["min_size"] == 1
