"""Data-store executors for the query optimizer."""

from typing import Any, Dict, List, Sequence

from ..monitoring.logging import get_logger

logger = get_logger(__name__)


class AsyncpgExecutor:
    """Runs parametrized reads on an asyncpg pool and returns rows as dicts."""

    def __init__(self, pool: Any):
        self.pool = pool

    async def __call__(self, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            records = await conn.fetch(sql, *params)
        return [dict(record) for record in records]

    async def close(self):
        await self.pool.close()
        logger.info("Data-store pool closed")


async def create_asyncpg_executor(dsn: str, pool_size: int = 10, **pool_kwargs) -> AsyncpgExecutor:
    """Create an asyncpg pool sized by ``connection_pool_size`` and wrap it."""
    import asyncpg

    pool = await asyncpg.create_pool(
        dsn,
        min_size=min(pool_size, pool_kwargs.pop("min_size", 1)),
        max_size=pool_size,
        command_timeout=pool_kwargs.pop("command_timeout", 60),
        **pool_kwargs
    )
    logger.info("Data-store pool created", max_size=pool_size)
    return AsyncpgExecutor(pool)
