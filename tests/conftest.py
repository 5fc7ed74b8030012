"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock
from typing import Any, Dict, List

from tiercache.cache.durable import DurableCache
from tiercache.cache.memory import MemoryCache
from tiercache.cache.multi_tier import MultiTierCache
from tiercache.cache.stores import InMemoryPersistentStore
from tiercache.core.config import (
    DurableCacheConfig,
    MemoryCacheConfig,
    MultiTierCacheConfig,
    QueryOptimizerConfig,
)
from tiercache.monitoring.metrics import CacheMetrics
from tiercache.performance.query_optimizer import QueryOptimizer


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FlakyFetcher:
    """Async fetcher that fails ``failures`` times before returning ``value``."""

    def __init__(self, failures: int, value: Any = "fresh"):
        self.failures = failures
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f"transient failure {self.calls}")
        return self.value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_config():
    """Memory tier without a background sweep thread."""
    return MemoryCacheConfig(max_size=100, default_ttl=300.0, cleanup_interval=0)


@pytest.fixture
def durable_config():
    return DurableCacheConfig(default_ttl=300.0, max_retries=3, retry_delay=0.01, alert_threshold=0.5)


@pytest.fixture
def query_config():
    """Query tier without the hourly prune thread."""
    return QueryOptimizerConfig(
        slow_query_threshold=1.0,
        batch_size=10,
        batch_timeout=0.01,
        enable_performance_monitoring=False,
    )


@pytest.fixture
def no_sleep():
    return AsyncMock(return_value=None)


@pytest.fixture
def metrics():
    return CacheMetrics()


@pytest.fixture
def sample_rows() -> List[Dict[str, Any]]:
    return [
        {"id": "p1", "title": "Marina Penthouse", "bedrooms": 3},
        {"id": "p2", "title": "Palm Villa", "bedrooms": 5},
    ]


@pytest.fixture
def mock_executor(sample_rows):
    """Data-store executor returning ``sample_rows`` for any query."""
    return AsyncMock(return_value=sample_rows)


@pytest.fixture
def memory_cache(memory_config, clock):
    cache = MemoryCache(memory_config, clock=clock)
    yield cache
    cache.destroy()


@pytest.fixture
def store(clock):
    return InMemoryPersistentStore(clock=clock)


@pytest.fixture
def durable_cache(durable_config, store, metrics, no_sleep):
    return DurableCache(durable_config, store=store, metrics=metrics, sleep=no_sleep)


@pytest.fixture
def query_optimizer(query_config, mock_executor, metrics):
    optimizer = QueryOptimizer(query_config, executor=mock_executor, metrics=metrics)
    yield optimizer
    optimizer.close()


@pytest.fixture
def multi_tier_config(memory_config, durable_config, query_config):
    return MultiTierCacheConfig(
        memory=memory_config,
        disk=durable_config,
        query=query_config,
        enable_fallback=True,
        enable_metrics=False,
    )


@pytest.fixture
def multi_tier_cache(multi_tier_config, memory_cache, durable_cache, query_optimizer, metrics):
    cache = MultiTierCache(
        multi_tier_config,
        memory_cache=memory_cache,
        durable_cache=durable_cache,
        query_optimizer=query_optimizer,
        metrics=metrics,
    )
    yield cache
    cache.destroy()


@pytest.fixture
def flaky_fetcher():
    """Factory for :class:`FlakyFetcher` instances."""
    return FlakyFetcher
