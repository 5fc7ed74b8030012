"""
tiercache - Multi-Tier Caching for Read-Heavy Async Services

A process-local LRU memory tier, a durable tier with retry and health
monitoring, and a query-result tier with batching and slow-query detection,
composed behind a single cascading get/set/invalidate API.
"""

__version__ = "1.0.0"

from .cache.memory import MemoryCache, CacheEntry, CacheStats
from .cache.durable import DurableCache, CacheHealthMetrics
from .cache.stores import PersistentStore, InMemoryPersistentStore, RedisPersistentStore
from .cache.multi_tier import MultiTierCache, CacheOptions, create_multi_tier_cache
from .core.config import (
    CacheSettings,
    DurableCacheConfig,
    MemoryCacheConfig,
    MultiTierCacheConfig,
    QueryOptimizerConfig,
)
from .core.errors import (
    BatchQueryError,
    CacheError,
    ConfigurationError,
    QueryBuildError,
    QueryExecutionError,
    StoreError,
)
from .core.keys import CacheKeyGenerators, CacheTags, filter_key
from .performance.query_optimizer import QueryOptimizer
from .monitoring.logging import setup_logging, get_logger

__all__ = [
    "MemoryCache",
    "CacheEntry",
    "CacheStats",
    "DurableCache",
    "CacheHealthMetrics",
    "PersistentStore",
    "InMemoryPersistentStore",
    "RedisPersistentStore",
    "MultiTierCache",
    "CacheOptions",
    "create_multi_tier_cache",
    "CacheSettings",
    "DurableCacheConfig",
    "MemoryCacheConfig",
    "MultiTierCacheConfig",
    "QueryOptimizerConfig",
    "BatchQueryError",
    "CacheError",
    "ConfigurationError",
    "QueryBuildError",
    "QueryExecutionError",
    "StoreError",
    "CacheKeyGenerators",
    "CacheTags",
    "filter_key",
    "QueryOptimizer",
    "setup_logging",
    "get_logger",
]
