"""Multi-tier cache: memory, durable and query-result tiers behind one API."""

import asyncio
import re
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..core.config import CacheSettings, MultiTierCacheConfig
from ..core.keys import CacheTags, filter_key
from ..monitoring.logging import get_logger, performance_logger, setup_logging
from ..monitoring.metrics import CacheMetrics
from ..performance.query_builder import (
    CommunityFilters,
    InsightPagination,
    PropertyFilters,
    filters_to_dict,
    parse_filters,
)
from ..performance.query_optimizer import QueryExecutor, QueryOptimizer
from ..utils.scheduling import PeriodicTask
from .durable import DurableCache
from .memory import MemoryCache
from .stores import InMemoryPersistentStore, PersistentStore, RedisPersistentStore

logger = get_logger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


@dataclass
class CacheOptions:
    """Per-call options; TTLs are seconds, ``None`` means the tier default."""
    memory_ttl: Optional[float] = None
    disk_ttl: Optional[float] = None
    tags: List[str] = field(default_factory=list)
    priority: int = 0
    fallback: Optional[Fetcher] = None


@dataclass
class OverallStats:
    total_requests: int = 0
    cache_hits: int = 0
    total_response_time: float = 0.0
    errors: int = 0


class MultiTierCache:
    """Cascading lookup over memory, durable store and direct fetch.

    Concurrent ``get`` calls for the same missing key share a single load:
    the first caller drives the durable/fetch path and the others await its
    outcome.
    """

    def __init__(
        self,
        config: MultiTierCacheConfig = None,
        executor: Optional[QueryExecutor] = None,
        store: Optional[PersistentStore] = None,
        memory_cache: Optional[MemoryCache] = None,
        durable_cache: Optional[DurableCache] = None,
        query_optimizer: Optional[QueryOptimizer] = None,
        metrics: Optional[CacheMetrics] = None
    ):
        self.config = config or MultiTierCacheConfig()
        self.metrics = metrics or CacheMetrics()
        self.memory_cache = memory_cache if memory_cache is not None else MemoryCache(self.config.memory)
        self.durable_cache = durable_cache if durable_cache is not None else DurableCache(
            self.config.disk, store=store, metrics=self.metrics
        )
        self.query_optimizer = query_optimizer if query_optimizer is not None else QueryOptimizer(
            self.config.query, executor=executor, metrics=self.metrics
        )
        self._overall = OverallStats()
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._stats_task: Optional[PeriodicTask] = None
        self._monitoring_enabled = False

    async def get(self, key: str, fetcher: Fetcher, options: Optional[CacheOptions] = None) -> Any:
        """Return the value for ``key`` from the fastest tier that has it."""
        options = options or CacheOptions()
        start_time = time.perf_counter()
        self._overall.total_requests += 1

        try:
            value = self.memory_cache.get(key)
            if value is not None:
                self._record_hit(start_time, "memory")
                return value

            pending = self._in_flight.get(key)
            while pending is not None:
                try:
                    value = await asyncio.shield(pending)
                except asyncio.CancelledError:
                    if not pending.cancelled():
                        raise
                    # the leading caller was cancelled; take over the load
                    pending = self._in_flight.get(key)
                    continue
                self._record_hit(start_time, "shared")
                return value

            value, served_by = await self._load_single_flight(key, fetcher, options)
            if served_by == "durable":
                self._record_hit(start_time, "durable")
            else:
                self._record_miss(start_time, served_by)
            return value
        except Exception:
            self._overall.errors += 1
            self.metrics.increment_counter("errors_total", {"operation": "get"})
            raise

    async def _load_single_flight(
        self, key: str, fetcher: Fetcher, options: CacheOptions
    ) -> Tuple[Any, str]:
        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            value, served_by = await self._load(key, fetcher, options)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # consumed here so an unawaited failure is not reported by asyncio
            future.exception()
            raise
        else:
            future.set_result(value)
            return value, served_by
        finally:
            if self._in_flight.get(key) is future:
                del self._in_flight[key]

    async def _load(self, key: str, fetcher: Fetcher, options: CacheOptions) -> Tuple[Any, str]:
        try:
            value = await self.durable_cache.get(
                key,
                fetcher,
                tags=options.tags,
                ttl=options.disk_ttl,
                fallback=options.fallback,
            )
        except Exception as durable_error:
            if not self.config.enable_fallback:
                raise

            logger.warning(
                "Durable cache failed, falling back to direct fetch",
                key=key,
                error=str(durable_error)
            )
            value = await fetcher()
            self._populate_memory(key, value, options)
            return value, "direct"

        self._populate_memory(key, value, options)
        return value, "durable"

    def _populate_memory(self, key: str, value: Any, options: CacheOptions):
        try:
            self.memory_cache.set(key, value, options.memory_ttl, options.tags)
        except Exception as e:
            logger.warning("Failed to store in memory cache", key=key, error=str(e))
            self.metrics.increment_counter("errors_total", {"operation": "memory_set"})

    async def set(self, key: str, value: Any, options: Optional[CacheOptions] = None):
        """Write ``value`` to the memory tier and write it through the durable tier.

        The durable key is revalidated first so the write-through persists
        ``value`` rather than returning whatever was stored before. Failures
        are logged, never raised.
        """
        options = options or CacheOptions()
        self._populate_memory(key, value, options)

        async def known_value():
            return value

        try:
            await self.durable_cache.invalidate_key(key)
            await self.durable_cache.get(key, known_value, tags=options.tags, ttl=options.disk_ttl)
        except Exception as e:
            logger.warning("Failed to set in durable cache", key=key, error=str(e))
            self.metrics.increment_counter("errors_total", {"operation": "durable_set"})

    async def delete(self, key: str):
        self.memory_cache.delete(key)
        try:
            await self.durable_cache.invalidate_key(key)
        except Exception as e:
            logger.warning("Failed to delete from durable cache", key=key, error=str(e))
            self.metrics.increment_counter("errors_total", {"operation": "durable_delete"})

    async def invalidate_by_tags(self, tags: Sequence[str]):
        """Invalidate ``tags`` in every tier; the query cache is matched per tag."""
        tags = list(tags)
        self.memory_cache.invalidate_by_tags(tags)

        try:
            await self.durable_cache.invalidate_by_tags(tags)
        except Exception as e:
            logger.warning("Failed to invalidate durable cache by tags", tags=tags, error=str(e))
            self.metrics.increment_counter("errors_total", {"operation": "durable_invalidate"})

        for tag in tags:
            self.query_optimizer.invalidate_cache(re.escape(tag))

    async def clear(self):
        """Clear the memory tier and query cache and reset overall statistics.

        The durable tier has no bulk clear; invalidate it by tag instead.
        """
        self.memory_cache.clear()
        self.query_optimizer.clear_cache()
        self.query_optimizer.clear_metrics()
        self._overall = OverallStats()

    async def warm_cache(self, entries: Sequence[Mapping[str, Any]]):
        """Warm from ``{"key", "fetcher", "options"}`` items; failures are only logged."""
        async def warm_one(item: Mapping[str, Any]):
            try:
                await self.get(item["key"], item["fetcher"], item.get("options"))
            except Exception as e:
                logger.warning("Failed to warm cache", key=item.get("key"), error=str(e))

        await asyncio.gather(*(warm_one(item) for item in entries), return_exceptions=True)

    async def batch_get(self, operations: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
        """Concurrent ``get`` for each ``{"key", "fetcher", "options"}``; any failure propagates."""
        results: Dict[str, Any] = {}

        async def run(operation: Mapping[str, Any]):
            key = operation["key"]
            try:
                results[key] = await self.get(key, operation["fetcher"], operation.get("options"))
            except Exception as e:
                logger.error("Batch get failed", key=key, error=str(e))
                raise

        await asyncio.gather(*(run(operation) for operation in operations))
        return results

    # Entity reads

    async def get_properties(
        self, filters: Any = None, options: Optional[CacheOptions] = None
    ) -> List[Dict[str, Any]]:
        parsed = parse_filters(PropertyFilters, "properties", filters)
        key = filter_key(CacheTags.PROPERTIES, filters_to_dict(parsed))

        async def fetch():
            return await self.query_optimizer.optimize_property_queries(parsed)

        return await self.get(key, fetch, self._with_namespace_tag(options, CacheTags.PROPERTIES))

    async def get_communities(
        self, params: Any = None, options: Optional[CacheOptions] = None
    ) -> List[Dict[str, Any]]:
        parsed = parse_filters(CommunityFilters, "communities", params)
        key = filter_key(CacheTags.COMMUNITIES, filters_to_dict(parsed))

        async def fetch():
            return await self.query_optimizer.optimize_community_queries(parsed)

        return await self.get(key, fetch, self._with_namespace_tag(options, CacheTags.COMMUNITIES))

    async def get_insights(self, pagination: Any, options: Optional[CacheOptions] = None) -> Dict[str, Any]:
        parsed = parse_filters(InsightPagination, "insights", pagination)
        key = filter_key(CacheTags.INSIGHTS, filters_to_dict(parsed))

        async def fetch():
            return await self.query_optimizer.optimize_insight_queries(parsed)

        return await self.get(key, fetch, self._with_namespace_tag(options, CacheTags.INSIGHTS))

    @staticmethod
    def _with_namespace_tag(options: Optional[CacheOptions], tag: str) -> CacheOptions:
        options = options or CacheOptions()
        if tag in options.tags:
            return options
        return replace(options, tags=[*options.tags, tag])

    # Statistics and monitoring

    def get_stats(self) -> Dict[str, Any]:
        memory_stats = self.memory_cache.get_stats()
        disk_stats = self.durable_cache.get_health_metrics()
        query_stats = self.query_optimizer.get_cache_stats()

        overall = self._overall
        total_requests = overall.total_requests
        cache_hit_rate = overall.cache_hits / total_requests if total_requests > 0 else 0.0
        avg_response_time = overall.total_response_time / total_requests if total_requests > 0 else 0.0
        error_rate = overall.errors / total_requests if total_requests > 0 else 0.0

        self.metrics.set_gauge("memory_entries", memory_stats.total_entries)
        return {
            "memory": memory_stats.to_dict(),
            "disk": disk_stats.to_dict(),
            "query": query_stats,
            "overall": {
                "total_requests": total_requests,
                "cache_hit_rate": round(cache_hit_rate, 4),
                "avg_response_time": avg_response_time,
                "error_rate": round(error_rate, 4),
            },
        }

    def export_metrics(self) -> str:
        """Prometheus text exposition for this cache."""
        return self.metrics.get_prometheus_metrics()

    def setup_health_monitoring(self):
        """Log durable health alerts and slow queries; optionally log stats every minute."""
        if self._monitoring_enabled:
            return
        self._monitoring_enabled = True

        def log_health_alert(metrics):
            logger.warning(
                "Durable cache health alert",
                failure_rate=f"{metrics.failure_rate * 100:.2f}%",
                total_requests=metrics.total_requests,
                failed_requests=metrics.failed_requests,
                avg_response_time=metrics.avg_response_time,
                is_healthy=metrics.is_healthy,
            )

        def log_slow_query(alert):
            logger.warning(
                "Slow query detected",
                query_id=alert.query_id,
                execution_time=alert.execution_time,
                threshold=alert.threshold,
            )

        self.durable_cache.on_health_alert(log_health_alert)
        self.query_optimizer.on_slow_query(log_slow_query)

        if self.config.enable_metrics:
            self._stats_task = PeriodicTask(
                self.config.stats_log_interval, self._log_stats, name="multi-tier-cache-stats"
            ).start()

    def _log_stats(self):
        stats = self.get_stats()
        performance_logger.log_tier_stats(
            "multi_tier_cache",
            {
                "overall": stats["overall"],
                "memory": {
                    "entries": stats["memory"]["total_entries"],
                    "hit_rate": stats["memory"]["hit_rate"],
                    "memory_usage_kb": round(stats["memory"]["memory_usage"] / 1024, 2),
                },
                "disk": {
                    "is_healthy": stats["disk"]["is_healthy"],
                    "failure_rate": stats["disk"]["failure_rate"],
                },
                "query": {
                    "cache_size": stats["query"]["size"],
                    "hit_rate": stats["query"]["hit_rate"],
                },
            },
        )

    def destroy(self):
        """Stop every background timer and release the memory tier."""
        if self._stats_task is not None:
            self._stats_task.stop()
            self._stats_task = None
        self.memory_cache.destroy()
        self.query_optimizer.close()

    def _record_hit(self, start_time: float, tier: str):
        duration = time.perf_counter() - start_time
        self._overall.cache_hits += 1
        self._overall.total_response_time += duration
        self.metrics.increment_counter("requests_total", {"tier": tier, "result": "hit"})
        self.metrics.record_histogram("get_duration_seconds", duration)

    def _record_miss(self, start_time: float, tier: str):
        duration = time.perf_counter() - start_time
        self._overall.total_response_time += duration
        self.metrics.increment_counter("requests_total", {"tier": tier, "result": "miss"})
        self.metrics.record_histogram("get_duration_seconds", duration)


def create_multi_tier_cache(
    settings: Optional[CacheSettings] = None,
    *,
    executor: Optional[QueryExecutor] = None,
    store: Optional[PersistentStore] = None,
    configure_logging: bool = False,
    enable_monitoring: bool = True
) -> MultiTierCache:
    """Build the application's cache once at startup and pass it by reference."""
    settings = settings or CacheSettings()
    if configure_logging:
        setup_logging(settings.log_level, settings.environment)

    if store is None:
        store = (
            RedisPersistentStore(settings.redis_url)
            if settings.redis_url
            else InMemoryPersistentStore()
        )

    cache = MultiTierCache(settings.to_multi_tier_config(), executor=executor, store=store)
    if enable_monitoring:
        cache.setup_health_monitoring()
    logger.info(
        "Multi-tier cache created",
        durable_store=type(store).__name__,
        fallback=settings.enable_fallback,
    )
    return cache
