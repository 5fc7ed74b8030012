"""Query execution with result caching, performance metrics and batching."""

import asyncio
import json
import re
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Set, Union
)

from ..core.config import QueryOptimizerConfig
from ..core.errors import BatchQueryError, QueryExecutionError
from ..core.keys import filter_key
from ..monitoring.logging import get_logger, performance_logger
from ..monitoring.metrics import CacheMetrics
from ..utils.scheduling import PeriodicTask
from .query_builder import (
    CommunityFilters,
    InsightPagination,
    ParametrizedQuery,
    PropertyFilters,
    build_community_query,
    build_insight_queries,
    build_property_query,
    filters_to_dict,
    parse_filters,
)

logger = get_logger(__name__)

QueryExecutor = Callable[[str, Sequence[Any]], Awaitable[Sequence[Any]]]
SlowQueryCallback = Callable[["SlowQueryAlert"], None]


@dataclass
class QueryPerformanceMetrics:
    """One recorded query execution (or query-cache hit)."""
    query_id: str
    execution_time: float
    rows_affected: int
    cache_hit: bool
    query_type: str = "SELECT"
    table_name: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query_id": self.query_id,
            "execution_time": self.execution_time,
            "rows_affected": self.rows_affected,
            "cache_hit": self.cache_hit,
            "query_type": self.query_type,
            "table_name": self.table_name,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class SlowQueryAlert:
    query_id: str
    execution_time: float
    threshold: float
    query: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class QueryCacheEntry:
    data: Any
    timestamp: float
    expires_at: float
    hit_count: int = 0


@dataclass
class BatchedQuery:
    """A deferred query waiting in the shared batch queue."""
    id: str
    query: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    priority: int = 0
    timestamp: float = field(default_factory=time.time)


class QueryOptimizer:
    """Builds and runs entity reads against an injected executor.

    Results are kept in a short-lived cache keyed by ``<entity>:<filters JSON>``,
    separate from the memory and durable tiers. Every execution (and every
    query-cache hit) is appended to a bounded metrics buffer.
    """

    def __init__(
        self,
        config: QueryOptimizerConfig = None,
        executor: Optional[QueryExecutor] = None,
        metrics: Optional[CacheMetrics] = None,
        clock: Callable[[], float] = time.time
    ):
        self.config = config or QueryOptimizerConfig()
        self.executor = executor
        self.metrics = metrics
        self._clock = clock

        self._query_cache: Dict[str, QueryCacheEntry] = {}
        self._performance_metrics: Deque[QueryPerformanceMetrics] = deque(
            maxlen=self.config.metrics_capacity
        )
        self._metrics_lock = threading.Lock()
        self._slow_query_callbacks: List[SlowQueryCallback] = []
        self._query_id_counter = 0

        self._batch_queue: List[BatchedQuery] = []
        self._batch_timer: Optional[asyncio.TimerHandle] = None
        self._flush_tasks: Set[asyncio.Task] = set()

        self._prune_task: Optional[PeriodicTask] = None
        if self.config.enable_performance_monitoring:
            self._prune_task = PeriodicTask(
                self.config.metrics_prune_interval, self.prune_metrics, name="query-metrics-prune"
            ).start()

    # Entity reads

    async def optimize_property_queries(
        self, filters: Union[PropertyFilters, Mapping[str, Any], None] = None
    ) -> List[Dict[str, Any]]:
        parsed = parse_filters(PropertyFilters, "properties", filters)
        query = build_property_query(parsed)
        return await self._cached_read(
            "property-search", filter_key("properties", filters_to_dict(parsed)), query
        )

    async def optimize_community_queries(
        self, params: Union[CommunityFilters, Mapping[str, Any], None] = None
    ) -> List[Dict[str, Any]]:
        parsed = parse_filters(CommunityFilters, "communities", params)
        query = build_community_query(parsed)
        return await self._cached_read(
            "community-search", filter_key("communities", filters_to_dict(parsed)), query
        )

    async def optimize_insight_queries(
        self, pagination: Union[InsightPagination, Mapping[str, Any]]
    ) -> Dict[str, Any]:
        """Paginated insights plus the total count, as ``{"data", "total"}``."""
        parsed = parse_filters(InsightPagination, "insights", pagination)
        query_id = self._generate_query_id("insight-search")
        cache_key = filter_key("insights", filters_to_dict(parsed))

        cached = self._get_from_cache(cache_key)
        if cached is not None:
            self._record_metrics(query_id, 0.0, len(cached["data"]), True, "SELECT", "insights")
            return cached

        data_query, count_query = build_insight_queries(parsed)
        data, count_rows = await asyncio.gather(
            self._execute_with_monitoring(f"{query_id}-data", data_query),
            self._execute_with_monitoring(f"{query_id}-count", count_query),
        )
        total = self._read_count(count_rows)
        result = {"data": data, "total": total}
        self._set_cache(cache_key, result)
        return result

    @staticmethod
    def _read_count(count_rows: List[Any]) -> int:
        if not count_rows:
            return 0
        row = count_rows[0]
        if isinstance(row, Mapping):
            return int(row.get("count", 0))
        # positional rows (tuples, records without keys)
        return int(row[0]) if len(row) else 0

    async def _cached_read(self, prefix: str, cache_key: str, query: ParametrizedQuery) -> List[Dict[str, Any]]:
        query_id = self._generate_query_id(prefix)

        cached = self._get_from_cache(cache_key)
        if cached is not None:
            self._record_metrics(query_id, 0.0, len(cached), True, query.query_type, query.table)
            return cached

        result = await self._execute_with_monitoring(query_id, query)
        self._set_cache(cache_key, result)
        return result

    async def _execute_with_monitoring(self, query_id: str, query: ParametrizedQuery) -> List[Any]:
        if self.executor is None:
            raise QueryExecutionError(query_id, "no data-store executor configured")

        start_time = time.perf_counter()
        try:
            raw = await self.executor(query.sql, query.params)
        except Exception:
            execution_time = time.perf_counter() - start_time
            self._record_metrics(query_id, execution_time, 0, False, query.query_type, query.table)
            performance_logger.log_execution_time(
                "query", execution_time, False, query_id=query_id, table=query.table
            )
            raise

        execution_time = time.perf_counter() - start_time
        if isinstance(raw, (str, bytes)) or not isinstance(raw, Sequence):
            raise QueryExecutionError(query_id, f"executor returned {type(raw).__name__}, expected rows")
        rows = [dict(row) if isinstance(row, Mapping) or hasattr(row, "keys") else row for row in raw]

        self._record_metrics(query_id, execution_time, len(rows), False, query.query_type, query.table)
        performance_logger.log_execution_time(
            "query", execution_time, True, query_id=query_id, table=query.table, rows=len(rows)
        )
        if execution_time > self.config.slow_query_threshold:
            self._alert_slow_query(query_id, execution_time, query.sql)
        return rows

    # Batching

    async def batch_queries(self, queries: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
        """Run ``{"id", "query", "priority"}`` items by descending priority.

        Items run concurrently within a batch of ``batch_size`` and batches run
        one after another. The first failure aborts the whole call.
        """
        results: Dict[str, Any] = {}
        ordered = sorted(queries, key=lambda q: q.get("priority") or 0, reverse=True)
        batch_size = self.config.batch_size

        async def run(item: Mapping[str, Any]):
            try:
                results[item["id"]] = await item["query"]()
            except Exception as e:
                logger.error("Batched query failed", query_id=item["id"], error=str(e))
                raise

        for start in range(0, len(ordered), batch_size):
            batch = ordered[start:start + batch_size]
            await asyncio.gather(*(run(item) for item in batch))
        return results

    def add_to_batch(self, query: Callable[[], Awaitable[Any]], priority: int = 0) -> asyncio.Future:
        """Queue ``query`` for deferred execution and return a future for its result.

        The queue is flushed when it reaches ``batch_size`` or after
        ``batch_timeout`` seconds. Each item settles its own future, so a
        failing query never affects the others.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise BatchQueryError("add_to_batch requires a running event loop") from e

        future = loop.create_future()
        self._batch_queue.append(BatchedQuery(
            id=self._generate_query_id("batched"),
            query=query,
            future=future,
            priority=priority,
        ))

        if self._batch_timer is None:
            self._batch_timer = loop.call_later(self.config.batch_timeout, self._schedule_flush)
        if len(self._batch_queue) >= self.config.batch_size:
            self._schedule_flush()
        return future

    def _schedule_flush(self):
        task = asyncio.get_running_loop().create_task(self._process_batch_queue())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _process_batch_queue(self):
        if self._batch_timer is not None:
            self._batch_timer.cancel()
            self._batch_timer = None

        if not self._batch_queue:
            return

        batch = self._batch_queue[:self.config.batch_size]
        del self._batch_queue[:self.config.batch_size]
        batch.sort(key=lambda item: item.priority, reverse=True)

        async def settle(item: BatchedQuery):
            try:
                result = await item.query()
            except Exception as e:
                if not item.future.done():
                    item.future.set_exception(e)
            else:
                if not item.future.done():
                    item.future.set_result(result)

        await asyncio.gather(*(settle(item) for item in batch))

        if self._batch_queue and self._batch_timer is None:
            loop = asyncio.get_running_loop()
            self._batch_timer = loop.call_later(self.config.batch_timeout, self._schedule_flush)

    # Metrics and alerts

    def on_slow_query(self, callback: SlowQueryCallback):
        self._slow_query_callbacks.append(callback)

    def get_performance_metrics(self) -> List[QueryPerformanceMetrics]:
        with self._metrics_lock:
            return list(self._performance_metrics)

    def clear_metrics(self):
        with self._metrics_lock:
            self._performance_metrics.clear()

    def prune_metrics(self, max_age: Optional[float] = None) -> int:
        """Drop metrics older than ``max_age`` seconds (default: retention window)."""
        max_age = self.config.metrics_retention if max_age is None else max_age
        cutoff = datetime.fromtimestamp(self._clock() - max_age, tz=timezone.utc)
        with self._metrics_lock:
            kept = [m for m in self._performance_metrics if m.timestamp > cutoff]
            removed = len(self._performance_metrics) - len(kept)
            self._performance_metrics.clear()
            self._performance_metrics.extend(kept)
        return removed

    def get_query_analysis(self) -> Dict[str, Any]:
        """Summarise retained metrics per table."""
        by_table = defaultdict(lambda: {"count": 0, "total_time": 0.0, "cache_hits": 0, "slow": 0})
        for metric in self.get_performance_metrics():
            stats = by_table[metric.table_name or "unknown"]
            stats["count"] += 1
            stats["total_time"] += metric.execution_time
            stats["cache_hits"] += 1 if metric.cache_hit else 0
            if metric.execution_time > self.config.slow_query_threshold:
                stats["slow"] += 1

        return {
            table: {
                "count": stats["count"],
                "avg_time": stats["total_time"] / stats["count"],
                "cache_hit_rate": stats["cache_hits"] / stats["count"],
                "slow_queries": stats["slow"],
            }
            for table, stats in by_table.items()
        }

    def _record_metrics(
        self,
        query_id: str,
        execution_time: float,
        rows_affected: int,
        cache_hit: bool,
        query_type: str,
        table_name: Optional[str] = None
    ):
        metric = QueryPerformanceMetrics(
            query_id=query_id,
            execution_time=execution_time,
            rows_affected=rows_affected,
            cache_hit=cache_hit,
            query_type=query_type,
            table_name=table_name,
            timestamp=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
        )
        with self._metrics_lock:
            self._performance_metrics.append(metric)
        if self.metrics is not None and not cache_hit:
            self.metrics.record_histogram(
                "query_duration_seconds", execution_time, {"table": table_name or "unknown"}
            )

    def _alert_slow_query(self, query_id: str, execution_time: float, query: str):
        alert = SlowQueryAlert(
            query_id=query_id,
            execution_time=execution_time,
            threshold=self.config.slow_query_threshold,
            query=query,
        )
        if self.metrics is not None:
            self.metrics.increment_counter("slow_queries_total")

        for callback in list(self._slow_query_callbacks):
            try:
                callback(alert)
            except Exception as e:
                logger.error("Slow query callback failed", query_id=query_id, error=str(e))

    # Query-result cache

    def _get_from_cache(self, key: str) -> Optional[Any]:
        if not self.config.enable_query_cache:
            return None
        entry = self._query_cache.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._query_cache[key]
            return None
        entry.hit_count += 1
        return entry.data

    def _set_cache(self, key: str, data: Any):
        if not self.config.enable_query_cache:
            return
        now = self._clock()
        self._query_cache[key] = QueryCacheEntry(
            data=data, timestamp=now, expires_at=now + self.config.cache_timeout
        )

    def invalidate_cache(self, pattern: str) -> int:
        """Remove every cached result whose key matches the regex ``pattern``."""
        regex = re.compile(pattern)
        doomed = [key for key in list(self._query_cache) if regex.search(key)]
        for key in doomed:
            del self._query_cache[key]
        return len(doomed)

    def clear_cache(self):
        self._query_cache.clear()

    def get_cache_stats(self) -> Dict[str, Any]:
        total_hits = 0
        memory_usage = 0
        for entry in list(self._query_cache.values()):
            total_hits += entry.hit_count
            memory_usage += len(json.dumps(entry.data, default=str)) * 2

        recorded = self.get_performance_metrics()
        cache_hits = sum(1 for m in recorded if m.cache_hit)
        hit_rate = cache_hits / len(recorded) if recorded else 0.0

        return {
            "size": len(self._query_cache),
            "hit_rate": round(hit_rate, 4),
            "total_hits": total_hits,
            "memory_usage": memory_usage,
        }

    def _generate_query_id(self, prefix: str) -> str:
        self._query_id_counter += 1
        return f"{prefix}-{self._query_id_counter}-{int(self._clock() * 1000)}"

    def close(self):
        """Stop background timers and cancel any still-queued batch items."""
        if self._batch_timer is not None:
            self._batch_timer.cancel()
            self._batch_timer = None
        pending, self._batch_queue = self._batch_queue, []
        for item in pending:
            if not item.future.done():
                item.future.cancel()
        if pending:
            logger.warning("Cancelled queued batch queries on close", count=len(pending))
        if self._prune_task is not None:
            self._prune_task.stop()
            self._prune_task = None
