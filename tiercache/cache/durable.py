"""Durable cache tier: a persistence primitive wrapped with retry and health tracking."""

import asyncio
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..core.config import DurableCacheConfig
from ..monitoring.logging import get_logger, performance_logger
from ..monitoring.metrics import CacheMetrics
from ..reliability.retry_handler import RetryConfig, RetryHandler
from .stores import InMemoryPersistentStore, PersistentStore

logger = get_logger(__name__)

HealthAlertCallback = Callable[["CacheHealthMetrics"], None]


@dataclass
class CacheHealthMetrics:
    """Health snapshot of the durable tier."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    failure_rate: float = 0.0
    avg_response_time: float = 0.0
    last_health_check: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_healthy: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "failure_rate": self.failure_rate,
            "avg_response_time": self.avg_response_time,
            "last_health_check": self.last_health_check.isoformat(),
            "is_healthy": self.is_healthy,
        }


class DurableCache:
    """Reads through a :class:`PersistentStore` with retries and a health monitor.

    Every entry is tagged with its own key in addition to caller tags, so
    ``invalidate_key`` is a tag revalidation.
    """

    def __init__(
        self,
        config: DurableCacheConfig = None,
        store: PersistentStore = None,
        metrics: Optional[CacheMetrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.config = config or DurableCacheConfig()
        self.store: PersistentStore = store if store is not None else InMemoryPersistentStore()
        self.metrics = metrics
        self.retry_handler = RetryHandler(
            RetryConfig(max_retries=self.config.max_retries, base_delay=self.config.retry_delay),
            sleep=sleep,
            on_retry=self._on_retry
        )
        self._health = CacheHealthMetrics()
        self._response_time_sum = 0.0
        self._alert_callbacks: List[HealthAlertCallback] = []

    async def get(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        tags: Sequence[str] = None,
        ttl: Optional[float] = None,
        fallback: Optional[Callable[[], Awaitable[Any]]] = None
    ) -> Any:
        """Return the durable value for ``key``, fetching and persisting on a miss.

        After ``max_retries`` failed retries, ``fallback`` (if given) is awaited
        once and its result returned without being persisted. Without a
        fallback, or if the fallback fails too, the last primary error is raised.
        """
        ttl = ttl or self.config.default_ttl
        all_tags = list(dict.fromkeys([*(tags or ()), key]))
        start_time = time.perf_counter()
        self._health.total_requests += 1

        async def read_through():
            return await self.store.cached(key, fetcher, tags=all_tags, ttl=ttl)

        try:
            result = await self.retry_handler.execute_async(read_through)
        except Exception as error:
            self._record_failure()
            if fallback is None:
                raise

            try:
                fallback_result = await fallback()
            except Exception as fallback_error:
                logger.error("Durable cache fallback failed", key=key, error=str(fallback_error))
                raise error

            logger.warning("Durable cache served fallback", key=key, error=str(error))
            self._record_success(time.perf_counter() - start_time)
            return fallback_result

        duration = time.perf_counter() - start_time
        self._record_success(duration)
        performance_logger.log_execution_time("durable_cache_get", duration, True, key=key)
        return result

    async def invalidate_by_tags(self, tags: Sequence[str]):
        """Revalidate every tag against the store.

        A failing tag does not stop the rest; the first error is re-raised
        once every tag has been tried.
        """
        first_error: Optional[Exception] = None
        for tag in tags:
            try:
                await self.store.revalidate_tag(tag)
            except Exception as e:
                logger.error("Failed to invalidate durable cache tag", tag=tag, error=str(e))
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    async def invalidate_key(self, key: str):
        await self.invalidate_by_tags([key])

    async def warm_cache(self, entries: List[Dict[str, Any]]):
        """Best-effort warm-up from ``{"key", "fetcher", "tags", "ttl"}`` dicts."""
        async def warm_one(item: Dict[str, Any]):
            try:
                await self.get(item["key"], item["fetcher"], tags=item.get("tags"), ttl=item.get("ttl"))
            except Exception as e:
                logger.warning("Failed to warm durable cache", key=item.get("key"), error=str(e))

        await asyncio.gather(*(warm_one(item) for item in entries), return_exceptions=True)

    def cached(
        self,
        key_generator: Callable[..., str],
        tags: Sequence[str] = None,
        ttl: Optional[float] = None,
        fallback: Optional[Callable[..., Awaitable[Any]]] = None
    ):
        """Decorator turning an async function into a durably cached one."""
        def decorator(func: Callable[..., Awaitable[Any]]):
            @wraps(func)
            async def wrapper(*args, **kwargs):
                key = key_generator(*args, **kwargs)
                bound_fallback = None
                if fallback is not None:
                    async def bound_fallback():
                        return await fallback(*args, **kwargs)
                return await self.get(
                    key,
                    lambda: func(*args, **kwargs),
                    tags=tags,
                    ttl=ttl,
                    fallback=bound_fallback
                )
            return wrapper
        return decorator

    def get_health_metrics(self) -> CacheHealthMetrics:
        total_requests = self._health.total_requests
        failure_rate = self._health.failed_requests / total_requests if total_requests > 0 else 0.0
        avg_response_time = self._response_time_sum / total_requests if total_requests > 0 else 0.0

        return replace(
            self._health,
            failure_rate=failure_rate,
            avg_response_time=avg_response_time,
            last_health_check=datetime.now(timezone.utc),
            is_healthy=failure_rate < self.config.alert_threshold,
        )

    def on_health_alert(self, callback: HealthAlertCallback):
        self._alert_callbacks.append(callback)

    def remove_health_alert(self, callback: HealthAlertCallback):
        if callback in self._alert_callbacks:
            self._alert_callbacks.remove(callback)

    def reset_health_metrics(self):
        self._health = CacheHealthMetrics()
        self._response_time_sum = 0.0

    def _on_retry(self, attempt: int, error: Exception, delay: float):
        if self.metrics is not None:
            self.metrics.increment_counter("retries_total")

    def _record_success(self, response_time: float):
        self._health.successful_requests += 1
        self._response_time_sum += response_time
        if self.config.enable_health_monitoring:
            self._check_health()

    def _record_failure(self):
        self._health.failed_requests += 1
        if self.metrics is not None:
            self.metrics.increment_counter("errors_total", {"operation": "durable_get"})
        if self.config.enable_health_monitoring:
            self._check_health()

    def _check_health(self):
        metrics = self.get_health_metrics()
        self._health.last_health_check = metrics.last_health_check
        if self.metrics is not None:
            self.metrics.set_gauge("durable_healthy", 1.0 if metrics.is_healthy else 0.0)

        if metrics.is_healthy:
            return
        for callback in list(self._alert_callbacks):
            try:
                callback(metrics)
            except Exception as e:
                logger.error("Health alert callback failed", error=str(e))
