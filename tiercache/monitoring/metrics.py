"""Prometheus metrics for the cache tiers."""

import threading
from typing import Dict, Optional

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest
import structlog

logger = structlog.get_logger(__name__)


class CacheMetrics:
    """Metrics collector with its own registry so several caches can coexist."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._lock = threading.Lock()

        self.counters: Dict[str, Counter] = {}
        self.histograms: Dict[str, Histogram] = {}
        self.gauges: Dict[str, Gauge] = {}

        self._initialize_metrics()

    def _initialize_metrics(self):
        self.counters["requests_total"] = Counter(
            "tiercache_requests_total",
            "Cache lookups by serving tier and result",
            ["tier", "result"],
            registry=self.registry
        )

        self.counters["errors_total"] = Counter(
            "tiercache_errors_total",
            "Cache operations that failed or were degraded",
            ["operation"],
            registry=self.registry
        )

        self.counters["retries_total"] = Counter(
            "tiercache_retries_total",
            "Retries performed against the durable tier",
            registry=self.registry
        )

        self.counters["slow_queries_total"] = Counter(
            "tiercache_slow_queries_total",
            "Queries slower than the configured threshold",
            registry=self.registry
        )

        self.histograms["get_duration_seconds"] = Histogram(
            "tiercache_get_duration_seconds",
            "Time spent serving a multi-tier get",
            buckets=[0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
            registry=self.registry
        )

        self.histograms["query_duration_seconds"] = Histogram(
            "tiercache_query_duration_seconds",
            "Time spent executing data-store queries",
            ["table"],
            buckets=[0.001, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 10.0],
            registry=self.registry
        )

        self.gauges["memory_entries"] = Gauge(
            "tiercache_memory_entries",
            "Entries currently held by the memory tier",
            registry=self.registry
        )

        self.gauges["durable_healthy"] = Gauge(
            "tiercache_durable_healthy",
            "1 when the durable tier failure rate is under the alert threshold",
            registry=self.registry
        )

    def increment_counter(self, name: str, labels: Dict[str, str] = None) -> None:
        """Increment a counter metric."""
        labels = labels or {}

        with self._lock:
            if name in self.counters:
                counter = self.counters[name]
                if counter._labelnames:
                    counter.labels(**labels).inc()
                else:
                    counter.inc()
            else:
                logger.warning("Counter not found", metric_name=name)

    def record_histogram(self, name: str, value: float, labels: Dict[str, str] = None) -> None:
        """Record a value in a histogram metric."""
        labels = labels or {}

        with self._lock:
            if name in self.histograms:
                histogram = self.histograms[name]
                if histogram._labelnames:
                    histogram.labels(**labels).observe(value)
                else:
                    histogram.observe(value)
            else:
                logger.warning("Histogram not found", metric_name=name)

    def set_gauge(self, name: str, value: float, labels: Dict[str, str] = None) -> None:
        """Set a gauge metric value."""
        labels = labels or {}

        with self._lock:
            if name in self.gauges:
                gauge = self.gauges[name]
                if gauge._labelnames:
                    gauge.labels(**labels).set(value)
                else:
                    gauge.set(value)
            else:
                logger.warning("Gauge not found", metric_name=name)

    def get_prometheus_metrics(self) -> str:
        """Get Prometheus-formatted metrics."""
        return generate_latest(self.registry).decode('utf-8')

    def get_sample_value(self, name: str, labels: Dict[str, str] = None) -> Optional[float]:
        """Read back a single sample, mostly useful in tests."""
        return self.registry.get_sample_value(name, labels or {})
