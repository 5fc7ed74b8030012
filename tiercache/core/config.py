"""Configuration for the cache tiers."""

from dataclasses import dataclass, field
from typing import Annotated, Optional

from pydantic import Field, field_validator, ConfigDict
from pydantic_settings import BaseSettings

from .errors import ConfigurationError


@dataclass
class MemoryCacheConfig:
    """Settings for the in-process LRU tier. Durations are in seconds."""
    max_size: int = 1000
    default_ttl: float = 300.0
    cleanup_interval: float = 60.0  # 0 disables the background sweep
    enable_stats: bool = True

    def __post_init__(self):
        if self.max_size < 0:
            raise ConfigurationError("max_size must be >= 0", config_key="max_size")
        if self.default_ttl <= 0:
            raise ConfigurationError("default_ttl must be > 0", config_key="default_ttl")
        if self.cleanup_interval < 0:
            raise ConfigurationError("cleanup_interval must be >= 0", config_key="cleanup_interval")


@dataclass
class DurableCacheConfig:
    """Settings for the persistent tier."""
    default_ttl: float = 300.0
    enable_health_monitoring: bool = True
    max_retries: int = 3
    retry_delay: float = 1.0  # base delay, doubled on every retry
    alert_threshold: float = 0.1  # failure rate at which the tier is unhealthy

    def __post_init__(self):
        if self.default_ttl <= 0:
            raise ConfigurationError("default_ttl must be > 0", config_key="default_ttl")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0", config_key="max_retries")
        if self.retry_delay < 0:
            raise ConfigurationError("retry_delay must be >= 0", config_key="retry_delay")
        if not 0 < self.alert_threshold <= 1:
            raise ConfigurationError(
                "alert_threshold must be in (0, 1]", config_key="alert_threshold"
            )


@dataclass
class QueryOptimizerConfig:
    """Settings for query execution, the query-result cache and batching."""
    slow_query_threshold: float = 1.0
    batch_size: int = 10
    batch_timeout: float = 0.1
    enable_query_cache: bool = True
    cache_timeout: float = 300.0
    enable_performance_monitoring: bool = True
    connection_pool_size: int = 10
    metrics_capacity: int = 1000
    metrics_retention: float = 24 * 60 * 60
    metrics_prune_interval: float = 60 * 60

    def __post_init__(self):
        if self.batch_size < 1:
            raise ConfigurationError("batch_size must be >= 1", config_key="batch_size")
        if self.batch_timeout < 0:
            raise ConfigurationError("batch_timeout must be >= 0", config_key="batch_timeout")
        if self.cache_timeout <= 0:
            raise ConfigurationError("cache_timeout must be > 0", config_key="cache_timeout")
        if self.slow_query_threshold < 0:
            raise ConfigurationError(
                "slow_query_threshold must be >= 0", config_key="slow_query_threshold"
            )
        if self.connection_pool_size < 1:
            raise ConfigurationError(
                "connection_pool_size must be >= 1", config_key="connection_pool_size"
            )
        if self.metrics_capacity < 1:
            raise ConfigurationError("metrics_capacity must be >= 1", config_key="metrics_capacity")


@dataclass
class MultiTierCacheConfig:
    """Composite configuration for :class:`MultiTierCache`."""
    memory: MemoryCacheConfig = field(default_factory=MemoryCacheConfig)
    disk: DurableCacheConfig = field(default_factory=DurableCacheConfig)
    query: QueryOptimizerConfig = field(default_factory=QueryOptimizerConfig)
    enable_fallback: bool = True
    enable_metrics: bool = True
    stats_log_interval: float = 60.0


class CacheSettings(BaseSettings):
    """Environment-driven settings, read once at application startup."""
    model_config = ConfigDict(
        env_prefix="TIERCACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Memory tier
    memory_max_size: Annotated[int, Field(description="Maximum memory entries", ge=0)] = 1000
    memory_default_ttl: Annotated[float, Field(description="Memory TTL (s)", gt=0)] = 300.0
    memory_cleanup_interval: Annotated[float, Field(description="Expiry sweep interval (s)", ge=0)] = 60.0
    memory_enable_stats: Annotated[bool, Field(description="Track hit/miss counters")] = True

    # Durable tier
    disk_default_ttl: Annotated[float, Field(description="Durable TTL (s)", gt=0)] = 300.0
    disk_enable_health_monitoring: Annotated[bool, Field(description="Run health checks")] = True
    disk_max_retries: Annotated[int, Field(description="Retries per durable read", ge=0)] = 3
    disk_retry_delay: Annotated[float, Field(description="Base retry delay (s)", ge=0)] = 1.0
    disk_alert_threshold: Annotated[float, Field(description="Failure-rate alert threshold")] = 0.1

    # Query tier
    query_slow_query_threshold: Annotated[float, Field(description="Slow query threshold (s)", ge=0)] = 1.0
    query_batch_size: Annotated[int, Field(description="Queries per batch", ge=1)] = 10
    query_batch_timeout: Annotated[float, Field(description="Batch flush timeout (s)", ge=0)] = 0.1
    query_enable_query_cache: Annotated[bool, Field(description="Cache query results")] = True
    query_cache_timeout: Annotated[float, Field(description="Query-result TTL (s)", gt=0)] = 300.0
    query_enable_performance_monitoring: Annotated[bool, Field(description="Prune metrics hourly")] = True
    query_connection_pool_size: Annotated[int, Field(description="Data-store pool size", ge=1)] = 10

    # Composition
    enable_fallback: Annotated[bool, Field(description="Fetch directly when durable tier fails")] = True
    enable_metrics: Annotated[bool, Field(description="Log periodic statistics")] = True

    # Backends
    redis_url: Annotated[Optional[str], Field(description="Redis URL for the durable tier")] = None
    database_url: Annotated[Optional[str], Field(description="Data-store DSN")] = None

    # Logging
    log_level: Annotated[str, Field(description="Log level")] = "INFO"
    environment: Annotated[str, Field(description="Environment")] = "production"

    @field_validator("disk_alert_threshold")
    @classmethod
    def validate_alert_threshold(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError(f"alert threshold must be in (0, 1], got {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()

    def to_multi_tier_config(self) -> MultiTierCacheConfig:
        return MultiTierCacheConfig(
            memory=MemoryCacheConfig(
                max_size=self.memory_max_size,
                default_ttl=self.memory_default_ttl,
                cleanup_interval=self.memory_cleanup_interval,
                enable_stats=self.memory_enable_stats,
            ),
            disk=DurableCacheConfig(
                default_ttl=self.disk_default_ttl,
                enable_health_monitoring=self.disk_enable_health_monitoring,
                max_retries=self.disk_max_retries,
                retry_delay=self.disk_retry_delay,
                alert_threshold=self.disk_alert_threshold,
            ),
            query=QueryOptimizerConfig(
                slow_query_threshold=self.query_slow_query_threshold,
                batch_size=self.query_batch_size,
                batch_timeout=self.query_batch_timeout,
                enable_query_cache=self.query_enable_query_cache,
                cache_timeout=self.query_cache_timeout,
                enable_performance_monitoring=self.query_enable_performance_monitoring,
                connection_pool_size=self.query_connection_pool_size,
            ),
            enable_fallback=self.enable_fallback,
            enable_metrics=self.enable_metrics,
        )
