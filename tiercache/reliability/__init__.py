"""Reliability components for the cache tiers."""

from .retry_handler import (
    RetryHandler,
    RetryConfig,
    RetryMetrics,
    retry
)

__all__ = [
    "RetryHandler",
    "RetryConfig",
    "RetryMetrics",
    "retry",
]
