"""Structured logging configuration."""

import logging
import sys
from typing import Optional

import structlog


def setup_logging(level: str = "INFO", environment: str = "production"):
    """Setup structured logging with structlog."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if environment != "development"
            else structlog.dev.ConsoleRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )


class CacheLogger:
    """Logger for cache tiers that forwards keyword context to structlog."""

    def __init__(self, name: str):
        self.name = name
        self.logger = structlog.get_logger(name)

    def info(self, message: str, **kwargs):
        self.logger.info(message, **kwargs)

    def error(self, message: str, **kwargs):
        self.logger.error(message, **kwargs)

    def warning(self, message: str, **kwargs):
        self.logger.warning(message, **kwargs)

    def debug(self, message: str, **kwargs):
        self.logger.debug(message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log exception with traceback."""
        self.logger.exception(message, **kwargs)

    def with_context(self, **kwargs) -> "CacheLogger":
        """Create logger with additional context."""
        new_logger = CacheLogger(self.name)
        new_logger.logger = self.logger.bind(**kwargs)
        return new_logger


class PerformanceLogger:
    """Logger for timing cache lookups and query executions."""

    def __init__(self):
        self.logger = CacheLogger("tiercache.performance")

    def log_execution_time(
        self,
        operation: str,
        duration: float,
        success: bool,
        **kwargs
    ):
        """Log operation execution time."""
        self.logger.debug(
            "Operation completed",
            event_type="performance",
            operation=operation,
            duration_seconds=round(duration, 6),
            success=success,
            **kwargs
        )

    def log_tier_stats(self, component: str, stats: Optional[dict] = None, **kwargs):
        """Log a periodic statistics summary."""
        self.logger.info(
            "Cache statistics",
            event_type="cache_stats",
            component=component,
            stats=stats or {},
            **kwargs
        )


performance_logger = PerformanceLogger()


def get_logger(name: str) -> CacheLogger:
    """Get a configured logger instance."""
    return CacheLogger(name)
