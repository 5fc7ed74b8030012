"""Retry with exponential backoff for the durable cache tier."""

import asyncio
import random
import time
from collections import deque
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from ..monitoring.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    ``max_retries`` counts retries, so an operation is tried
    ``max_retries + 1`` times. The delay before retry *n* (n >= 1) is
    ``base_delay * exponential_base ** (n - 1)``.
    """
    max_retries: int = 3
    base_delay: float = 1.0
    exponential_base: float = 2.0
    max_delay: Optional[float] = None
    jitter: bool = False
    jitter_factor: float = 0.1
    retriable_exceptions: Tuple[Type[Exception], ...] = (Exception,)
    non_retriable_exceptions: Tuple[Type[Exception], ...] = ()


@dataclass
class RetryMetrics:
    """Counters describing retry behavior over the handler's lifetime."""
    total_operations: int = 0
    total_attempts: int = 0
    successful_retries: int = 0
    exhausted_operations: int = 0
    total_delay_time: float = 0.0
    failure_types: Dict[str, int] = field(default_factory=dict)

    @property
    def average_attempts(self) -> float:
        if self.total_operations == 0:
            return 0.0
        return self.total_attempts / self.total_operations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_operations": self.total_operations,
            "total_attempts": self.total_attempts,
            "successful_retries": self.successful_retries,
            "exhausted_operations": self.exhausted_operations,
            "total_delay_time": self.total_delay_time,
            "average_attempts": self.average_attempts,
            "failure_types": dict(self.failure_types),
        }


class RetryHandler:
    """Executes async callables, retrying failures with exponential backoff.

    When every attempt fails the last exception is re-raised unchanged so
    callers can decide on fallbacks based on the real failure.
    """

    def __init__(
        self,
        config: RetryConfig = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_retry: Optional[Callable[[int, Exception, float], None]] = None
    ):
        self.config = config or RetryConfig()
        self.metrics = RetryMetrics()
        self.execution_history = deque(maxlen=100)
        self._sleep = sleep
        self._on_retry = on_retry

    def calculate_delay(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        delay = self.config.base_delay * (self.config.exponential_base ** (retry_number - 1))
        if self.config.jitter:
            jitter_amount = delay * self.config.jitter_factor
            delay += random.uniform(-jitter_amount, jitter_amount)
        if self.config.max_delay is not None:
            delay = min(delay, self.config.max_delay)
        return max(0.0, delay)

    def _is_retriable(self, exception: Exception) -> bool:
        if isinstance(exception, self.config.non_retriable_exceptions):
            return False
        return isinstance(exception, self.config.retriable_exceptions)

    async def execute_async(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute ``func`` with retry logic."""
        operation_name = getattr(func, '__name__', 'unknown_operation')
        start_time = time.time()
        self.metrics.total_operations += 1

        for attempt in range(self.config.max_retries + 1):
            self.metrics.total_attempts += 1
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                error_type = type(e).__name__
                self.metrics.failure_types[error_type] = self.metrics.failure_types.get(error_type, 0) + 1

                if not self._is_retriable(e):
                    logger.error("Non-retriable exception", operation=operation_name, error=str(e))
                    self._record(operation_name, attempt + 1, start_time, success=False)
                    raise

                if attempt >= self.config.max_retries:
                    logger.error(
                        "All retry attempts failed",
                        operation=operation_name,
                        attempts=attempt + 1,
                        error=str(e)
                    )
                    self.metrics.exhausted_operations += 1
                    self._record(operation_name, attempt + 1, start_time, success=False)
                    raise

                delay = self.calculate_delay(attempt + 1)
                logger.warning(
                    "Attempt failed, retrying",
                    operation=operation_name,
                    attempt=attempt + 1,
                    total_attempts=self.config.max_retries + 1,
                    delay_seconds=delay,
                    error=str(e)
                )
                if self._on_retry is not None:
                    self._on_retry(attempt + 1, e, delay)
                self.metrics.total_delay_time += delay
                await self._sleep(delay)
            else:
                if attempt > 0:
                    self.metrics.successful_retries += 1
                self._record(operation_name, attempt + 1, start_time, success=True)
                return result

    def _record(self, operation_name: str, attempts: int, start_time: float, success: bool):
        self.execution_history.append({
            "operation": operation_name,
            "attempts": attempts,
            "success": success,
            "duration": time.time() - start_time,
            "timestamp": time.time(),
        })

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.to_dict()


def retry(max_retries: int = 3, base_delay: float = 1.0, **config_kwargs):
    """Decorator applying :class:`RetryHandler` to an async function."""
    config = RetryConfig(max_retries=max_retries, base_delay=base_delay, **config_kwargs)

    def decorator(func: Callable[..., Awaitable[Any]]):
        handler = RetryHandler(config)

        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await handler.execute_async(func, *args, **kwargs)

        wrapper.retry_handler = handler
        return wrapper

    return decorator
