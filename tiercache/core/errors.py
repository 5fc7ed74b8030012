"""Custom exceptions for the cache tiers."""

from typing import Dict, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CacheError(Exception):
    """Base exception for all cache errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        error_code: str = None,
        details: Dict[str, Any] = None,
        recoverable: bool = True
    ):
        self.message = message
        self.severity = severity
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.recoverable = recoverable
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "error_code": self.error_code,
            "details": self.details,
            "recoverable": self.recoverable
        }


class ConfigurationError(CacheError):
    """Raised when a tier configuration is invalid."""

    def __init__(self, message: str, config_key: str = None, **kwargs):
        self.config_key = config_key
        super().__init__(
            message=f"Configuration error: {message}",
            severity=ErrorSeverity.CRITICAL,
            recoverable=False,
            **kwargs
        )


class QueryBuildError(CacheError):
    """Raised when filters or pagination cannot be turned into a query."""

    def __init__(self, entity: str, message: str, **kwargs):
        self.entity = entity
        super().__init__(
            message=f"Invalid {entity} query: {message}",
            severity=ErrorSeverity.LOW,
            recoverable=False,
            **kwargs
        )


class QueryExecutionError(CacheError):
    """Raised when the data-store executor returns something unusable."""

    def __init__(self, query_id: str, message: str, **kwargs):
        self.query_id = query_id
        super().__init__(
            message=f"Query {query_id} failed: {message}",
            severity=ErrorSeverity.HIGH,
            **kwargs
        )


class StoreError(CacheError):
    """Raised when a persistence primitive cannot complete an operation."""

    def __init__(self, store: str, message: str, **kwargs):
        self.store = store
        super().__init__(
            message=f"Store '{store}' error: {message}",
            severity=ErrorSeverity.HIGH,
            **kwargs
        )


class BatchQueryError(CacheError):
    """Raised when a query cannot be queued for batched execution."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=f"Batch error: {message}",
            severity=ErrorSeverity.MEDIUM,
            **kwargs
        )
