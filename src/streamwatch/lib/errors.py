"""
Error taxonomy and failure bookkeeping.

Defines the exception hierarchy shared by every component of the stream
monitor and the tracker that keeps per-operation failure counters for
observability.
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional
from enum import Enum
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"           # Minor issues, next tick will recover
    MEDIUM = "medium"     # One channel or operation skipped this cycle
    HIGH = "high"         # Platform functionality impacted
    CRITICAL = "critical" # Monitor cannot continue


class ErrorCategory(str, Enum):
    """Error categories for classification."""
    NETWORK = "network"             # Connectivity issues, timeouts
    RATE_LIMIT = "rate_limit"       # Upstream rate limiting
    QUOTA = "quota"                 # Local call budget exhausted
    EXTERNAL_API = "external_api"   # Upstream API rejected the call
    SUBSCRIPTION = "subscription"   # Webhook lease management
    EVENT_BUS = "event_bus"         # Pub/sub broker issues
    CONFIGURATION = "configuration" # Configuration issues
    VALIDATION = "validation"       # Malformed payloads
    INTERNAL = "internal"           # Internal application errors


@dataclass
class ErrorContext:
    """Context information for errors."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    operation: Optional[str] = None
    component: Optional[str] = None
    platform: Optional[str] = None
    channel_key: Optional[str] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            'timestamp': self.timestamp.isoformat(),
            'operation': self.operation,
            'component': self.component,
            'platform': self.platform,
            'channel_key': self.channel_key,
            **self.additional_data
        }


class MonitoringError(Exception):
    """Base exception for monitoring-related errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)


class NetworkError(MonitoringError):
    """Network-related errors."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.NETWORK,
            severity=ErrorSeverity.HIGH,
            **kwargs
        )


class RateLimitError(MonitoringError):
    """Rate limiting errors."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.RATE_LIMIT,
            severity=ErrorSeverity.MEDIUM,
            **kwargs
        )
        self.retry_after = retry_after


class ApiResponseError(MonitoringError):
    """Non-success HTTP response from a platform API."""

    def __init__(
        self,
        message: str,
        status: int,
        reason: Optional[str] = None,
        retry_after: Optional[float] = None,
        body: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            category=ErrorCategory.EXTERNAL_API,
            severity=ErrorSeverity.MEDIUM,
            **kwargs
        )
        self.status = status
        self.reason = reason
        self.retry_after = retry_after
        self.body = body


class NoCapacityError(MonitoringError):
    """Every credential slot has exhausted its call budget."""

    def __init__(self, message: str, platform: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.QUOTA,
            severity=ErrorSeverity.HIGH,
            **kwargs
        )
        self.platform = platform


class SubscriptionError(MonitoringError):
    """Webhook subscription could not be created or removed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.SUBSCRIPTION,
            severity=ErrorSeverity.MEDIUM,
            **kwargs
        )


class EventBusError(MonitoringError):
    """Pub/sub broker errors."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.EVENT_BUS,
            severity=ErrorSeverity.HIGH,
            **kwargs
        )


class PollerStateError(MonitoringError):
    """Illegal lifecycle transition, or use of a poller client after close."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.INTERNAL,
            severity=ErrorSeverity.LOW,
            **kwargs
        )


@dataclass
class OperationFailure:
    """Terminal failure recorded for one operation."""
    operation: str
    error_type: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ErrorTracker:
    """Tracks terminal failures per operation and provides statistics."""

    def __init__(self, max_history: int = 1000):
        self.max_history = max_history
        self._error_history: List[OperationFailure] = []
        self._error_counts: Dict[str, int] = {}
        self._last_errors: Dict[str, datetime] = {}

    def record_failure(self, operation: str, error: BaseException) -> None:
        """Record a terminal failure for an operation."""
        failure = OperationFailure(
            operation=operation,
            error_type=type(error).__name__,
            message=str(error),
        )
        self._error_history.append(failure)

        if len(self._error_history) > self.max_history:
            self._error_history = self._error_history[-self.max_history:]

        self._error_counts[operation] = self._error_counts.get(operation, 0) + 1
        self._last_errors[operation] = failure.timestamp

    def get_failure_count(self, operation: str) -> int:
        """Number of terminal failures recorded for an operation."""
        return self._error_counts.get(operation, 0)

    def get_last_failure(self, operation: str) -> Optional[datetime]:
        """Timestamp of the most recent terminal failure for an operation."""
        return self._last_errors.get(operation)

    def get_error_stats(self) -> Dict[str, Any]:
        """Get error statistics."""
        now = datetime.now(timezone.utc)
        last_hour = now - timedelta(hours=1)

        return {
            'total_errors': len(self._error_history),
            'errors_last_hour': len([e for e in self._error_history if e.timestamp >= last_hour]),
            'error_counts_by_operation': self._error_counts.copy(),
            'most_recent_errors': [
                {
                    'operation': operation,
                    'last_occurred': last_time.isoformat(),
                    'count': self._error_counts[operation]
                }
                for operation, last_time in sorted(
                    self._last_errors.items(),
                    key=lambda x: x[1],
                    reverse=True
                )[:10]
            ]
        }

    def get_recent_errors(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Get recent failures as dictionaries."""
        recent = self._error_history[-limit:] if self._error_history else []

        return [
            {
                'operation': failure.operation,
                'type': failure.error_type,
                'message': failure.message,
                'timestamp': failure.timestamp.isoformat(),
            }
            for failure in reversed(recent)
        ]

    def clear_history(self) -> None:
        """Clear failure history and counters."""
        self._error_history.clear()
        self._error_counts.clear()
        self._last_errors.clear()
