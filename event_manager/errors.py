"""Fault taxonomy shared by the GraphQL executor and the webhook pipeline.

Every categorized failure is a ``Fault`` subclass. The subclass fixes the
category and a default severity; callers may still override the severity
and attach a status code, a rate-limit snapshot or free-form context.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from event_manager.throttling.rate_limit import RateLimitInfo


class ErrorCategory(str, Enum):
    """Where a fault originated."""

    AUTHENTICATION = "authentication"
    WEBHOOK_PROCESSING = "webhook_processing"
    REMOTE_API = "remote_api"
    PERSISTENCE = "persistence"
    NETWORK = "network"
    VALIDATION = "validation"
    SYSTEM = "system"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """How loudly a fault should be reported."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [
    ErrorSeverity.LOW,
    ErrorSeverity.MEDIUM,
    ErrorSeverity.HIGH,
    ErrorSeverity.CRITICAL,
]


class Fault(Exception):
    """Base class for categorized failures."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    default_severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        *,
        severity: ErrorSeverity | None = None,
        status_code: int | None = None,
        rate_limit_info: RateLimitInfo | None = None,
        retry_after_ms: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.message = message
        self.severity = severity or self.default_severity
        self.status_code = status_code
        self.rate_limit_info = rate_limit_info
        self.retry_after_ms = retry_after_ms
        self.context: dict[str, Any] = dict(context or {})
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.status_code is not None:
            data["status_code"] = self.status_code
        if self.retry_after_ms is not None:
            data["retry_after_ms"] = self.retry_after_ms
        if self.context:
            data["context"] = dict(self.context)
        return data


class AuthenticationFault(Fault):
    """Missing, invalid or rejected credentials. Never retried."""

    category = ErrorCategory.AUTHENTICATION
    default_severity = ErrorSeverity.HIGH


class WebhookProcessingFault(Fault):
    category = ErrorCategory.WEBHOOK_PROCESSING
    default_severity = ErrorSeverity.HIGH


class RemoteAPIFault(Fault):
    """The remote API answered, but not with something usable."""

    category = ErrorCategory.REMOTE_API
    default_severity = ErrorSeverity.HIGH


class PersistenceFault(Fault):
    category = ErrorCategory.PERSISTENCE
    default_severity = ErrorSeverity.HIGH


class NetworkFault(Fault):
    """Transport failure: connection error, timeout or cancellation."""

    category = ErrorCategory.NETWORK
    default_severity = ErrorSeverity.MEDIUM

    def __init__(self, message: str, *, cancelled: bool = False, **kwargs: Any):
        self.cancelled = cancelled
        super().__init__(message, **kwargs)


class ValidationFault(Fault):
    """Malformed input. Never retried."""

    category = ErrorCategory.VALIDATION
    default_severity = ErrorSeverity.LOW


class SystemFault(Fault):
    category = ErrorCategory.SYSTEM
    default_severity = ErrorSeverity.CRITICAL


# Categories the executor must surface immediately.
NON_RETRYABLE_CATEGORIES = frozenset(
    {ErrorCategory.AUTHENTICATION, ErrorCategory.VALIDATION}
)
