"""Error classification and reporting.

The classifier annotates failures with a category and severity; the
reporter logs them and forwards the serious ones to an optional
notification collaborator (email, Slack, ...) without ever waiting on it.

Classification never changes control flow. Retry decisions live in
``event_manager.throttling.executor``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
from dataclasses import dataclass, field
from collections.abc import Mapping
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from event_manager.errors import (
    AuthenticationFault,
    ErrorCategory,
    ErrorSeverity,
    Fault,
    NetworkFault,
    RemoteAPIFault,
    SystemFault,
    ValidationFault,
)

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    ErrorSeverity.LOW: logging.INFO,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}

_AUTH_STATUS_CODES = {401, 403}


@dataclass(frozen=True)
class Classification:
    category: ErrorCategory
    severity: ErrorSeverity


class ErrorClassifier:
    """Deterministic mapping from an exception to (category, severity)."""

    def classify(self, error: BaseException) -> Classification:
        if isinstance(error, Fault):
            return Classification(error.category, error.severity)

        if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
            return Classification(ErrorCategory.NETWORK, ErrorSeverity.MEDIUM)
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            if status in _AUTH_STATUS_CODES:
                return Classification(ErrorCategory.AUTHENTICATION, ErrorSeverity.HIGH)
            if status >= 500:
                return Classification(ErrorCategory.REMOTE_API, ErrorSeverity.HIGH)
            return Classification(ErrorCategory.REMOTE_API, ErrorSeverity.MEDIUM)
        if isinstance(error, (httpx.TransportError, ConnectionError)):
            return Classification(ErrorCategory.NETWORK, ErrorSeverity.MEDIUM)
        if isinstance(error, (ValidationError, ValueError, KeyError, TypeError)):
            return Classification(ErrorCategory.VALIDATION, ErrorSeverity.LOW)
        if isinstance(error, (MemoryError, RecursionError)):
            return Classification(ErrorCategory.SYSTEM, ErrorSeverity.CRITICAL)
        if isinstance(error, OSError):
            return Classification(ErrorCategory.NETWORK, ErrorSeverity.MEDIUM)
        return Classification(ErrorCategory.UNKNOWN, ErrorSeverity.MEDIUM)


def to_fault(error: BaseException) -> Fault:
    """Wrap an arbitrary exception in the matching ``Fault`` subclass."""
    if isinstance(error, Fault):
        return error

    message = str(error) or type(error).__name__
    context = {"exception_type": type(error).__name__}

    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return NetworkFault(f"Request timed out: {message}", context=context)
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status in _AUTH_STATUS_CODES:
            return AuthenticationFault(message, status_code=status, context=context)
        return RemoteAPIFault(message, status_code=status, context=context)

    classification = ErrorClassifier().classify(error)
    if classification.category is ErrorCategory.NETWORK:
        return NetworkFault(message, context=context)
    if classification.category is ErrorCategory.VALIDATION:
        return ValidationFault(message, context=context)
    if classification.category is ErrorCategory.SYSTEM:
        return SystemFault(message, context=context)
    return Fault(message, context=context)


@dataclass(frozen=True)
class FaultReport:
    """What the notification collaborator receives."""

    error: BaseException
    category: ErrorCategory
    severity: ErrorSeverity
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def message(self) -> str:
        return str(self.error) or type(self.error).__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "exception_type": type(self.error).__name__,
            "traceback": "".join(traceback.format_exception(self.error)).strip(),
            "context": dict(self.context),
        }


class Notifier(Protocol):
    async def notify(self, report: FaultReport) -> None: ...


class ErrorReporter:
    """Logs classified faults and forwards serious ones to a notifier.

    Notifications are budgeted per ``category:shop`` key and per hour so a
    failing shop cannot flood the alert channel.
    """

    def __init__(
        self,
        classifier: ErrorClassifier | None = None,
        notifier: Notifier | None = None,
        *,
        severity_threshold: ErrorSeverity = ErrorSeverity.HIGH,
        max_per_hour: int = 10,
    ) -> None:
        self.classifier = classifier or ErrorClassifier()
        self.notifier = notifier
        self.severity_threshold = severity_threshold
        self.max_per_hour = max_per_hour
        self._sent: dict[str, list[float]] = {}
        self._pending: set[asyncio.Task] = set()

    def report(
        self,
        error: BaseException,
        details: Mapping[str, Any] | None = None,
        **context: Any,
    ) -> FaultReport:
        """Classify, log and (maybe) notify. Never raises.

        ``details`` and keyword context are merged, keywords winning; both
        override the fault's own context.
        """
        classification = self.classifier.classify(error)
        context = {**(details or {}), **context}
        if isinstance(error, Fault) and error.context:
            context = {**error.context, **context}
        report = FaultReport(
            error=error,
            category=classification.category,
            severity=classification.severity,
            context=context,
        )

        logger.log(
            _LOG_LEVELS[report.severity],
            "%s fault (%s): %s context=%s",
            report.severity.value.upper(),
            report.category.value,
            report.message,
            context,
        )

        if self._should_notify(report):
            self._schedule(report)
        return report

    def report_webhook_error(
        self,
        error: BaseException,
        topic: str,
        shop_domain: str,
        details: Mapping[str, Any] | None = None,
        **context: Any,
    ) -> FaultReport:
        return self.report(
            error,
            {
                **(details or {}),
                **context,
                "service": "webhook-processor",
                "webhook_topic": topic,
                "shop_domain": shop_domain,
            },
        )

    def report_graphql_error(
        self,
        error: BaseException,
        operation: str,
        shop_domain: str,
        details: Mapping[str, Any] | None = None,
        **context: Any,
    ) -> FaultReport:
        return self.report(
            error,
            {
                **(details or {}),
                **context,
                "service": "graphql-client",
                "operation": operation,
                "shop_domain": shop_domain,
            },
        )

    def _should_notify(self, report: FaultReport) -> bool:
        if self.notifier is None:
            return False
        if report.severity.rank < self.severity_threshold.rank:
            return False

        key = f"{report.category.value}:{report.context.get('shop_domain', 'unknown')}"
        cutoff = time.time() - 3600
        self._evict_expired(cutoff)
        recent = self._sent.get(key, [])
        if len(recent) >= self.max_per_hour:
            logger.info("Notification budget spent for %s, suppressing", key)
            return False
        recent.append(time.time())
        self._sent[key] = recent
        return True

    def _evict_expired(self, cutoff: float) -> None:
        for key in list(self._sent):
            recent = [t for t in self._sent[key] if t >= cutoff]
            if recent:
                self._sent[key] = recent
            else:
                del self._sent[key]

    def _schedule(self, report: FaultReport) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, notification dropped: %s", report.message)
            return
        task = loop.create_task(self._deliver(report))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, report: FaultReport) -> None:
        try:
            await self.notifier.notify(report)  # type: ignore[union-attr]
        except Exception:
            logger.exception("Failed to deliver fault notification")

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
