"""Throttling-aware retry driver for asynchronous API operations.

One ``execute()`` call owns its attempt counter and accumulated delay; nothing
is shared between calls, so concurrent executions need no locking. The
operation await and the backoff sleep are the only suspension points, and
both honour an optional cancellation event and deadline.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

from event_manager.error_handling import ErrorReporter, to_fault
from event_manager.errors import NON_RETRYABLE_CATEGORIES, ErrorCategory, Fault, NetworkFault
from event_manager.throttling.backoff import RetryPolicy, delay_for
from event_manager.throttling.rate_limit import RateLimitInfo, parse_rate_limit

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Message fragments that mark a status-less failure as transient
_TRANSIENT_INDICATORS = re.compile(
    r"rate limit|too many requests|throttled|quota exceeded"
    r"|service unavailable|temporary failure|timeout",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class OperationContext:
    """Identifies a call for logging and reporting."""

    shop_domain: str
    operation_name: str
    request_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionResult(Generic[T]):
    """Terminal outcome of ``ThrottlingExecutor.execute``."""

    success: bool
    value: T | None = None
    error: Fault | None = None
    rate_limit_info: RateLimitInfo | None = None
    retry_count: int = 0
    total_delay_ms: int = 0


class _Cancelled(Exception):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ThrottlingExecutor:
    """Runs an operation, retrying transient failures with bounded backoff."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        reporter: ErrorReporter | None = None,
        rate_limit_parser: Callable[[Any], RateLimitInfo | None] = parse_rate_limit,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.reporter = reporter
        self._parse_rate_limit = rate_limit_parser
        self._sleep = sleep
        self._rng = rng

    def is_retryable(self, fault: Fault, policy: RetryPolicy) -> bool:
        """Whether ``fault`` may be retried, ignoring the attempt budget."""
        if isinstance(fault, NetworkFault) and fault.cancelled:
            return False
        if fault.category in NON_RETRYABLE_CATEGORIES:
            return False
        if fault.status_code is not None:
            return fault.status_code in policy.retryable_status_codes
        if fault.category is ErrorCategory.NETWORK:
            return True
        return bool(_TRANSIENT_INDICATORS.search(fault.message))

    def next_delay_ms(self, attempt: int, fault: Fault, policy: RetryPolicy) -> int:
        """Backoff delay, raised to the bucket refill time or Retry-After when throttled."""
        delay = delay_for(attempt, policy, self._rng)
        if fault.rate_limit_info is not None:
            refill = fault.rate_limit_info.refill_delay_ms()
            if refill > delay:
                delay = min(refill, policy.max_delay_ms)
        if fault.retry_after_ms is not None and fault.retry_after_ms > delay:
            delay = min(fault.retry_after_ms, policy.max_delay_ms)
        return delay

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        context: OperationContext,
        policy: RetryPolicy | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        deadline: float | None = None,
    ) -> ExecutionResult[T]:
        """Run ``operation`` until it succeeds, fails permanently, or runs out of retries.

        Args:
            operation: Zero-argument coroutine factory, invoked once per attempt.
            context: Shop and operation identity for logs and reports.
            policy: Overrides the executor's default policy for this call.
            cancel_event: When set, the in-flight attempt or sleep is abandoned.
            deadline: Absolute ``loop.time()`` after which the call is abandoned.

        Returns:
            ExecutionResult with full retry accounting. Never raises for
            failures of ``operation``.
        """
        policy = policy or self.policy
        attempt = 0
        total_delay = 0

        while True:
            try:
                value = await self._attempt(operation, cancel_event, deadline)
            except _Cancelled as cancelled:
                fault = NetworkFault(
                    f"{context.operation_name} cancelled: {cancelled.reason}",
                    cancelled=True,
                )
                return self._fail(fault, context, attempt, total_delay)
            except Exception as exc:
                fault = to_fault(exc)
            else:
                if attempt > 0:
                    logger.info(
                        "Operation %s for %s succeeded after %d retries",
                        context.operation_name,
                        context.shop_domain,
                        attempt,
                    )
                return ExecutionResult(
                    success=True,
                    value=value,
                    rate_limit_info=self._parse_rate_limit(value),
                    retry_count=attempt,
                    total_delay_ms=total_delay,
                )

            if attempt >= policy.max_retries or not self.is_retryable(fault, policy):
                if attempt < policy.max_retries:
                    logger.info(
                        "Not retrying %s for %s: %s",
                        context.operation_name,
                        context.shop_domain,
                        fault.message,
                    )
                return self._fail(fault, context, attempt, total_delay)

            delay = self.next_delay_ms(attempt, fault, policy)
            logger.warning(
                "Retry %d/%d for %s on %s (%s), waiting %dms",
                attempt + 1,
                policy.max_retries,
                context.operation_name,
                context.shop_domain,
                fault.message,
                delay,
            )
            try:
                await self._backoff(delay, cancel_event, deadline)
            except _Cancelled as cancelled:
                fault = NetworkFault(
                    f"{context.operation_name} cancelled during backoff: {cancelled.reason}",
                    cancelled=True,
                )
                return self._fail(fault, context, attempt, total_delay)
            attempt += 1
            total_delay += delay

    def _fail(
        self, fault: Fault, context: OperationContext, attempt: int, total_delay: int
    ) -> ExecutionResult[Any]:
        logger.error(
            "Operation %s for %s failed after %d retries: %s",
            context.operation_name,
            context.shop_domain,
            attempt,
            fault.message,
        )
        if self.reporter is not None:
            self.reporter.report_graphql_error(
                fault,
                context.operation_name,
                context.shop_domain,
                {
                    **context.extra,
                    "request_id": context.request_id,
                    "retry_count": attempt,
                    "total_delay_ms": total_delay,
                    "rate_limit_info": fault.rate_limit_info.to_dict() if fault.rate_limit_info else None,
                },
            )
        return ExecutionResult(
            success=False,
            error=fault,
            rate_limit_info=fault.rate_limit_info,
            retry_count=attempt,
            total_delay_ms=total_delay,
        )

    @staticmethod
    def _remaining(deadline: float | None) -> float | None:
        if deadline is None:
            return None
        return deadline - asyncio.get_running_loop().time()

    async def _attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        cancel_event: asyncio.Event | None,
        deadline: float | None,
    ) -> T:
        if cancel_event is not None and cancel_event.is_set():
            raise _Cancelled("cancellation requested")
        remaining = self._remaining(deadline)
        if remaining is not None and remaining <= 0:
            raise _Cancelled("deadline exceeded")
        if cancel_event is None and remaining is None:
            return await operation()

        task = asyncio.ensure_future(operation())
        waiters: set[asyncio.Future] = {task}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if cancel_event is not None and cancel_event.is_set():
            raise _Cancelled("cancellation requested")
        raise _Cancelled("deadline exceeded")

    async def _backoff(
        self,
        delay_ms: int,
        cancel_event: asyncio.Event | None,
        deadline: float | None,
    ) -> None:
        seconds = delay_ms / 1000
        remaining = self._remaining(deadline)
        if remaining is not None and remaining < seconds:
            raise _Cancelled("deadline exceeded")
        if cancel_event is None:
            await self._sleep(seconds)
            return
        if cancel_event.is_set():
            raise _Cancelled("cancellation requested")
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise _Cancelled("cancellation requested")
