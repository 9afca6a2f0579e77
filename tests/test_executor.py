"""Tests for the throttling executor: retry accounting, classification, cancellation."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import MagicMock, patch

import httpx
import pytest

from event_manager.error_handling import ErrorReporter
from event_manager.errors import (
    AuthenticationFault,
    ErrorCategory,
    NetworkFault,
    RemoteAPIFault,
    ValidationFault,
)
from event_manager.throttling.backoff import RetryPolicy
from event_manager.throttling.executor import OperationContext, ThrottlingExecutor
from event_manager.throttling.rate_limit import RateLimitInfo, ThrottleStatus

CONTEXT = OperationContext(shop_domain="test-shop.myshopify.com", operation_name="getProduct")


class FlakyOperation:
    """Fails with the queued exceptions, then returns ``value``."""

    def __init__(self, *failures: BaseException, value=None):
        self.failures = list(failures)
        self.value = value if value is not None else {"data": {"ok": True}}
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.value


class AlwaysFails:
    def __init__(self, error: BaseException):
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        raise self.error


# ── Retry accounting ──────────────────────────────────────────────────────


class TestRetryAccounting:
    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, fast_policy, recording_sleep):
        cost = {
            "requestedQueryCost": 5,
            "actualQueryCost": 4,
            "throttleStatus": {"maximumAvailable": 100, "currentlyAvailable": 96, "restoreRate": 50},
        }
        operation = FlakyOperation(value={"data": {}, "extensions": {"cost": cost}})
        executor = ThrottlingExecutor(fast_policy, sleep=recording_sleep)

        result = await executor.execute(operation, CONTEXT)

        assert result.success is True
        assert result.value == operation.value
        assert result.retry_count == 0
        assert result.total_delay_ms == 0
        assert result.rate_limit_info.actual_cost == 4
        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_retryable_failure_exhausts_budget(self, fast_policy, recording_sleep):
        """maxRetries=3 -> exactly 4 attempts, retryCount 3."""
        operation = AlwaysFails(NetworkFault("connection reset"))
        executor = ThrottlingExecutor(fast_policy, sleep=recording_sleep)

        result = await executor.execute(operation, CONTEXT)

        assert operation.calls == 4
        assert result.success is False
        assert result.retry_count == 3
        assert result.total_delay_ms == 1 + 2 + 4
        assert recording_sleep.calls == [0.001, 0.002, 0.004]
        assert isinstance(result.error, NetworkFault)

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, fast_policy, recording_sleep):
        operation = FlakyOperation(
            RemoteAPIFault("HTTP 503", status_code=503),
            RemoteAPIFault("HTTP 429", status_code=429),
        )
        executor = ThrottlingExecutor(fast_policy, sleep=recording_sleep)

        result = await executor.execute(operation, CONTEXT)

        assert result.success is True
        assert result.retry_count == 2
        assert result.total_delay_ms == 3
        assert operation.calls == 3

    @pytest.mark.asyncio
    async def test_zero_retries_means_single_attempt(self, recording_sleep):
        policy = RetryPolicy(max_retries=0, base_delay_ms=1, max_delay_ms=1, jitter=False)
        operation = AlwaysFails(NetworkFault("down"))
        executor = ThrottlingExecutor(policy, sleep=recording_sleep)

        result = await executor.execute(operation, CONTEXT)

        assert operation.calls == 1
        assert result.retry_count == 0
        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_per_call_policy_overrides_default(self, recording_sleep):
        executor = ThrottlingExecutor(RetryPolicy(max_retries=5), sleep=recording_sleep)
        operation = AlwaysFails(NetworkFault("down"))
        policy = RetryPolicy(max_retries=1, base_delay_ms=1, max_delay_ms=1, jitter=False)

        result = await executor.execute(operation, CONTEXT, policy)

        assert operation.calls == 2
        assert result.retry_count == 1


# ── Retry classification ──────────────────────────────────────────────────


class TestRetryDecisions:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            AuthenticationFault("token revoked"),
            ValidationFault("bad variables"),
            RemoteAPIFault("HTTP 400: bad request", status_code=400),
            RemoteAPIFault("HTTP 404", status_code=404),
            Exception("boom"),
        ],
    )
    async def test_non_retryable_returns_immediately(self, error, fast_policy, recording_sleep):
        operation = AlwaysFails(error)
        executor = ThrottlingExecutor(fast_policy, sleep=recording_sleep)

        result = await executor.execute(operation, CONTEXT)

        assert operation.calls == 1
        assert result.success is False
        assert result.retry_count == 0
        assert result.total_delay_ms == 0
        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_auth_fault_with_retryable_status_still_not_retried(self, fast_policy, recording_sleep):
        operation = AlwaysFails(AuthenticationFault("nope", status_code=503))
        result = await ThrottlingExecutor(fast_policy, sleep=recording_sleep).execute(operation, CONTEXT)
        assert operation.calls == 1
        assert result.error.category is ErrorCategory.AUTHENTICATION

    @pytest.mark.asyncio
    async def test_httpx_connect_error_is_retried_as_network_fault(self, fast_policy, recording_sleep):
        operation = FlakyOperation(httpx.ConnectError("refused"))
        result = await ThrottlingExecutor(fast_policy, sleep=recording_sleep).execute(operation, CONTEXT)
        assert result.success is True
        assert result.retry_count == 1

    @pytest.mark.asyncio
    async def test_plain_exception_with_throttle_message_is_retried(self, fast_policy, recording_sleep):
        operation = FlakyOperation(RuntimeError("Service Unavailable, try later"))
        result = await ThrottlingExecutor(fast_policy, sleep=recording_sleep).execute(operation, CONTEXT)
        assert result.success is True
        assert result.retry_count == 1

    @pytest.mark.asyncio
    async def test_custom_retryable_status_codes(self, recording_sleep):
        policy = RetryPolicy(
            max_retries=2, base_delay_ms=1, max_delay_ms=1, jitter=False,
            retryable_status_codes={409},
        )
        operation = AlwaysFails(RemoteAPIFault("conflict", status_code=409))
        result = await ThrottlingExecutor(policy, sleep=recording_sleep).execute(operation, CONTEXT)
        assert operation.calls == 3

        operation = AlwaysFails(RemoteAPIFault("busy", status_code=503))
        result = await ThrottlingExecutor(policy, sleep=recording_sleep).execute(operation, CONTEXT)
        assert operation.calls == 1
        assert result.retry_count == 0

    @pytest.mark.asyncio
    async def test_throttle_state_raises_delay(self, recording_sleep):
        policy = RetryPolicy(max_retries=1, base_delay_ms=10, max_delay_ms=5000, jitter=False)
        info = RateLimitInfo(
            requested_cost=100,
            actual_cost=0,
            throttle_status=ThrottleStatus(1000, 20, 50),
        )
        operation = FlakyOperation(RemoteAPIFault("Throttled", status_code=429, rate_limit_info=info))

        result = await ThrottlingExecutor(policy, sleep=recording_sleep).execute(operation, CONTEXT)

        assert result.success is True
        assert result.total_delay_ms == 1600
        assert recording_sleep.calls == [1.6]

    @pytest.mark.asyncio
    async def test_throttle_delay_capped_at_max(self, recording_sleep):
        policy = RetryPolicy(max_retries=1, base_delay_ms=10, max_delay_ms=100, jitter=False)
        info = RateLimitInfo(1000, 0, ThrottleStatus(1000, 0, 1))
        operation = FlakyOperation(RemoteAPIFault("Throttled", status_code=429, rate_limit_info=info))

        result = await ThrottlingExecutor(policy, sleep=recording_sleep).execute(operation, CONTEXT)

        assert result.total_delay_ms == 100

    @pytest.mark.asyncio
    async def test_retry_after_raises_delay(self, recording_sleep):
        policy = RetryPolicy(max_retries=1, base_delay_ms=10, max_delay_ms=30_000, jitter=False)
        operation = FlakyOperation(RemoteAPIFault("HTTP 429", status_code=429, retry_after_ms=20_000))

        result = await ThrottlingExecutor(policy, sleep=recording_sleep).execute(operation, CONTEXT)

        assert result.success is True
        assert result.total_delay_ms == 20_000
        assert recording_sleep.calls == [20.0]

    @pytest.mark.asyncio
    async def test_retry_after_capped_at_max(self, recording_sleep):
        policy = RetryPolicy(max_retries=1, base_delay_ms=10, max_delay_ms=5000, jitter=False)
        operation = FlakyOperation(RemoteAPIFault("HTTP 429", status_code=429, retry_after_ms=20_000))

        result = await ThrottlingExecutor(policy, sleep=recording_sleep).execute(operation, CONTEXT)

        assert recording_sleep.calls == [5.0]
        assert result.total_delay_ms == 5000

    @pytest.mark.asyncio
    async def test_short_retry_after_keeps_backoff(self, recording_sleep):
        policy = RetryPolicy(max_retries=1, base_delay_ms=100, max_delay_ms=5000, jitter=False)
        operation = FlakyOperation(RemoteAPIFault("HTTP 503", status_code=503, retry_after_ms=10))

        await ThrottlingExecutor(policy, sleep=recording_sleep).execute(operation, CONTEXT)

        assert recording_sleep.calls == [0.1]


# ── Cancellation and deadlines ────────────────────────────────────────────


async def _hang():
    await asyncio.sleep(30)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_already_cancelled_never_runs_operation(self, fast_policy):
        event = asyncio.Event()
        event.set()
        operation = FlakyOperation()

        result = await ThrottlingExecutor(fast_policy).execute(operation, CONTEXT, cancel_event=event)

        assert operation.calls == 0
        assert result.success is False
        assert isinstance(result.error, NetworkFault)
        assert result.error.cancelled is True

    @pytest.mark.asyncio
    async def test_cancel_during_operation(self, fast_policy):
        event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, event.set)
        started = time.monotonic()

        result = await ThrottlingExecutor(fast_policy).execute(_hang, CONTEXT, cancel_event=event)

        assert time.monotonic() - started < 5
        assert result.success is False
        assert result.error.category is ErrorCategory.NETWORK
        assert result.retry_count == 0

    @pytest.mark.asyncio
    async def test_deadline_during_operation(self, fast_policy):
        deadline = asyncio.get_running_loop().time() + 0.05

        result = await ThrottlingExecutor(fast_policy).execute(_hang, CONTEXT, deadline=deadline)

        assert result.success is False
        assert result.error.cancelled is True
        assert "deadline" in result.error.message

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_is_not_retried(self):
        policy = RetryPolicy(max_retries=3, base_delay_ms=10_000, max_delay_ms=10_000, jitter=False)
        operation = AlwaysFails(NetworkFault("down"))
        event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, event.set)
        started = time.monotonic()

        result = await ThrottlingExecutor(policy).execute(operation, CONTEXT, cancel_event=event)

        assert time.monotonic() - started < 5
        assert operation.calls == 1
        assert result.retry_count == 0
        assert result.total_delay_ms == 0
        assert result.error.cancelled is True

    @pytest.mark.asyncio
    async def test_deadline_shorter_than_backoff_gives_up_immediately(self, recording_sleep):
        policy = RetryPolicy(max_retries=3, base_delay_ms=10_000, max_delay_ms=10_000, jitter=False)
        operation = AlwaysFails(NetworkFault("down"))
        deadline = asyncio.get_running_loop().time() + 1

        result = await ThrottlingExecutor(policy, sleep=recording_sleep).execute(
            operation, CONTEXT, deadline=deadline
        )

        assert operation.calls == 1
        assert recording_sleep.calls == []
        assert result.error.cancelled is True


# ── Reporting and isolation ───────────────────────────────────────────────


class TestReportingAndIsolation:
    @pytest.mark.asyncio
    async def test_exhausted_failure_is_reported(self, fast_policy, recording_sleep):
        reporter = MagicMock()
        executor = ThrottlingExecutor(fast_policy, reporter=reporter, sleep=recording_sleep)

        await executor.execute(AlwaysFails(NetworkFault("down")), CONTEXT)

        reporter.report_graphql_error.assert_called_once()
        args, _ = reporter.report_graphql_error.call_args
        assert args[1:3] == ("getProduct", "test-shop.myshopify.com")
        assert args[3]["retry_count"] == 3
        assert args[3]["total_delay_ms"] == 7

    @pytest.mark.asyncio
    async def test_extra_context_cannot_break_reporting(self, recording_sleep):
        reporter = ErrorReporter()
        context = OperationContext(
            shop_domain="test-shop.myshopify.com",
            operation_name="getProduct",
            extra={"retry_count": 99, "operation": "other", "shop_domain": "other", "topic": "orders/create"},
        )
        executor = ThrottlingExecutor(RetryPolicy(max_retries=0), reporter=reporter, sleep=recording_sleep)

        with patch.object(reporter, "report", wraps=reporter.report) as report:
            result = await executor.execute(AlwaysFails(NetworkFault("down")), context)

        assert result.success is False
        assert isinstance(result.error, NetworkFault)
        reported = report.call_args.args[1]
        assert reported["retry_count"] == 0
        assert reported["operation"] == "getProduct"
        assert reported["shop_domain"] == "test-shop.myshopify.com"
        assert reported["topic"] == "orders/create"

    @pytest.mark.asyncio
    async def test_success_is_not_reported(self, fast_policy, recording_sleep):
        reporter = MagicMock()
        executor = ThrottlingExecutor(fast_policy, reporter=reporter, sleep=recording_sleep)

        await executor.execute(FlakyOperation(), CONTEXT)

        reporter.report_graphql_error.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_executions_are_independent(self, fast_policy):
        executor = ThrottlingExecutor(fast_policy)
        failing = AlwaysFails(NetworkFault("down"))
        flaky = FlakyOperation(NetworkFault("blip"))

        first, second = await asyncio.gather(
            executor.execute(failing, CONTEXT),
            executor.execute(flaky, CONTEXT),
        )

        assert first.retry_count == 3 and first.success is False
        assert second.retry_count == 1 and second.success is True
