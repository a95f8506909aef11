"""Tests for the retry and timeout combinators."""

import asyncio

import httpx
import pytest

from linkvault.core.errors import (
    FetchErrorType,
    OperationTimeoutError,
    ParseError,
    UpstreamError,
)
from linkvault.core.resilience import (
    RetryPolicy,
    classify_transport_error,
    is_retryable,
    with_retry,
    with_timeout,
)


class FlakyOperation:
    """Fails with the given errors in order, then returns "ok"."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestRetryPolicy:
    def test_exponential_delays(self):
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


class TestWithRetry:
    """Tests for with_retry."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        operation = FlakyOperation(OperationTimeoutError("slow"), UpstreamError("busy", status=503))
        sleep = RecordingSleep()

        result = await with_retry(operation, RetryPolicy(), sleep=sleep)

        assert result == "ok"
        assert operation.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_raises_immediately(self):
        operation = FlakyOperation(UpstreamError("gone", status=404))
        sleep = RecordingSleep()

        with pytest.raises(UpstreamError, match="gone"):
            await with_retry(operation, RetryPolicy(), sleep=sleep)

        assert operation.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_raises_last_error_when_attempts_exhausted(self):
        operation = FlakyOperation(
            UpstreamError("first", status=500),
            UpstreamError("second", status=502),
            UpstreamError("third", status=503),
        )
        sleep = RecordingSleep()

        with pytest.raises(UpstreamError, match="third"):
            await with_retry(operation, RetryPolicy(max_attempts=3), sleep=sleep)

        assert operation.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_custom_should_retry(self):
        operation = FlakyOperation(ValueError("odd"))
        result = await with_retry(
            operation,
            RetryPolicy(initial_delay=0),
            should_retry=lambda e: isinstance(e, ValueError),
        )
        assert result == "ok"
        assert operation.calls == 2


class TestIsRetryable:
    @pytest.mark.parametrize(
        "exc,expected",
        [
            (OperationTimeoutError("slow"), True),
            (UpstreamError("server", status=503), True),
            (UpstreamError("client", status=404), False),
            (UpstreamError("reset", error_type=FetchErrorType.CONNECTION_RESET), True),
            (httpx.ReadTimeout("slow"), True),
            (httpx.ReadError("reset"), True),
            (httpx.ConnectError("refused"), False),
            (ParseError("bad html"), False),
            (ValueError("nope"), False),
        ],
    )
    def test_classification(self, exc, expected):
        assert is_retryable(exc) is expected

    def test_transport_error_classes(self):
        assert classify_transport_error(httpx.ConnectTimeout("t")) == FetchErrorType.TIMEOUT
        assert classify_transport_error(httpx.ConnectError("c")) == FetchErrorType.CONNECTION_ERROR
        assert classify_transport_error(httpx.RemoteProtocolError("r")) == FetchErrorType.CONNECTION_RESET
        assert classify_transport_error(RuntimeError("x")) is None


class TestWithTimeout:
    @pytest.mark.asyncio
    async def test_returns_result_within_budget(self):
        async def quick():
            return 42

        assert await with_timeout(quick(), 1.0) == 42

    @pytest.mark.asyncio
    async def test_raises_operation_timeout(self):
        with pytest.raises(OperationTimeoutError) as exc_info:
            await with_timeout(asyncio.sleep(1), 0.01, "too slow")

        assert str(exc_info.value) == "too slow"
        assert exc_info.value.seconds == 0.01
        assert isinstance(exc_info.value, TimeoutError)
