"""Retry and timeout combinators for async operations.

Both wrappers are generic over the operation's result type so the HTML
fetcher and the embedding provider share one policy implementation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from linkvault.core.errors import (
    FetchErrorType,
    OperationTimeoutError,
    RETRIABLE_ERRORS,
    UpstreamError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        return self.initial_delay * (self.multiplier ** (attempt - 1))


DEFAULT_RETRY_POLICY = RetryPolicy()


def classify_transport_error(exc: BaseException) -> FetchErrorType | None:
    """Map an httpx transport exception to a FetchErrorType."""
    if isinstance(exc, httpx.TimeoutException):
        return FetchErrorType.TIMEOUT
    if isinstance(exc, httpx.ConnectError):
        return FetchErrorType.CONNECTION_ERROR
    if isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return FetchErrorType.CONNECTION_RESET
    return None


def is_retryable(exc: BaseException) -> bool:
    """Only timeouts, 5xx responses and connection resets are retried."""
    if isinstance(exc, (OperationTimeoutError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, UpstreamError):
        return exc.retriable
    error_type = classify_transport_error(exc)
    return error_type in RETRIABLE_ERRORS if error_type else False


async def with_timeout(
    operation: Awaitable[T],
    seconds: float,
    message: str | None = None,
) -> T:
    """Await an operation, cancelling it once ``seconds`` have passed."""
    try:
        return await asyncio.wait_for(operation, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(
            message or f"Operation timed out after {seconds:g}s", seconds
        ) from e


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    ``operation`` is a zero-argument factory so every attempt gets a fresh
    awaitable. Non-retryable errors are raised immediately; the last error
    is raised once attempts are exhausted.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= policy.max_attempts or not should_retry(e):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{label} failed (attempt {attempt}/{policy.max_attempts}): {e!r}; "
                f"retrying in {delay:g}s"
            )
            await sleep(delay)
            attempt += 1
