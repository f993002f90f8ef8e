"""Retry with exponential backoff for fallible backend calls."""

import logging
import time
from typing import Callable, Optional, TypeVar

import httpx

from .exceptions import OperationCancelled, RetryExhausted, TransientBackendError
from .models import RetryContext
from .utils import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 2.0  # seconds

RetryCallback = Callable[[int, str], None]


def is_retryable(error: BaseException) -> bool:
    """
    Classifies an exception as transient.

    Network-unreachable, timeouts, rate limiting and server errors are
    retryable; everything else (bad requests, auth problems, parse errors,
    programming errors) is not.
    """
    if isinstance(error, TransientBackendError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    return False


def describe_error(error: BaseException) -> str:
    if isinstance(error, httpx.TimeoutException):
        return "request timed out"
    if isinstance(error, httpx.HTTPStatusError):
        return f"HTTP {error.response.status_code}"
    return str(error) or type(error).__name__


class RetryExecutor:
    """
    Runs an operation, retrying transient failures with exponential backoff.

    The delay before attempt ``n + 1`` is ``base_delay * 2 ** (n - 1)``
    seconds (2s, 4s, 8s ... with the defaults); there is no jitter. Sleeps go
    through the cancellation token, so a cancel request ends the wait at
    once.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if base_delay < 0:
            raise ValueError("base_delay cannot be negative")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows failed attempt ``attempt`` (1-based)."""
        return self.base_delay * (2 ** (attempt - 1))

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        retryable: Callable[[BaseException], bool] = is_retryable,
        on_retry: Optional[RetryCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        description: str = "operation",
    ) -> T:
        """
        Calls ``operation`` until it succeeds or the policy gives up.

        Args:
            operation: Zero-argument callable performing one attempt.
            retryable: Predicate deciding whether a failure is worth retrying.
            on_retry: Called with ``(attempt, message)`` before each backoff sleep.
            cancel_token: Checked before each attempt and during each sleep.
            description: Used in log messages.

        Returns:
            Whatever the successful attempt returned.

        Raises:
            RetryExhausted: The last failure was not retryable, or attempts ran out.
            OperationCancelled: Cancellation was requested.
        """
        context = RetryContext()
        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled(description)
            context.attempt += 1
            try:
                return operation()
            except OperationCancelled:
                raise
            except Exception as e:
                context.last_error = e
                if not retryable(e):
                    logger.warning(f"{description} failed with a non-retryable error: {describe_error(e)}")
                    raise RetryExhausted(e, context.attempt) from e
                if context.attempt >= self.max_attempts:
                    logger.error(f"{description} failed after {context.attempt} attempts: {describe_error(e)}")
                    raise RetryExhausted(e, context.attempt) from e

                context.next_delay = self.delay_for(context.attempt)
                message = (f"Attempt {context.attempt}/{self.max_attempts} failed ({describe_error(e)}); "
                           f"retrying in {context.next_delay:.0f}s")
                logger.warning(f"{description}: {message}")
                if on_retry is not None:
                    on_retry(context.attempt, message)
                self._wait(context.next_delay, cancel_token, description)

    def _wait(self, delay: float, cancel_token: Optional[CancellationToken], description: str) -> None:
        if self._sleep is not None:
            self._sleep(delay)
            if cancel_token is not None:
                cancel_token.raise_if_cancelled(description)
            return
        if cancel_token is None:
            time.sleep(delay)
            return
        if cancel_token.wait(delay):
            raise OperationCancelled(f"{description} cancelled while waiting to retry")


def execute_with_retry(
    operation: Callable[[], T],
    retryable: Callable[[BaseException], bool] = is_retryable,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    on_retry: Optional[RetryCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> T:
    """Functional shortcut for ``RetryExecutor(...).execute_with_retry(...)``."""
    executor = RetryExecutor(max_attempts=max_attempts, base_delay=base_delay)
    return executor.execute_with_retry(operation, retryable, on_retry=on_retry, cancel_token=cancel_token)
