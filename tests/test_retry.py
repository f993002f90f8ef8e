import httpx
import pytest

from chunksub.exceptions import (
    BackendRejected,
    BackendUnavailable,
    OperationCancelled,
    ResultUnparseable,
    RetryExhausted,
)
from chunksub.retry import RetryExecutor, execute_with_retry, is_retryable
from chunksub.utils import CancellationToken


class Flaky:
    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def executor(sleeps):
    return RetryExecutor(max_attempts=3, base_delay=2.0, sleep=sleeps.append)


def test_success_on_first_attempt(executor, sleeps):
    operation = Flaky([])
    assert executor.execute_with_retry(operation) == "ok"
    assert operation.calls == 1
    assert sleeps == []


def test_transient_failures_are_retried_with_backoff(executor, sleeps):
    operation = Flaky([BackendUnavailable("503"), BackendUnavailable("429")])
    retries = []

    result = executor.execute_with_retry(operation, on_retry=lambda attempt, message: retries.append(attempt))

    assert result == "ok"
    assert operation.calls == 3
    assert sleeps == [2.0, 4.0]
    assert retries == [1, 2]


def test_gives_up_after_max_attempts(executor, sleeps):
    operation = Flaky([BackendUnavailable("down")] * 5)

    with pytest.raises(RetryExhausted) as excinfo:
        executor.execute_with_retry(operation)

    assert operation.calls == 3
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.cause, BackendUnavailable)
    assert sleeps == [2.0, 4.0]


def test_non_retryable_error_fails_immediately(executor, sleeps):
    operation = Flaky([BackendRejected("400 bad request", status_code=400)])

    with pytest.raises(RetryExhausted) as excinfo:
        executor.execute_with_retry(operation)

    assert operation.calls == 1
    assert excinfo.value.attempts == 1
    assert sleeps == []


def test_cancelled_before_first_attempt():
    token = CancellationToken()
    token.cancel()
    operation = Flaky([])

    with pytest.raises(OperationCancelled):
        RetryExecutor(sleep=lambda _: None).execute_with_retry(operation, cancel_token=token)
    assert operation.calls == 0


def test_cancel_during_backoff_stops_retrying():
    token = CancellationToken()
    operation = Flaky([BackendUnavailable("down")] * 3)
    executor = RetryExecutor(max_attempts=3, base_delay=30.0)

    with pytest.raises(OperationCancelled):
        executor.execute_with_retry(operation, on_retry=lambda attempt, message: token.cancel(),
                                    cancel_token=token)
    assert operation.calls == 1


def test_delay_doubles_per_attempt():
    executor = RetryExecutor(base_delay=2.0)
    assert [executor.delay_for(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]


def test_functional_helper():
    assert execute_with_retry(Flaky([BackendUnavailable("x")]), base_delay=0.0) == "ok"


class TestIsRetryable:
    def _status_error(self, status):
        request = httpx.Request("POST", "https://example.test/v1/audio/transcriptions")
        response = httpx.Response(status, request=request)
        return httpx.HTTPStatusError("failed", request=request, response=response)

    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_rate_limit_and_server_errors(self, status):
        assert is_retryable(self._status_error(status))

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_client_errors(self, status):
        assert not is_retryable(self._status_error(status))

    def test_network_and_timeouts(self):
        assert is_retryable(httpx.ConnectError("refused"))
        assert is_retryable(httpx.ReadTimeout("slow"))
        assert is_retryable(BackendUnavailable("x"))

    def test_parse_and_programming_errors(self):
        assert not is_retryable(ResultUnparseable("garbage"))
        assert not is_retryable(ValueError("bug"))
