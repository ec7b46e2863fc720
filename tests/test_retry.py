"""Tests for retry classification and exponential backoff."""

import httpx
import pytest

from photoferry.errors import OperationCancelled, RemoteApiError
from photoferry.retry import (
    RetryPolicy,
    compute_delay,
    is_rate_limit_error,
    is_retryable_error,
    run_with_retry,
)


class Flaky:
    """Callable failing with the given errors before returning a value."""

    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


@pytest.mark.parametrize(
    "error, expected",
    [
        (RemoteApiError("rate limited", status_code=429), True),
        (RemoteApiError("server", status_code=503), True),
        (RemoteApiError("bad request", status_code=400), False),
        (RemoteApiError("forbidden", status_code=403), False),
        (httpx.ConnectTimeout("timed out"), True),
        (ConnectionError("connection reset by peer"), True),
        (RuntimeError("ECONNRESET while reading"), True),
        (RuntimeError("invalid_grant"), False),
        (OperationCancelled("stop"), False),
        (ValueError("something odd"), True),
    ],
)
def test_is_retryable_error(error, expected):
    assert is_retryable_error(error) is expected


def test_is_rate_limit_error():
    assert is_rate_limit_error(RemoteApiError("slow down", status_code=429))
    assert not is_rate_limit_error(RemoteApiError("server", status_code=500))
    assert not is_rate_limit_error(RuntimeError("nope"))


def test_compute_delay_is_capped_and_jittered():
    assert compute_delay(0, 0.3, 10.0, 2.0, rand=lambda: 0.0) == pytest.approx(0.3)
    assert compute_delay(2, 0.3, 10.0, 2.0, rand=lambda: 0.0) == pytest.approx(1.2)
    assert compute_delay(10, 0.3, 10.0, 2.0, rand=lambda: 0.0) == pytest.approx(10.0)
    # Jitter adds at most the capped delay again.
    assert compute_delay(10, 0.3, 10.0, 2.0, rand=lambda: 1.0) == pytest.approx(20.0)


def test_run_with_retry_recovers_from_transient_errors():
    operation = Flaky([RemoteApiError("server", status_code=503), httpx.ReadTimeout("timed out")])
    sleeps = []

    result = run_with_retry(operation, RetryPolicy(max_retries=3), sleep=sleeps.append)

    assert result == "ok"
    assert operation.calls == 3
    assert len(sleeps) == 2
    assert all(delay >= 0 for delay in sleeps)


def test_run_with_retry_does_not_retry_client_errors():
    operation = Flaky([RemoteApiError("bad request", status_code=400)])

    with pytest.raises(RemoteApiError) as exc_info:
        run_with_retry(operation, RetryPolicy(max_retries=3), sleep=lambda _: None)

    assert exc_info.value.status_code == 400
    assert operation.calls == 1


def test_run_with_retry_reraises_last_error_when_exhausted():
    errors = [RemoteApiError(f"server {i}", status_code=500) for i in range(5)]
    operation = Flaky(errors)

    with pytest.raises(RemoteApiError, match="server 2"):
        run_with_retry(operation, RetryPolicy(max_retries=2), sleep=lambda _: None)

    assert operation.calls == 3


def test_run_with_retry_never_retries_cancellation():
    operation = Flaky([OperationCancelled("stopped")])
    policy = RetryPolicy(max_retries=5, should_retry=lambda exc: True)

    with pytest.raises(OperationCancelled):
        run_with_retry(operation, policy, sleep=lambda _: None)

    assert operation.calls == 1


def test_on_retry_is_called_before_each_sleep():
    events = []
    operation = Flaky([RemoteApiError("rate limited", status_code=429)])
    policy = RetryPolicy(
        max_retries=2,
        initial_delay=0.5,
        max_delay=0.5,
        on_retry=lambda exc, attempt, delay: events.append(("retry", attempt, exc.status_code)),
    )

    run_with_retry(operation, policy, sleep=lambda delay: events.append(("sleep", delay)))

    assert events[0] == ("retry", 1, 429)
    assert events[1][0] == "sleep"
    assert 0.5 <= events[1][1] <= 1.0


def test_custom_classifier_limits_retries_to_rate_limits():
    policy = RetryPolicy(max_retries=3, should_retry=is_rate_limit_error)
    operation = Flaky([RemoteApiError("server", status_code=500)])

    with pytest.raises(RemoteApiError):
        run_with_retry(operation, policy, sleep=lambda _: None)

    assert operation.calls == 1


def test_policy_from_settings_accepts_overrides():
    policy = RetryPolicy.from_settings(max_retries=1)

    assert policy.max_retries == 1
    assert policy.initial_delay > 0
