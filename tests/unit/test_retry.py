"""
Unit tests for the shared retry policy.
"""
import pytest

from repositioner.exceptions import RpcError, ValidationError
from repositioner.utils.retry import (
    RetryPolicy,
    exponential_backoff,
    fixed_backoff,
    retry_on,
    retry_on_transient_errors,
)


class _Flaky:
    """Fails ``failures`` times with ``error``, then returns ``value``."""

    def __init__(self, failures, error, value="ok"):
        self.failures = failures
        self.error = error
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


def test_exponential_backoff_doubles_and_caps():
    backoff = exponential_backoff(base_delay=1.0, max_delay=5.0)
    assert [backoff(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_fixed_backoff_is_constant():
    backoff = fixed_backoff(0.25)
    assert {backoff(n) for n in range(1, 5)} == {0.25}


def test_policy_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


@pytest.mark.asyncio
async def test_succeeds_after_transient_failures(no_sleep):
    fn = _Flaky(2, RpcError("node busy"))
    policy = RetryPolicy(max_attempts=3, backoff=exponential_backoff(1.0, 5.0), sleep=no_sleep)

    assert await policy.run(fn) == "ok"
    assert fn.calls == 3
    assert no_sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_exhausted_budget_reraises_last_error(no_sleep):
    """Exactly max_attempts calls, then the final error unchanged."""
    error = RpcError("still down")
    fn = _Flaky(10, error)
    policy = RetryPolicy(max_attempts=3, sleep=no_sleep)

    with pytest.raises(RpcError) as exc_info:
        await policy.run(fn)

    assert exc_info.value is error
    assert fn.calls == 3
    assert len(no_sleep.delays) == 2


@pytest.mark.asyncio
async def test_non_retryable_error_is_not_retried(no_sleep):
    fn = _Flaky(1, ValidationError("bad input"))
    policy = RetryPolicy(max_attempts=5, retryable=retry_on(RpcError), sleep=no_sleep)

    with pytest.raises(ValidationError):
        await policy.run(fn)

    assert fn.calls == 1
    assert no_sleep.delays == []


@pytest.mark.asyncio
async def test_on_retry_callback_sees_each_failed_attempt(no_sleep):
    seen = []
    fn = _Flaky(2, RpcError("flaky"))
    policy = RetryPolicy(max_attempts=3, sleep=no_sleep)

    await policy.run(fn, on_retry=lambda attempt, exc: seen.append((attempt, exc.message)))

    assert seen == [(1, "flaky"), (2, "flaky")]


@pytest.mark.asyncio
async def test_decorator_skips_programming_errors():
    calls = []

    @retry_on_transient_errors(max_retries=3, base_delay=0.0)
    async def broken():
        calls.append(1)
        raise TypeError("bug")

    with pytest.raises(TypeError):
        await broken()
    assert len(calls) == 1
