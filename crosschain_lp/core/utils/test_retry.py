from __future__ import annotations

import httpx
import pytest

from crosschain_lp.core.errors import (
    InsufficientFundsError,
    NetworkError,
    RateLimitError,
)
from crosschain_lp.core.utils.retry import (
    READ_POLICY,
    WRITE_POLICY,
    ErrorClass,
    RetryPolicy,
    Throttle,
    classify_error,
    compute_delay_s,
    execute,
    exponential_backoff_s,
)


class _Sleeper:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


def _flaky(failures: list[Exception], result: str = "ok"):
    calls = {"n": 0}

    async def op() -> str:
        calls["n"] += 1
        if failures:
            raise failures.pop(0)
        return result

    return op, calls


def test_exponential_backoff_caps_at_max_delay():
    assert exponential_backoff_s(0, base_delay_s=1.0) == 1.0
    assert exponential_backoff_s(3, base_delay_s=1.0) == 8.0
    assert exponential_backoff_s(10, base_delay_s=1.0, max_delay_s=30.0) == 30.0


def test_classify_error_taxonomy_and_markers():
    assert classify_error(NetworkError("x")) == ErrorClass.RETRYABLE
    assert classify_error(InsufficientFundsError("x")) == ErrorClass.FATAL
    assert classify_error(httpx.ConnectTimeout("slow")) == ErrorClass.RETRYABLE
    assert classify_error(TimeoutError()) == ErrorClass.RETRYABLE
    assert classify_error(ValueError("429 Too Many Requests")) == ErrorClass.RETRYABLE
    assert (
        classify_error(ValueError("insufficient funds for gas * price + value"))
        == ErrorClass.FATAL
    )
    assert classify_error(ValueError("something odd")) == ErrorClass.UNCLASSIFIED


def test_classify_error_http_status():
    request = httpx.Request("GET", "https://li.quest/v1/quote")
    throttled = httpx.HTTPStatusError(
        "429", request=request, response=httpx.Response(429, request=request)
    )
    bad = httpx.HTTPStatusError(
        "400", request=request, response=httpx.Response(400, request=request)
    )
    assert classify_error(throttled) == ErrorClass.RETRYABLE
    assert classify_error(bad) == ErrorClass.FATAL


def test_retry_after_takes_precedence_over_backoff():
    policy = RetryPolicy(base_delay_s=1.0, max_delay_s=2.0, jitter_ratio=0.0)
    delay = compute_delay_s(0, RateLimitError(retry_after=7.0), policy)
    assert delay == 7.0


def test_jitter_stays_within_cap():
    policy = RetryPolicy(base_delay_s=1.0, max_delay_s=4.0, jitter_ratio=0.5)
    for attempt in range(6):
        delay = compute_delay_s(attempt, NetworkError("x"), policy)
        assert 0 < delay <= 4.0


@pytest.mark.asyncio
async def test_execute_retries_retryable_then_succeeds():
    sleeper = _Sleeper()
    op, calls = _flaky([NetworkError("reset"), NetworkError("reset")])
    policy = RetryPolicy(max_attempts=3, base_delay_s=0.5, jitter_ratio=0.0)

    result = await execute(op, policy, sleep=sleeper)

    assert result == "ok"
    assert calls["n"] == 3
    assert sleeper.calls == [0.5, 1.0]


@pytest.mark.asyncio
async def test_execute_fatal_propagates_immediately():
    sleeper = _Sleeper()
    op, calls = _flaky([InsufficientFundsError("broke")])

    with pytest.raises(InsufficientFundsError):
        await execute(op, READ_POLICY, sleep=sleeper)

    assert calls["n"] == 1
    assert sleeper.calls == []


@pytest.mark.asyncio
async def test_execute_reraises_last_error_unchanged():
    sleeper = _Sleeper()
    last = NetworkError("third")
    op, calls = _flaky([NetworkError("first"), NetworkError("second"), last])

    with pytest.raises(NetworkError) as excinfo:
        await execute(op, RetryPolicy(max_attempts=3), sleep=sleeper)

    assert excinfo.value is last
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_execute_honours_rate_limit_retry_after():
    sleeper = _Sleeper()
    op, _ = _flaky([RateLimitError(retry_after=3.0)])

    await execute(op, RetryPolicy(base_delay_s=0.1), sleep=sleeper)

    assert sleeper.calls == [3.0]


@pytest.mark.asyncio
async def test_write_policy_does_not_retry_unclassified():
    sleeper = _Sleeper()
    op, calls = _flaky([ValueError("weird node response")])

    with pytest.raises(ValueError):
        await execute(op, WRITE_POLICY, sleep=sleeper)
    assert calls["n"] == 1

    op, calls = _flaky([ValueError("weird node response")])
    assert await execute(op, READ_POLICY, sleep=sleeper) == "ok"
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_throttle_spaces_calls_per_endpoint():
    now = {"t": 100.0}
    slept: list[float] = []

    async def fake_sleep(delay: float) -> None:
        slept.append(delay)
        now["t"] += delay

    throttle = Throttle(
        {"bridge": 1.0}, clock=lambda: now["t"], sleep=fake_sleep
    )

    await throttle.wait("bridge")
    now["t"] += 0.25
    await throttle.wait("bridge")
    await throttle.wait("rpc")

    assert slept == [pytest.approx(0.75)]
