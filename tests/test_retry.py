from __future__ import annotations

import asyncio

import pytest

from newsroom.core.retry import BackoffPolicy, RetryExhaustedError, with_retry


class _Sleeper:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def test_backoff_policy_doubles_and_caps():
    policy = BackoffPolicy(base_s=1.0, max_s=8.0, jitter_fraction=0.0)

    assert [policy.delay_for(n) for n in range(5)] == [1.0, 2.0, 4.0, 8.0, 8.0]


def test_backoff_policy_jitter_is_bounded():
    policy = BackoffPolicy(base_s=2.0, max_s=8.0, jitter_fraction=0.1)

    for _ in range(20):
        delay = policy.delay_for(1)
        assert 4.0 <= delay <= 4.4


@pytest.mark.asyncio
async def test_with_retry_returns_after_transient_failures():
    attempts = {"n": 0}
    sleeper = _Sleeper()

    async def flaky():
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise ConnectionError("nope")
        return "ok"

    result = await with_retry(
        flaky,
        max_attempts=3,
        backoff=BackoffPolicy(base_s=1.0, max_s=8.0, jitter_fraction=0.0),
        sleep=sleeper,
    )

    assert result == "ok"
    assert attempts["n"] == 3
    assert sleeper.calls == [1.0, 2.0]


@pytest.mark.asyncio
async def test_with_retry_exhaustion_wraps_last_error():
    sleeper = _Sleeper()

    async def always_fails():
        raise TimeoutError("slow upstream")

    with pytest.raises(RetryExhaustedError) as info:
        await with_retry(always_fails, max_attempts=3, sleep=sleeper)

    assert info.value.attempts == 3
    assert isinstance(info.value.last_error, TimeoutError)
    assert len(sleeper.calls) == 2


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_unlisted_errors():
    attempts = {"n": 0}
    sleeper = _Sleeper()

    async def bad_input():
        attempts["n"] += 1
        raise ValueError("permanent")

    with pytest.raises(ValueError):
        await with_retry(
            bad_input,
            max_attempts=5,
            retry_on=lambda exc: isinstance(exc, ConnectionError),
            sleep=sleeper,
        )

    assert attempts["n"] == 1
    assert sleeper.calls == []


@pytest.mark.asyncio
async def test_with_retry_propagates_cancellation():
    async def cancelled():
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await with_retry(cancelled, max_attempts=3, sleep=_Sleeper())
