import pytest

from forward_tester.errors import AuthError, NetworkError, RateLimited
from forward_tester.retry import RetryPolicy, exponential_backoff, is_transient


def test_exponential_backoff_caps():
    delay = exponential_backoff(0.5, 3.0)
    assert [delay(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_is_transient():
    assert is_transient(NetworkError("boom"))
    assert is_transient(RateLimited("slow down"))
    assert not is_transient(AuthError("bad token", status=401))
    assert not is_transient(ValueError("nope"))


@pytest.mark.asyncio
async def test_run_retries_transient_then_succeeds(sleep_recorder):
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise NetworkError("503", status=503)
        return "ok"

    seen = []
    policy = RetryPolicy(max_attempts=4, backoff=exponential_backoff(1.0, 10.0), sleep=sleep_recorder)
    result = await policy.run(flaky, on_retry=lambda attempt, exc, delay: seen.append((attempt, delay)))

    assert result == "ok"
    assert len(calls) == 3
    assert seen == [(1, 1.0), (2, 2.0)]
    assert sleep_recorder.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_run_gives_up_after_max_attempts(sleep_recorder):
    attempts = []

    async def always_down():
        attempts.append(1)
        raise NetworkError("down")

    policy = RetryPolicy(max_attempts=3, sleep=sleep_recorder)
    with pytest.raises(NetworkError):
        await policy.run(always_down)
    assert len(attempts) == 3
    assert len(sleep_recorder.delays) == 2


@pytest.mark.asyncio
async def test_non_retryable_error_raises_immediately(sleep_recorder):
    attempts = []

    async def denied():
        attempts.append(1)
        raise AuthError("bad token", status=401)

    with pytest.raises(AuthError):
        await RetryPolicy(max_attempts=5, sleep=sleep_recorder).run(denied)
    assert attempts == [1]
    assert sleep_recorder.delays == []


@pytest.mark.asyncio
async def test_retry_after_is_honoured(sleep_recorder):
    results = [RateLimited("slow", retry_after=7.0)]

    async def throttled():
        if results:
            raise results.pop()
        return 1

    policy = RetryPolicy(max_attempts=2, backoff=exponential_backoff(0.1, 1.0), sleep=sleep_recorder)
    assert await policy.run(throttled) == 1
    assert sleep_recorder.delays == [7.0]


@pytest.mark.asyncio
async def test_async_on_retry_is_awaited(sleep_recorder):
    hooks = []
    outcomes = [NetworkError("x")]

    async def fn():
        if outcomes:
            raise outcomes.pop()
        return "done"

    async def hook(attempt, exc, delay):
        hooks.append(attempt)

    assert await RetryPolicy(max_attempts=2, sleep=sleep_recorder).run(fn, on_retry=hook) == "done"
    assert hooks == [1]
