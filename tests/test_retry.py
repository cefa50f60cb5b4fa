import random

import httpx
import pytest

from core.retry import RetryPolicy, async_retry, backoff_delay, is_transient, retry_async
from conftest import network_down, overloaded, rate_limited, rejected


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.mark.asyncio
async def test_retry_retries_and_succeeds():
    attempts = 0

    async def flaky():
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise overloaded()
        return "ok"

    sleep = SleepRecorder()
    result = await retry_async(flaky, policy=RetryPolicy(max_attempts=3, base_delay=0, jitter_max=0), sleep=sleep)

    assert result == "ok"
    assert attempts == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("max_attempts", [1, 2, 5])
async def test_always_transient_is_called_exactly_max_attempts(max_attempts):
    attempts = 0

    async def always_rate_limited():
        nonlocal attempts
        attempts += 1
        raise rate_limited()

    sleep = SleepRecorder()
    with pytest.raises(Exception) as exc_info:
        await retry_async(always_rate_limited, policy=RetryPolicy(max_attempts=max_attempts), sleep=sleep)

    assert exc_info.value.reason == "rate_limited"
    assert attempts == max_attempts
    assert len(sleep.delays) == max_attempts - 1


@pytest.mark.asyncio
async def test_terminal_error_is_not_retried():
    attempts = 0

    async def bad_request():
        nonlocal attempts
        attempts += 1
        raise rejected()

    sleep = SleepRecorder()
    with pytest.raises(Exception) as exc_info:
        await retry_async(bad_request, policy=RetryPolicy(max_attempts=4), sleep=sleep)

    assert exc_info.value.status_code == 400
    assert attempts == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_single_attempt_never_sleeps():
    sleep = SleepRecorder()

    async def down():
        raise network_down()

    with pytest.raises(Exception):
        await retry_async(down, policy=RetryPolicy(max_attempts=1, base_delay=10), sleep=sleep)

    assert sleep.delays == []


@pytest.mark.asyncio
async def test_on_retry_hook_receives_attempt_and_delay():
    seen = []
    attempts = 0

    async def flaky():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise overloaded()
        return "ok"

    policy = RetryPolicy(max_attempts=3, base_delay=0.5, jitter_max=0, on_retry=lambda a, d, e: seen.append((a, d)))
    await retry_async(flaky, policy=policy, sleep=SleepRecorder())

    assert seen == [(1, 0.5)]


@pytest.mark.parametrize("attempt", range(6))
def test_backoff_delay_stays_in_window(attempt):
    policy = RetryPolicy(base_delay=0.25, jitter_max=0.1)
    rng = random.Random(attempt)
    low = 0.25 * 2 ** attempt
    for _ in range(200):
        delay = backoff_delay(policy, attempt, rng)
        assert low <= delay < low + 0.1


def test_backoff_without_jitter_is_exact():
    policy = RetryPolicy(base_delay=1.0, jitter_max=0)
    assert [backoff_delay(policy, i) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]


def test_policy_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_transient_classification():
    assert is_transient(overloaded())
    assert is_transient(rate_limited())
    assert is_transient(network_down())
    assert is_transient(httpx.ConnectError("refused"))
    assert not is_transient(rejected())
    assert not is_transient(ValueError("nope"))


@pytest.mark.asyncio
async def test_async_retry_decorator():
    attempts = 0

    @async_retry(RetryPolicy(max_attempts=2, base_delay=0, jitter_max=0))
    async def fetch():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise httpx.ReadTimeout("slow")
        return "data"

    assert await fetch() == "data"
    assert attempts == 2


def test_async_retry_refuses_generators():
    with pytest.raises(TypeError):
        @async_retry()
        async def stream():
            yield "chunk"
