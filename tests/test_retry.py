"""Bounded exponential backoff."""

import pytest

from naffles_bot.bot.pipeline.retry import RetryExecutor
from naffles_bot.bot.services.exceptions import APIError
from naffles_bot.bot.services.platform_service import is_retryable


class Recorder:
    def __init__(self):
        self.delays = []
        self.now = 0.0

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)
        self.now += delay

    def clock(self) -> float:
        return self.now


class Flaky:
    def __init__(self, failures: int, error: Exception):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.fixture
def recorder():
    return Recorder()


def executor(recorder, **kwargs):
    return RetryExecutor(sleep=recorder.sleep, clock=recorder.clock, **kwargs)


async def test_success_needs_no_retry(recorder):
    operation = Flaky(0, RuntimeError())
    assert await executor(recorder).execute(operation, idempotent=True) == "ok"
    assert operation.calls == 1
    assert recorder.delays == []


async def test_delays_grow_exponentially(recorder):
    operation = Flaky(3, RuntimeError("down"))
    result = await executor(recorder).execute(operation, idempotent=True)
    assert result == "ok"
    assert operation.calls == 4
    assert recorder.delays == [1.0, 2.0, 4.0]


async def test_gives_up_after_max_retries(recorder):
    operation = Flaky(10, RuntimeError("down"))
    with pytest.raises(RuntimeError):
        await executor(recorder, max_retries=3).execute(operation, idempotent=True)
    assert operation.calls == 4


async def test_delay_is_capped(recorder):
    operation = Flaky(4, RuntimeError("down"))
    await executor(recorder, max_retries=4, base_delay=10, max_delay=15).execute(operation, idempotent=True)
    assert recorder.delays == [10.0, 15.0, 15.0, 15.0]


async def test_non_idempotent_operation_runs_once(recorder):
    operation = Flaky(1, RuntimeError("down"))
    with pytest.raises(RuntimeError):
        await executor(recorder).execute(operation, idempotent=False)
    assert operation.calls == 1


async def test_retry_predicate_stops_early(recorder):
    operation = Flaky(1, APIError("bad input", status_code=400))
    with pytest.raises(APIError):
        await executor(recorder).execute(operation, idempotent=True, retry_on=is_retryable)
    assert operation.calls == 1


async def test_retryable_api_errors_are_retried(recorder):
    operation = Flaky(2, APIError("unavailable", status_code=503))
    assert await executor(recorder).execute(operation, idempotent=True, retry_on=is_retryable) == "ok"
    assert operation.calls == 3


async def test_budget_stops_retrying(recorder):
    operation = Flaky(10, RuntimeError("down"))
    with pytest.raises(RuntimeError):
        await executor(recorder, max_retries=10, budget=5.0).execute(operation, idempotent=True)
    # 1 + 2 = 3s slept; the next 4s delay would pass the budget
    assert recorder.delays == [1.0, 2.0]


def test_jitter_stays_within_cap():
    retry = RetryExecutor(base_delay=1, max_delay=2, jitter=5)
    for attempt in range(5):
        assert retry.calculate_delay(attempt) <= 2


def test_executor_from_settings_carries_the_budget(settings):
    tuned = settings.model_copy(update={"retry_max_retries": 5, "retry_base_delay": 0.5, "retry_budget_seconds": 12.0})
    retry = RetryExecutor.from_settings(tuned)
    assert (retry.max_retries, retry.base_delay, retry.budget) == (5, 0.5, 12.0)


async def test_settings_budget_bounds_the_retries(settings, recorder):
    tuned = settings.model_copy(update={"retry_max_retries": 10, "retry_budget_seconds": 5.0})
    retry = RetryExecutor.from_settings(tuned, sleep=recorder.sleep, clock=recorder.clock)
    operation = Flaky(10, RuntimeError("down"))
    with pytest.raises(RuntimeError):
        await retry.execute(operation, idempotent=True)
    assert operation.calls == 3
