"""Tests for rate-limited execution of mutation calls."""

from __future__ import annotations

import asyncio

import pytest
from api_mock import api_error

from tenantsync.config import Config
from tenantsync.executor import BatchResult, RateLimitedExecutor, RetryPolicy


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def fast_executor(concurrency_limit: int = 3, retry: RetryPolicy | None = None) -> RateLimitedExecutor:
    return RateLimitedExecutor(
        concurrency_limit=concurrency_limit, frequency_limit=1000, retry=retry
    )


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_exponential_backoff(self) -> None:
        policy = RetryPolicy(initial_delay_seconds=1.0, max_delay_seconds=30.0, jitter_ratio=0)

        assert policy.delay_for(1) == 1.0
        assert policy.delay_for(2) == 2.0
        assert policy.delay_for(3) == 4.0

    def test_backoff_is_capped(self) -> None:
        policy = RetryPolicy(initial_delay_seconds=1.0, max_delay_seconds=3.0, jitter_ratio=0)
        assert policy.delay_for(5) == 3.0

    def test_jitter_bounds(self) -> None:
        policy = RetryPolicy(initial_delay_seconds=1.0, max_delay_seconds=30.0, jitter_ratio=0.5)
        for _ in range(20):
            assert 1.0 <= policy.delay_for(1) <= 1.5

    def test_retry_after_wins(self) -> None:
        """Test that the backend's Retry-After replaces the computed backoff."""
        policy = RetryPolicy(initial_delay_seconds=1.0, max_delay_seconds=30.0)

        assert policy.delay_for(1, api_error(429, retry_after=7)) == 7
        assert policy.delay_for(1, api_error(429, retry_after=120)) == 30.0

    def test_should_retry_only_throttling(self) -> None:
        policy = RetryPolicy(max_retries=2)

        assert policy.should_retry(api_error(429), attempt=1)
        assert policy.should_retry(api_error(429), attempt=2)
        assert not policy.should_retry(api_error(429), attempt=3)
        assert not policy.should_retry(api_error(500), attempt=1)
        assert not policy.should_retry(ValueError("boom"), attempt=1)

    @pytest.mark.asyncio
    async def test_call_retries_then_succeeds(self) -> None:
        sleep = RecordingSleep()
        policy = RetryPolicy(max_retries=3, initial_delay_seconds=0.5, jitter_ratio=0, sleep=sleep)
        attempts = 0

        async def flaky() -> str:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise api_error(429)
            return "ok"

        assert await policy.call(flaky) == "ok"
        assert attempts == 3
        assert sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_call_gives_up(self) -> None:
        """Test that the last throttling error propagates after max_retries."""
        sleep = RecordingSleep()
        policy = RetryPolicy(max_retries=2, jitter_ratio=0, sleep=sleep)

        async def throttled() -> None:
            raise api_error(429, retry_after=1)

        with pytest.raises(Exception) as exc_info:
            await policy.call(throttled)

        assert exc_info.value.status_code == 429
        assert sleep.delays == [1, 1]

    @pytest.mark.asyncio
    async def test_call_does_not_retry_other_errors(self) -> None:
        sleep = RecordingSleep()
        policy = RetryPolicy(max_retries=3, sleep=sleep)

        async def broken() -> None:
            raise api_error(400, message="Payload validation error")

        with pytest.raises(Exception):
            await policy.call(broken)
        assert sleep.delays == []


class TestRateLimitedExecutor:
    """Tests for RateLimitedExecutor.submit."""

    def test_rejects_invalid_limits(self) -> None:
        with pytest.raises(ValueError):
            RateLimitedExecutor(concurrency_limit=0)
        with pytest.raises(ValueError):
            RateLimitedExecutor(frequency_limit=0)
        with pytest.raises(ValueError):
            RateLimitedExecutor(frequency_window_seconds=0)

    def test_from_config(self) -> None:
        config = Config(domain="acme.example-auth.com", concurrency_limit=5, frequency_limit=20)

        executor = RateLimitedExecutor.from_config(config)

        assert executor.concurrency_limit == 5
        assert executor.frequency_limit == 20

    @pytest.mark.asyncio
    async def test_empty_submission(self) -> None:
        batch = await fast_executor().submit([], lambda item: asyncio.sleep(0))

        assert batch.outcomes == []
        assert batch.ok

    @pytest.mark.asyncio
    async def test_outcomes_in_submission_order(self) -> None:
        async def double(item: int) -> int:
            await asyncio.sleep(0.001 * (5 - item))
            return item * 2

        batch = await fast_executor().submit([1, 2, 3, 4], double)

        assert [outcome.item for outcome in batch.outcomes] == [1, 2, 3, 4]
        assert [outcome.result for outcome in batch.outcomes] == [2, 4, 6, 8]
        assert batch.ok

    @pytest.mark.asyncio
    async def test_failure_does_not_cancel_siblings(self) -> None:
        """Test that every task settles even when one fails."""
        finished: list[int] = []

        async def operation(item: int) -> int:
            await asyncio.sleep(0.001)
            if item == 2:
                raise api_error(500, message="boom")
            finished.append(item)
            return item

        batch = await fast_executor().submit([1, 2, 3, 4, 5], operation)

        assert sorted(finished) == [1, 3, 4, 5]
        assert len(batch.succeeded) == 4
        assert [outcome.item for outcome in batch.failed] == [2]
        assert batch.first_error is batch.failed[0].error
        assert not batch.ok

    @pytest.mark.asyncio
    async def test_concurrency_limit(self) -> None:
        """Test that no more than concurrency_limit calls are in flight."""
        executor = fast_executor(concurrency_limit=2)
        current = 0
        peak = 0

        async def operation(item: int) -> int:
            nonlocal current, peak
            current += 1
            peak = max(peak, current)
            await asyncio.sleep(0.05)
            current -= 1
            return item

        batch = await executor.submit(list(range(8)), operation)

        assert batch.ok
        assert peak == 2
        assert executor.peak_in_flight == 2
        assert executor.in_flight == 0
        assert executor.started == 8

    @pytest.mark.asyncio
    async def test_frequency_limit(self) -> None:
        """Test that no sliding window holds more than frequency_limit starts."""
        window = 0.5
        executor = RateLimitedExecutor(
            concurrency_limit=50, frequency_limit=5, frequency_window_seconds=window
        )
        loop = asyncio.get_running_loop()

        async def operation(item: int) -> float:
            return loop.time()

        batch = await executor.submit(list(range(15)), operation)

        assert batch.ok
        starts = sorted(outcome.result for outcome in batch.outcomes)
        # 1ms tolerance for event loop clock granularity
        busiest = max(
            sum(1 for other in starts if start <= other < start + window - 0.001)
            for start in starts
        )
        assert busiest <= 5
        assert starts[-1] - starts[0] >= 2 * window - 0.01

    @pytest.mark.asyncio
    async def test_throttled_call_is_retried(self) -> None:
        """Test that a 429 is retried within the task and counted as a new start."""
        sleep = RecordingSleep()
        executor = fast_executor(retry=RetryPolicy(max_retries=2, sleep=sleep))
        attempts: dict[str, int] = {}

        async def operation(item: str) -> str:
            attempts[item] = attempts.get(item, 0) + 1
            if item == "throttled" and attempts[item] == 1:
                raise api_error(429, retry_after=0)
            return item

        batch = await executor.submit(["ok", "throttled"], operation)

        assert batch.ok
        assert attempts == {"ok": 1, "throttled": 2}
        assert executor.started == 3
        assert sleep.delays == [0]

    @pytest.mark.asyncio
    async def test_no_retry_by_default(self) -> None:
        async def throttled(item: int) -> None:
            raise api_error(429)

        batch = await fast_executor().submit([1], throttled)

        assert isinstance(batch, BatchResult)
        assert batch.failed[0].error.status_code == 429
