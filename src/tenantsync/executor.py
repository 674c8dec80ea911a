"""Rate-limited execution of mutation calls.

One executor is shared by every resource type of a run. A submission turns
each item of one classification into an independent task; tasks start as
long as fewer than `concurrency_limit` are in flight and no more than
`frequency_limit` starts fall within the last `frequency_window_seconds`. A failed task never cancels
its siblings: the submission settles once every task has settled.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from aiolimiter import AsyncLimiter

from .client import ApiError
from .config import (
    DEFAULT_API_CONCURRENCY,
    DEFAULT_API_FREQUENCY_PER_SECOND,
    DEFAULT_API_FREQUENCY_WINDOW_SECONDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_INITIAL_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
    Config,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUSES: frozenset[int] = frozenset({429})


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter for throttled calls.

    Attributes:
        max_retries: Retries after the first attempt (0 disables retrying).
        initial_delay_seconds: Delay before the first retry.
        max_delay_seconds: Ceiling for any single delay.
        jitter_ratio: Random extra delay, as a fraction of the backoff.
        retry_statuses: HTTP statuses worth retrying.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    initial_delay_seconds: float = DEFAULT_RETRY_INITIAL_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    jitter_ratio: float = 0.2
    retry_statuses: frozenset[int] = RETRYABLE_STATUSES
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        return (
            attempt <= self.max_retries
            and isinstance(error, ApiError)
            and error.status_code in self.retry_statuses
        )

    def delay_for(self, attempt: int, error: Exception | None = None) -> float:
        """Delay before retry number `attempt` (1-based).

        A Retry-After value from the backend wins over the computed backoff.
        """
        if isinstance(error, ApiError) and error.retry_after is not None:
            return min(max(error.retry_after, 0.0), self.max_delay_seconds)

        backoff = self.initial_delay_seconds * (2 ** (attempt - 1))
        jitter = random.uniform(0, backoff * self.jitter_ratio)
        return min(backoff + jitter, self.max_delay_seconds)

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """Run func, retrying throttled failures."""
        attempt = 0
        while True:
            try:
                return await func()
            except ApiError as e:
                attempt += 1
                if not self.should_retry(e, attempt):
                    raise

                wait_time = self.delay_for(attempt, e)
                logger.warning(
                    "Request throttled, retrying",
                    extra={
                        "attempt": attempt,
                        "max_retries": self.max_retries,
                        "wait_seconds": wait_time,
                        "status_code": e.status_code,
                    },
                )
                await self.sleep(wait_time)


@dataclass
class TaskOutcome(Generic[T]):
    """Settled state of one submitted task."""

    item: Any
    result: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchResult(Generic[T]):
    """All outcomes of one submission, ordered as submitted."""

    outcomes: list[TaskOutcome[T]] = field(default_factory=list)

    @property
    def succeeded(self) -> list[TaskOutcome[T]]:
        return [outcome for outcome in self.outcomes if outcome.ok]

    @property
    def failed(self) -> list[TaskOutcome[T]]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    @property
    def first_error(self) -> BaseException | None:
        for outcome in self.outcomes:
            if outcome.error is not None:
                return outcome.error
        return None

    @property
    def ok(self) -> bool:
        return self.first_error is None


class RateLimitedExecutor:
    """Bounded worker pool for mutation calls.

    Usage:
        executor = RateLimitedExecutor(concurrency_limit=3, frequency_limit=8)
        batch = await executor.submit(items, create_one)
    """

    def __init__(
        self,
        concurrency_limit: int = DEFAULT_API_CONCURRENCY,
        frequency_limit: int = DEFAULT_API_FREQUENCY_PER_SECOND,
        frequency_window_seconds: float = DEFAULT_API_FREQUENCY_WINDOW_SECONDS,
        retry: RetryPolicy | None = None,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        if frequency_limit < 1:
            raise ValueError("frequency_limit must be at least 1")
        if frequency_window_seconds <= 0:
            raise ValueError("frequency_window_seconds must be greater than 0")

        self.concurrency_limit = concurrency_limit
        self.frequency_limit = frequency_limit
        self.frequency_window_seconds = frequency_window_seconds
        self._retry = retry or RetryPolicy(max_retries=0)
        self._semaphore = asyncio.Semaphore(concurrency_limit)
        # Capacity of one spaces starts window/limit apart, so any sliding
        # window holds at most frequency_limit starts
        self._limiter = AsyncLimiter(1, frequency_window_seconds / frequency_limit)

        # Only mutated from the event loop thread
        self._in_flight = 0
        self._peak_in_flight = 0
        self._started = 0

    @classmethod
    def from_config(cls, config: Config) -> RateLimitedExecutor:
        return cls(
            concurrency_limit=config.concurrency_limit,
            frequency_limit=config.frequency_limit,
            frequency_window_seconds=config.frequency_window_seconds,
            retry=RetryPolicy(
                max_retries=config.max_retries,
                initial_delay_seconds=config.retry_initial_delay_seconds,
                max_delay_seconds=config.retry_max_delay_seconds,
            ),
        )

    @property
    def in_flight(self) -> int:
        """Tasks currently holding a concurrency slot."""
        return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        """Highest in_flight value observed since creation."""
        return self._peak_in_flight

    @property
    def started(self) -> int:
        """Operation calls started, retries included."""
        return self._started

    async def submit(
        self,
        items: Sequence[Any],
        operation: Callable[[Any], Awaitable[T]],
    ) -> BatchResult[T]:
        """Run operation for every item and wait until all of them settled.

        Exceptions raised by operation are captured on the task's outcome,
        never raised from submit.
        """
        if not items:
            return BatchResult()

        tasks = [asyncio.ensure_future(self._run(item, operation)) for item in items]
        settled = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes: list[TaskOutcome[T]] = []
        for item, value in zip(items, settled, strict=True):
            if isinstance(value, BaseException):
                outcomes.append(TaskOutcome(item=item, error=value))
            else:
                outcomes.append(TaskOutcome(item=item, result=value))

        batch = BatchResult(outcomes=outcomes)
        logger.debug(
            "Batch settled",
            extra={
                "submitted": len(items),
                "succeeded": len(batch.succeeded),
                "failed": len(batch.failed),
            },
        )
        return batch

    async def _run(self, item: Any, operation: Callable[[Any], Awaitable[T]]) -> T:
        async with self._semaphore:
            self._in_flight += 1
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
            try:
                return await self._retry.call(lambda: self._start(item, operation))
            finally:
                self._in_flight -= 1

    async def _start(self, item: Any, operation: Callable[[Any], Awaitable[T]]) -> T:
        await self._limiter.acquire()
        self._started += 1
        return await operation(item)
