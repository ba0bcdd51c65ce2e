"""Bounded retry with exponential back-off for flaky external calls.

Every call that leaves the process -- store I/O, embedding requests,
reasoning requests -- goes through a :class:`ResilientCaller`.  Two policies
cover the two call classes:

- :data:`STORAGE_POLICY` -- 3 retries, 1s base delay, 7s back-off budget.
- :data:`INFERENCE_POLICY` -- 5 retries, 2s base delay, 60s back-off budget.

Usage::

    caller = ResilientCaller(STORAGE_POLICY)
    item = await caller.call(lambda: store.get(item_id), cancel=stop_event,
                             description="durable get")

The optional ``cancel`` event aborts the whole retry sequence the moment it
is set: no further attempts are made and any pending back-off sleep ends
immediately with :class:`~vigil.errors.OperationCancelled`.  An attempt
already in flight is cancelled too.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import aiohttp
import psycopg
import redis.exceptions
from qdrant_client.http.exceptions import ResponseHandlingException

from vigil.errors import (
    OperationCancelled,
    PermanentIOError,
    RetryBudgetExhausted,
    TransientIOError,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

# Exception types that are always worth another attempt.
_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    TransientIOError,
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
    aiohttp.ClientConnectionError,
    aiohttp.ServerTimeoutError,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
    psycopg.OperationalError,
    ResponseHandlingException,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one class of external call.

    Attributes:
        name: Label used in log lines.
        max_retries: Retries after the first attempt.
        base_delay: Delay before the first retry, doubled on each retry.
        max_total_delay: Cap on cumulative back-off sleep across all retries.
        retry_statuses: Status codes treated as transient.
        jitter: Fractional jitter applied to each delay (0.25 = +/-25%).
    """

    name: str
    max_retries: int
    base_delay: float
    max_total_delay: float
    retry_statuses: frozenset[int] = field(default_factory=frozenset)
    jitter: float = 0.25

    def is_retryable(self, exc: BaseException) -> bool:
        """Classify *exc* as transient (retry) or permanent (fail fast)."""
        if isinstance(exc, PermanentIOError):
            return False
        if isinstance(exc, TransientIOError):
            return True
        status = getattr(exc, "status_code", None)
        if status is None:
            status = getattr(exc, "status", None)
        if isinstance(status, int):
            return status in self.retry_statuses
        return isinstance(exc, _TRANSIENT_TYPES)

    def delay_for(self, retry: int, rng: Callable[[], float] = random.random) -> float:
        """Back-off before retry number *retry* (0-based), with jitter."""
        delay = self.base_delay * (2 ** retry)
        if self.jitter:
            delay *= 1.0 + self.jitter * (2.0 * rng() - 1.0)
        return max(0.0, delay)


STORAGE_POLICY = RetryPolicy(
    name="storage",
    max_retries=3,
    base_delay=1.0,
    max_total_delay=7.0,
    retry_statuses=frozenset({408, 429, 503, 504}),
)

INFERENCE_POLICY = RetryPolicy(
    name="inference",
    max_retries=5,
    base_delay=2.0,
    max_total_delay=60.0,
    retry_statuses=frozenset({429, 500, 503, 504}),
)


class ResilientCaller:
    """Runs async callables under a :class:`RetryPolicy`.

    Args:
        policy: The retry budget to apply.
        sleep: Back-off sleeper, overridable in tests.  Receives the delay
            and the cancellation event (or ``None``).
        rng: Source of jitter in ``[0, 1)``.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        sleep: Callable[[float, asyncio.Event | None], Awaitable[None]] | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.policy = policy
        self._sleep = sleep or _interruptible_sleep
        self._rng = rng

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        cancel: asyncio.Event | None = None,
        description: str = "external call",
    ) -> T:
        """Await ``fn()`` until it succeeds or the retry budget is spent.

        Raises:
            OperationCancelled: If *cancel* is set before, during or between
                attempts.  An in-flight attempt is cancelled.
            RetryBudgetExhausted: When a transient failure outlives the
                budget.  The last error is chained.
            Exception: Any non-retryable error from *fn*, unchanged.
        """
        slept = 0.0
        attempt = 0
        while True:
            if cancel is not None and cancel.is_set():
                raise OperationCancelled(description)
            attempt += 1
            try:
                return await self._attempt(fn, cancel, description)
            except (asyncio.CancelledError, OperationCancelled):
                raise
            except Exception as exc:
                if not self.policy.is_retryable(exc):
                    log.warning(
                        "%s failed with a permanent error (%s policy): %s",
                        description, self.policy.name, exc,
                    )
                    raise

                retry = attempt - 1
                if retry >= self.policy.max_retries:
                    raise RetryBudgetExhausted(description, attempt) from exc

                delay = self.policy.delay_for(retry, self._rng)
                remaining = self.policy.max_total_delay - slept
                if remaining <= 0:
                    raise RetryBudgetExhausted(description, attempt) from exc
                delay = min(delay, remaining)

                log.warning(
                    "%s failed (attempt %d/%d, %s policy). Retrying in %.2fs: %s",
                    description,
                    attempt,
                    self.policy.max_retries + 1,
                    self.policy.name,
                    delay,
                    exc,
                )
                await self._sleep(delay, cancel)
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled(description)
                slept += delay

    async def _attempt(
        self,
        fn: Callable[[], Awaitable[T]],
        cancel: asyncio.Event | None,
        description: str,
    ) -> T:
        """Run one attempt, abandoning it as soon as *cancel* is set."""
        if cancel is None:
            return await fn()
        attempt = asyncio.ensure_future(fn())
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({attempt, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not attempt.done():
                attempt.cancel()
                await asyncio.gather(attempt, return_exceptions=True)
        if attempt.cancelled() and cancel.is_set():
            raise OperationCancelled(description)
        return attempt.result()


async def _interruptible_sleep(delay: float, cancel: asyncio.Event | None) -> None:
    if cancel is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise OperationCancelled("retry back-off")
