"""Bounded execution, retry with backoff, and cooperative cancellation.

Every wait in the publisher goes through these primitives so that a single
outer deadline (or an external cancel) can stop a deployment at any
suspension point.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

from store_publisher.core.exceptions import AbortedError, OperationTimeoutError
from store_publisher.utils.helpers import format_duration

if TYPE_CHECKING:
    from store_publisher.models.deployment import RetryPolicy

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class CancellationToken:
    """Cooperative cancellation signal shared by one deployment attempt."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Operation was aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise AbortedError(self.reason or "Operation was aborted")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds unless cancelled first."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``awaitable`` under a hard wall-clock deadline.

    Raises OperationTimeoutError once ``timeout`` seconds have elapsed (never
    earlier) and AbortedError if ``cancel_token`` fires first. In both cases
    the underlying task is cancelled and awaited, so its cleanup has finished
    before the error propagates; its late result is discarded.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    task = asyncio.ensure_future(awaitable)
    waiters: set[asyncio.Future[Any]] = {task}
    cancel_waiter: asyncio.Future[Any] | None = None
    if cancel_token is not None:
        cancel_waiter = asyncio.ensure_future(cancel_token.wait())
        waiters.add(cancel_waiter)

    try:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            done, _ = await asyncio.wait(
                waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            if task in done:
                return task.result()
            if cancel_waiter is not None and cancel_waiter in done:
                raise AbortedError(cancel_token.reason or "Operation was aborted")
        raise OperationTimeoutError(
            f"Operation timed out after {format_duration(timeout * 1000)}",
            details={"timeout_seconds": timeout},
        )
    finally:
        # Cleanup in the cancelled operation runs before the caller resumes
        pending = [waiter for waiter in waiters if not waiter.done()]
        for waiter in pending:
            waiter.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def backoff_delays(policy: "RetryPolicy") -> list[float]:
    """Delays applied between attempts 1..N when every attempt fails."""
    return [policy.delay_for(attempt) for attempt in range(1, policy.max_attempts)]


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: "RetryPolicy",
    *,
    sleep: SleepFn | None = None,
    cancel_token: CancellationToken | None = None,
    on_retry: Callable[[int, float, BaseException], None] | None = None,
) -> T:
    """Call ``operation`` until it succeeds or the policy gives up.

    ``operation`` is a factory so that each attempt gets a fresh awaitable.
    """
    if sleep is None:
        sleep = cancel_token.sleep if cancel_token is not None else asyncio.sleep

    attempt = 1
    while True:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            return await operation()
        except Exception as e:
            if attempt >= policy.max_attempts or not policy.should_retry(e):
                raise
            delay = policy.delay_for(attempt)
            if on_retry is not None:
                on_retry(attempt, delay, e)
            await sleep(delay)
            attempt += 1
