"""
Concurrency primitives for the watchtower event loop.

Everything in watchtower runs on a single asyncio loop. These helpers bound
and pace the work scheduled on it:

1. **Mutex**: mutual exclusion with an explicit FIFO waiter queue. The poll
   loop and every user-triggered git mutation share one instance so a manual
   switch can never interleave with a poll cycle's reconciliation.
2. **with_timeout**: race an awaitable against a timer.
3. **retry**: exponential backoff for operations worth a second attempt.
4. **Debouncer / Throttler**: coalesce bursts of callbacks.

Example:
    >>> mutex = Mutex()
    >>> async with mutex:
    ...     await do_git_work()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationTimeoutError(Exception):
    """
    Raised when an awaitable does not finish within its time budget.

    Attributes:
        seconds: The timeout that was exceeded
        message: Human-readable error message
    """

    def __init__(self, seconds: float, message: str | None = None) -> None:
        self.seconds = seconds
        self.message = message or f"Operation timed out after {seconds}s"
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class Mutex:
    """
    Async mutex with a FIFO waiter queue.

    Waiters are granted the lock strictly in arrival order. Ownership is
    handed directly to the next waiter on release, so the lock is never
    observed as free while someone is queued.

    Example:
        >>> mutex = Mutex()
        >>> await mutex.acquire()
        >>> try:
        ...     ...
        ... finally:
        ...     mutex.release()
    """

    def __init__(self) -> None:
        self._locked = False
        self._waiters: deque[asyncio.Future[None]] = deque()

    async def acquire(self) -> None:
        """Wait until the lock is held by the caller."""
        if not self._locked:
            self._locked = True
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Ownership was handed over just before cancellation
                self.release()
            else:
                self._remove_waiter(waiter)
            raise

    def try_acquire(self) -> bool:
        """
        Take the lock only if it is free right now.

        Returns:
            True if the lock was acquired, False if it is held.
        """
        if self._locked:
            return False
        self._locked = True
        return True

    def release(self) -> None:
        """
        Release the lock, handing it to the oldest live waiter if any.

        Raises:
            RuntimeError: If the mutex is not locked
        """
        if not self._locked:
            raise RuntimeError("Mutex.release() called on an unlocked mutex")

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._locked = False

    async def with_lock(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run an async callable while holding the lock.

        Args:
            fn: Zero-argument coroutine function

        Returns:
            Whatever fn returns
        """
        await self.acquire()
        try:
            return await fn()
        finally:
            self.release()

    def locked(self) -> bool:
        """Whether the lock is currently held."""
        return self._locked

    @property
    def queue_length(self) -> int:
        """Number of callers waiting for the lock."""
        return sum(1 for w in self._waiters if not w.done())

    def _remove_waiter(self, waiter: asyncio.Future[None]) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass

    async def __aenter__(self) -> Mutex:
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.release()


async def with_timeout(
    awaitable: Awaitable[T],
    seconds: float,
    message: str | None = None,
) -> T:
    """
    Race an awaitable against a timer.

    The loser is cancelled. For subprocesses the caller is responsible for
    killing the child once the timeout fires.

    Args:
        awaitable: Coroutine or future to wait for
        seconds: Time budget in seconds
        message: Custom message for the timeout error

    Returns:
        The awaitable's result

    Raises:
        OperationTimeoutError: If the budget is exceeded
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        raise OperationTimeoutError(seconds, message) from None


async def sleep(seconds: float) -> None:
    """Suspend the current task for the given number of seconds."""
    await asyncio.sleep(seconds)


async def retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    should_retry: Callable[[BaseException], bool] | None = None,
) -> T:
    """
    Call fn until it succeeds, backing off exponentially between attempts.

    The delay after attempt n is ``min(base_delay * 2 ** (n - 1), max_delay)``.
    No delay follows the final attempt.

    Args:
        fn: Zero-argument coroutine function to call
        max_attempts: Total attempts including the first (must be >= 1)
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound on any single delay, in seconds
        should_retry: Predicate deciding whether an error is worth retrying.
            Errors it rejects propagate immediately.

    Returns:
        The first successful result

    Raises:
        ValueError: If max_attempts < 1
        Exception: The last error once attempts are exhausted
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    last_error: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except Exception as e:
            last_error = e
            if should_retry is not None and not should_retry(e):
                raise
            if attempt < max_attempts:
                delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
                logger.debug(f"Attempt {attempt} failed ({e}); retrying in {delay}s")
                await asyncio.sleep(delay)

    assert last_error is not None
    raise last_error


class Debouncer:
    """
    Run a callback only after calls have stopped for ``delay`` seconds.

    Each call reschedules the pending invocation with the latest arguments.
    Must be called from inside a running event loop.
    """

    def __init__(self, fn: Callable[..., Any], delay: float) -> None:
        self.fn = fn
        self.delay = delay
        self._handle: asyncio.TimerHandle | None = None

    def __call__(self, *args: Any, **kwargs: Any) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire, args, kwargs)

    def _fire(self, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
        self._handle = None
        self.fn(*args, **kwargs)

    @property
    def pending(self) -> bool:
        """Whether an invocation is scheduled."""
        return self._handle is not None

    def cancel(self) -> None:
        """Drop any scheduled invocation."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class Throttler:
    """
    Run a callback at most once per ``interval`` seconds.

    A call inside the quiet window schedules one trailing invocation for
    when the window expires; further calls in the same window are dropped.
    """

    def __init__(
        self,
        fn: Callable[..., Any],
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.fn = fn
        self.interval = interval
        self._clock = clock
        self._last_call: float | None = None
        self._handle: asyncio.TimerHandle | None = None

    def __call__(self, *args: Any, **kwargs: Any) -> None:
        now = self._clock()
        if self._last_call is None or now - self._last_call >= self.interval:
            self._last_call = now
            self.fn(*args, **kwargs)
        elif self._handle is None:
            remaining = self.interval - (now - self._last_call)
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(remaining, self._fire, args, kwargs)

    def _fire(self, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
        self._handle = None
        self._last_call = self._clock()
        self.fn(*args, **kwargs)

    def cancel(self) -> None:
        """Drop any trailing invocation."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


__all__ = [
    "Debouncer",
    "Mutex",
    "OperationTimeoutError",
    "Throttler",
    "retry",
    "sleep",
    "with_timeout",
]
