"""Composition helpers built on scopes and completion policies.

Each helper opens its own scope, forks the given works, joins and returns
the policy's aggregate. Nothing forked by a helper outlives the call.

    - parallel_all: every work must succeed; first failure cancels the rest
    - race_first_success: first success wins; failures are tolerated
    - race: first to finish wins, success or failure
    - with_timeout: race a work against a timer
    - all_settled: every outcome, never cancels
    - map_bounded: parallel map with a concurrency ceiling
    - retry_with_backoff / fallback: sequential recovery patterns

A work is a zero-argument callable; if it returns an awaitable, that is
awaited. Use functools.partial or a lambda to pass arguments.

Example:
    >>> user, orders = await parallel_all(fetch_user, fetch_orders)
    >>> quote = await race_first_success(primary_quote, backup_quote)
    >>> page = await with_timeout(2.0, lambda: fetch(url))
    >>> pages = await map_bounded(fetch, urls, limit=10)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterable
from typing import Callable, TypeVar

from taskscope.foundation.errors import AggregateError, CancelledError, TaskTimeoutError
from taskscope.runtime.observability.logging import get_logger

from .policy import CollectAll, FirstCompletion, FirstSuccess, Settled, WaitAllOrFail
from .scope import Scope, Work
from .token import sleep

T = TypeVar("T")
U = TypeVar("U")

__all__ = [
    "parallel_all",
    "race_first_success",
    "race",
    "with_timeout",
    "delay_then_fail",
    "all_settled",
    "map_bounded",
    "retry_with_backoff",
    "fallback",
]

log = get_logger("taskscope.wait")


# ─────────────────────────────────────────────────────────────────────────────
# Scoped combinators
# ─────────────────────────────────────────────────────────────────────────────


async def parallel_all(*works: Work[object], name: str | None = None) -> tuple[object, ...]:
    """Run works concurrently; all must succeed.

    Returns:
        Results in argument order

    Raises:
        AggregateError: Wrapping the first failure (siblings are cancelled)
    """
    async with Scope(WaitAllOrFail(), name=name or "parallel_all") as scope:
        for work in works:
            scope.fork(work)
        view = await scope.join()
    return view.aggregate()


async def race_first_success(*works: Work[T], name: str | None = None) -> T:
    """Return the first successful result and cancel the remaining works.

    Raises:
        ValueError: If no works are given
        AggregateError: If every work failed; the cause is the last failure
    """
    if not works:
        raise ValueError("race_first_success() requires at least one work")
    async with Scope(FirstSuccess(), name=name or "race_first_success") as scope:
        for work in works:
            scope.fork(work)
        view = await scope.join()
    return view.aggregate()  # type: ignore[return-value]


async def race(*works: Work[T], name: str | None = None) -> T:
    """Return whatever finishes first: its result, or its exception re-raised.

    Raises:
        ValueError: If no works are given
        Exception: The first finisher's exception, unwrapped
    """
    if not works:
        raise ValueError("race() requires at least one work")
    async with Scope(FirstCompletion(), name=name or "race") as scope:
        for work in works:
            scope.fork(work)
        view = await scope.join()
    return view.aggregate()  # type: ignore[return-value]


def delay_then_fail(delay: float) -> Callable[[], Awaitable[None]]:
    """Work that sleeps for delay seconds and then raises TaskTimeoutError.

    The sleep observes the subtask token, so a cancelled timer stops early.
    """

    async def timer() -> None:
        await sleep(delay)
        raise TaskTimeoutError(f"timed out after {delay:g}s")

    timer.__name__ = "timeout"
    return timer


async def with_timeout(delay: float, work: Work[T], *, name: str | None = None) -> T:
    """Run work, giving up after delay seconds.

    Equivalent to race(work, delay_then_fail(delay)). Inside an enclosing
    scope the cancellation of work cascades into any scopes it opened.

    Raises:
        TaskTimeoutError: If delay elapsed first (also a TimeoutError)
    """
    return await race(work, delay_then_fail(delay), name=name or "with_timeout")  # type: ignore[arg-type]


async def all_settled(*works: Work[T], name: str | None = None) -> list[Settled[T]]:
    """Run works to completion, collecting every outcome in argument order.

    Example:
        >>> outcomes = await all_settled(fetch_a, fetch_b)
        >>> values = [o.value for o in outcomes if o.is_fulfilled]
    """
    async with Scope(CollectAll(), name=name or "all_settled") as scope:
        for work in works:
            scope.fork(work)
        view = await scope.join()
    return view.aggregate()  # type: ignore[return-value]


async def map_bounded(
    func: Callable[[T], Awaitable[U] | U],
    items: Iterable[T],
    *,
    limit: int | None = None,
    name: str | None = None,
) -> list[U]:
    """Apply func to every item with at most limit calls running at once.

    All calls are forked up front; each waits for a slot before running.
    The first failure cancels every call still waiting or running.

    Args:
        func: Called once per item; an awaitable result is awaited
        items: Items to process
        limit: Concurrency ceiling (None = unlimited)

    Returns:
        Results in input order

    Raises:
        ValueError: If limit is less than 1
        AggregateError: Wrapping the first failure
    """
    if limit is not None and limit < 1:
        raise ValueError(f"limit must be at least 1, got {limit}")
    items = list(items)
    if not items:
        return []
    slots = asyncio.Semaphore(limit or len(items))

    def bind(item: T) -> Work[U]:
        async def call() -> U:
            async with slots:
                result = func(item)
                if isinstance(result, Awaitable):
                    result = await result
                return result  # type: ignore[return-value]
        return call

    async with Scope(WaitAllOrFail(), name=name or "map_bounded") as scope:
        for index, item in enumerate(items):
            scope.fork(bind(item), name=f"item#{index}")
        view = await scope.join()
    return list(view.aggregate())  # type: ignore[arg-type]


# ─────────────────────────────────────────────────────────────────────────────
# Sequential recovery
# ─────────────────────────────────────────────────────────────────────────────


async def _call(work: Work[T]) -> T:
    result = work()
    if isinstance(result, Awaitable):
        return await result  # type: ignore[return-value]
    return result  # type: ignore[return-value]


async def retry_with_backoff(
    factory: Work[T],
    *,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Call factory until it succeeds, sleeping between attempts.

    Sleeps observe the current subtask token, so a shutdown stops retrying.
    Cancellation is never retried.

    Args:
        factory: Work creating a fresh attempt on every call
        max_attempts: Attempts before giving up
        delay: Initial delay between attempts in seconds
        backoff: Delay multiplier for each retry
        exceptions: Exception types that trigger a retry

    Raises:
        ValueError: If max_attempts is less than 1
        Exception: The last attempt's exception
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
    current_delay = delay
    for attempt in range(1, max_attempts + 1):
        try:
            return await _call(factory)
        except CancelledError:
            raise
        except exceptions as e:
            if attempt == max_attempts:
                raise
            log.debug("attempt failed, retrying", attempt=attempt, delay=current_delay, error=type(e).__name__)
            await sleep(current_delay)
            current_delay *= backoff
    raise AssertionError("unreachable")


async def fallback(*works: Work[T]) -> T:
    """Try works one after another until one succeeds.

    Raises:
        ValueError: If no works are given
        AggregateError: If all failed; the cause is the last failure and
            suppressed holds the earlier ones
    """
    if not works:
        raise ValueError("fallback() requires at least one work")
    failures: list[BaseException] = []
    for work in works:
        try:
            return await _call(work)
        except CancelledError:
            raise
        except Exception as e:
            log.debug("fallback candidate failed", error=f"{type(e).__name__}: {e}")
            failures.append(e)
    raise AggregateError(f"all {len(failures)} fallback(s) failed", failures[-1], tuple(failures[:-1]))
