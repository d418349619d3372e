"""Tests for bounded fan-out and the sequential recovery helpers."""

from __future__ import annotations

import asyncio

import pytest

from taskscope import (
    AggregateError,
    CancelledError,
    Scope,
    SubtaskState,
    WaitAllOrFail,
    fallback,
    map_bounded,
    retry_with_backoff,
)


# ─────────────────────────────────────────────────────────────────────────────
# map_bounded
# ─────────────────────────────────────────────────────────────────────────────


class TestMapBounded:
    """Parallel map with a concurrency ceiling."""

    @pytest.mark.asyncio
    async def test_respects_limit_and_order(self) -> None:
        running = 0
        peak = 0

        async def square(n: int) -> int:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01 * (10 - n))
            running -= 1
            return n * n

        assert await map_bounded(square, range(10), limit=3) == [n * n for n in range(10)]
        assert peak == 3

    @pytest.mark.asyncio
    async def test_unlimited(self) -> None:
        assert await map_bounded(lambda n: n + 1, [1, 2, 3]) == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_empty_input(self) -> None:
        assert await map_bounded(lambda n: n, [], limit=2) == []

    @pytest.mark.asyncio
    async def test_invalid_limit(self) -> None:
        with pytest.raises(ValueError):
            await map_bounded(lambda n: n, [1], limit=0)

    @pytest.mark.asyncio
    async def test_first_failure_stops_the_rest(self) -> None:
        started: list[int] = []

        async def fetch(n: int) -> int:
            started.append(n)
            if n == 1:
                raise LookupError(f"missing {n}")
            await asyncio.sleep(0.05)
            return n

        with pytest.raises(AggregateError) as info:
            await map_bounded(fetch, range(20), limit=2)
        assert isinstance(info.value.cause, LookupError)
        assert len(started) < 20


# ─────────────────────────────────────────────────────────────────────────────
# retry_with_backoff
# ─────────────────────────────────────────────────────────────────────────────


class TestRetry:
    """Retries with token-aware sleeps."""

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self) -> None:
        attempts = 0

        async def flaky() -> str:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise ConnectionError("reset")
            return "ok"

        assert await retry_with_backoff(flaky, max_attempts=3, delay=0.01) == "ok"
        assert attempts == 3

    @pytest.mark.asyncio
    async def test_gives_up_with_last_error(self) -> None:
        attempts = 0

        def always_fails() -> None:
            nonlocal attempts
            attempts += 1
            raise ConnectionError(f"attempt {attempts}")

        with pytest.raises(ConnectionError, match="attempt 2"):
            await retry_with_backoff(always_fails, max_attempts=2, delay=0.0)

    @pytest.mark.asyncio
    async def test_unlisted_errors_are_not_retried(self) -> None:
        attempts = 0

        def broken() -> None:
            nonlocal attempts
            attempts += 1
            raise TypeError("bug")

        with pytest.raises(TypeError):
            await retry_with_backoff(broken, max_attempts=5, delay=0.0, exceptions=(ConnectionError,))
        assert attempts == 1

    @pytest.mark.asyncio
    async def test_cancellation_is_not_retried(self) -> None:
        attempts = 0

        def cancelled() -> None:
            nonlocal attempts
            attempts += 1
            raise CancelledError("shutdown")

        with pytest.raises(CancelledError):
            await retry_with_backoff(cancelled, max_attempts=5, delay=0.0)
        assert attempts == 1

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_backoff(self) -> None:
        async def never_works() -> None:
            raise ConnectionError("down")

        async with Scope(WaitAllOrFail()) as scope:
            retrier = scope.fork(lambda: retry_with_backoff(never_works, max_attempts=10, delay=5.0))
            await asyncio.sleep(0.02)
            scope.shutdown()
            await scope.join()
        assert retrier.state is SubtaskState.CANCELLED

    @pytest.mark.asyncio
    async def test_invalid_attempts(self) -> None:
        with pytest.raises(ValueError):
            await retry_with_backoff(lambda: 1, max_attempts=0)


# ─────────────────────────────────────────────────────────────────────────────
# fallback
# ─────────────────────────────────────────────────────────────────────────────


class TestFallback:
    """Sequential alternatives."""

    @pytest.mark.asyncio
    async def test_uses_first_success(self) -> None:
        calls: list[str] = []

        async def primary() -> str:
            calls.append("primary")
            raise ConnectionError("down")

        async def secondary() -> str:
            calls.append("secondary")
            return "cached"

        def tertiary() -> str:
            calls.append("tertiary")
            return "default"

        assert await fallback(primary, secondary, tertiary) == "cached"
        assert calls == ["primary", "secondary"]

    @pytest.mark.asyncio
    async def test_all_fail(self) -> None:
        def first() -> None:
            raise ValueError("a")

        def second() -> None:
            raise KeyError("b")

        with pytest.raises(AggregateError) as info:
            await fallback(first, second)
        assert isinstance(info.value.cause, KeyError)
        assert [type(e) for e in info.value.suppressed] == [ValueError]

    @pytest.mark.asyncio
    async def test_needs_works(self) -> None:
        with pytest.raises(ValueError):
            await fallback()
