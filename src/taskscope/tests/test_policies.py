"""Tests for completion policies and the scoped composition helpers."""

from __future__ import annotations

import asyncio
import time

import pytest

from taskscope import (
    AggregateError,
    CancelledError,
    CollectAll,
    FirstCompletion,
    FirstSuccess,
    Scope,
    SettledStatus,
    SubtaskState,
    TaskTimeoutError,
    WaitAllOrFail,
    all_settled,
    delay_then_fail,
    parallel_all,
    race,
    race_first_success,
    with_timeout,
)


async def value_after(delay: float, value: object) -> object:
    await asyncio.sleep(delay)
    return value


async def fail_after(delay: float, exc: BaseException) -> None:
    await asyncio.sleep(delay)
    raise exc


# ─────────────────────────────────────────────────────────────────────────────
# WaitAllOrFail
# ─────────────────────────────────────────────────────────────────────────────


class TestWaitAllOrFail:
    """All must succeed; the first failure cancels the rest."""

    @pytest.mark.asyncio
    async def test_fail_fast(self) -> None:
        start = time.monotonic()
        async with Scope(WaitAllOrFail()) as scope:
            slow = scope.fork(lambda: value_after(10, "slow"))
            scope.fork(lambda: fail_after(0.02, ValueError("first")))
            view = await scope.join()
        assert time.monotonic() - start < 2.0
        with pytest.raises(AggregateError) as info:
            view.aggregate()
        assert isinstance(info.value.cause, ValueError)
        assert info.value.__cause__ is info.value.cause
        assert slow.state is SubtaskState.CANCELLED

    @pytest.mark.asyncio
    async def test_only_first_failure_is_reported(self) -> None:
        async with Scope(WaitAllOrFail()) as scope:
            scope.fork(lambda: fail_after(0.01, ValueError("first")))
            scope.fork(lambda: fail_after(0.01, KeyError("second")))
            view = await scope.join()
        with pytest.raises(AggregateError) as info:
            view.aggregate()
        assert isinstance(info.value.cause, (ValueError, KeyError))
        assert info.value.suppressed == ()

    @pytest.mark.asyncio
    async def test_parallel_all(self) -> None:
        assert await parallel_all(lambda: value_after(0.02, "a"), lambda: "b") == ("a", "b")

    @pytest.mark.asyncio
    async def test_parallel_all_failure(self) -> None:
        with pytest.raises(AggregateError) as info:
            await parallel_all(lambda: value_after(10, "a"), lambda: fail_after(0.01, OSError("down")))
        assert isinstance(info.value.cause, OSError)


# ─────────────────────────────────────────────────────────────────────────────
# FirstSuccess
# ─────────────────────────────────────────────────────────────────────────────


class TestFirstSuccess:
    """First success wins; all failing surfaces the last failure."""

    @pytest.mark.asyncio
    async def test_failures_fall_through_to_success(self) -> None:
        async with Scope(FirstSuccess()) as scope:
            scope.fork(lambda: fail_after(0.01, ValueError("primary down")))
            scope.fork(lambda: value_after(0.05, "replica"))
            laggard = scope.fork(lambda: value_after(10, "slow"))
            view = await scope.join()
        assert view.aggregate() == "replica"
        assert laggard.state is SubtaskState.CANCELLED

    @pytest.mark.asyncio
    async def test_all_fail_reports_last(self) -> None:
        policy = FirstSuccess(track_suppressed=True)
        async with Scope(policy) as scope:
            scope.fork(lambda: fail_after(0.01, ValueError("a")))
            scope.fork(lambda: fail_after(0.08, KeyError("b")))
            view = await scope.join()
        with pytest.raises(AggregateError) as info:
            view.aggregate()
        assert isinstance(info.value.cause, KeyError)
        assert [type(e) for e in info.value.suppressed] == [ValueError]
        assert [type(e) for e in policy.causes] == [ValueError, KeyError]

    @pytest.mark.asyncio
    async def test_suppressed_tracking_from_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TASKSCOPE_SCOPE_TRACK_SUPPRESSED", "true")
        with pytest.raises(AggregateError) as info:
            await race_first_success(
                lambda: fail_after(0.01, ValueError("a")),
                lambda: fail_after(0.08, KeyError("b")),
            )
        assert len(info.value.suppressed) == 1

    @pytest.mark.asyncio
    async def test_race_first_success(self) -> None:
        result = await race_first_success(
            lambda: fail_after(0.0, ValueError("nope")),
            lambda: value_after(0.03, "yes"),
        )
        assert result == "yes"

    @pytest.mark.asyncio
    async def test_race_first_success_needs_works(self) -> None:
        with pytest.raises(ValueError):
            await race_first_success()


# ─────────────────────────────────────────────────────────────────────────────
# FirstCompletion & timeouts
# ─────────────────────────────────────────────────────────────────────────────


class TestRace:
    """First outcome of any kind wins."""

    @pytest.mark.asyncio
    async def test_fastest_success_wins(self) -> None:
        assert await race(lambda: value_after(0.1, "slow"), lambda: value_after(0.01, "fast")) == "fast"

    @pytest.mark.asyncio
    async def test_fastest_failure_is_reraised_unwrapped(self) -> None:
        with pytest.raises(ValueError, match="quick"):
            await race(lambda: fail_after(0.01, ValueError("quick")), lambda: value_after(0.2, "slow"))

    @pytest.mark.asyncio
    async def test_winner_is_recorded(self) -> None:
        policy: FirstCompletion[object] = FirstCompletion()
        async with Scope(policy) as scope:
            scope.fork(lambda: value_after(0.05, "b"), name="b")
            scope.fork(lambda: value_after(0.01, "a"), name="a")
            view = await scope.join()
        assert view.aggregate() == "a"
        assert policy.winner is not None and policy.winner.name == "a"

    @pytest.mark.asyncio
    async def test_winner_cancels_the_timer(self) -> None:
        start = time.monotonic()
        async with Scope(FirstCompletion()) as scope:
            work = scope.fork(lambda: value_after(0.01, "done"))
            timer = scope.fork(delay_then_fail(1.0))
            view = await scope.join()
        assert time.monotonic() - start < 0.5
        assert view.aggregate() == "done"
        assert work.state is SubtaskState.SUCCEEDED
        assert timer.state is SubtaskState.CANCELLED

    @pytest.mark.asyncio
    async def test_race_needs_works(self) -> None:
        with pytest.raises(ValueError):
            await race()

    @pytest.mark.asyncio
    async def test_with_timeout_in_time(self) -> None:
        assert await with_timeout(1.0, lambda: value_after(0.02, "ok")) == "ok"

    @pytest.mark.asyncio
    async def test_with_timeout_expires(self) -> None:
        start = time.monotonic()
        with pytest.raises(TaskTimeoutError):
            await with_timeout(0.05, lambda: value_after(10, "never"))
        assert time.monotonic() - start < 2.0

    @pytest.mark.asyncio
    async def test_timeout_error_is_builtin_timeout(self) -> None:
        with pytest.raises(TimeoutError):
            await delay_then_fail(0.0)()

    @pytest.mark.asyncio
    async def test_timeout_cascades_into_nested_scopes(self) -> None:
        """A timeout around a scope cancels its slow leaf and keeps the fast one."""
        leaves: dict[str, object] = {}

        async def fan_out() -> object:
            async with Scope(WaitAllOrFail(), name="fan-out") as inner:
                leaves["fast"] = inner.fork(lambda: value_after(0.2, "fast"))
                leaves["slow"] = inner.fork(lambda: value_after(0.8, "slow"))
                return (await inner.join()).aggregate()

        start = time.monotonic()
        with pytest.raises(TaskTimeoutError):
            await with_timeout(0.4, fan_out)
        elapsed = time.monotonic() - start
        assert 0.35 <= elapsed < 0.75
        assert leaves["fast"].state is SubtaskState.SUCCEEDED
        assert leaves["slow"].state is SubtaskState.CANCELLED


# ─────────────────────────────────────────────────────────────────────────────
# CollectAll
# ─────────────────────────────────────────────────────────────────────────────


class TestCollectAll:
    """Every outcome, nothing cancelled."""

    @pytest.mark.asyncio
    async def test_all_settled(self) -> None:
        outcomes = await all_settled(
            lambda: value_after(0.03, 1),
            lambda: fail_after(0.01, ValueError("bad")),
        )
        assert [o.status for o in outcomes] == [SettledStatus.FULFILLED, SettledStatus.REJECTED]
        assert outcomes[0].unwrap() == 1
        assert outcomes[1].unwrap_or(0) == 0
        with pytest.raises(ValueError):
            outcomes[1].unwrap()

    @pytest.mark.asyncio
    async def test_cancelled_outcomes(self) -> None:
        async with Scope(CollectAll()) as scope:
            scope.fork(lambda: value_after(10, "never"), name="slow")
            await asyncio.sleep(0.01)
            scope.shutdown()
            view = await scope.join()
        (outcome,) = view.aggregate()
        assert outcome.status is SettledStatus.CANCELLED
        assert outcome.name == "slow"
        with pytest.raises(CancelledError):
            outcome.unwrap()
