"""Completion policies: when a scope shuts down and what it produces.

A policy is notified once per subtask that reaches a terminal state, always
under the scope's lock, so "first" means first to arrive rather than first
forked. It may call request_shutdown() from on_terminal(). After join
returns, the owner calls aggregate() through the PolicyView.

Built-ins:
    - WaitAllOrFail: all must succeed; first failure cancels the rest
    - FirstSuccess: first success wins; all failing reports the last failure
    - FirstCompletion: first outcome of any kind wins (race)
    - CollectAll: never shuts down; reports every outcome

Custom policies subclass CompletionPolicy:

    >>> class FirstTwo(CompletionPolicy[list[int]]):
    ...     def __init__(self):
    ...         super().__init__()
    ...         self.results = []
    ...     def on_terminal(self, handle):
    ...         if handle.state is SubtaskState.SUCCEEDED:
    ...             self.results.append(handle._result)
    ...             if len(self.results) == 2:
    ...                 self.request_shutdown()
    ...     def aggregate(self):
    ...         return self.results
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Callable, Generic, TypeVar

from taskscope.foundation.errors import AggregateError, CancelledError, IllegalAccessError

from .task import SubtaskHandle, SubtaskState

if TYPE_CHECKING:
    from .scope import Scope, ScopeState

T = TypeVar("T")

__all__ = [
    "CompletionPolicy",
    "PolicyView",
    "WaitAllOrFail",
    "FirstSuccess",
    "FirstCompletion",
    "CollectAll",
    "Settled",
    "SettledStatus",
]


class CompletionPolicy(ABC, Generic[T]):
    """Base for completion policies. One instance serves exactly one scope."""

    __slots__ = ("_shutdown_hook",)

    def __init__(self) -> None:
        self._shutdown_hook: Callable[[], None] | None = None

    def bind(self, shutdown: Callable[[], None]) -> None:
        """Attach to a scope. Called by the scope at construction."""
        if self._shutdown_hook is not None:
            raise ValueError(f"{type(self).__name__} is already bound to a scope")
        self._shutdown_hook = shutdown

    def request_shutdown(self) -> None:
        """Shut the owning scope down. Safe to call repeatedly."""
        if self._shutdown_hook is not None:
            self._shutdown_hook()

    def on_skipped(self, handle: SubtaskHandle[object]) -> None:
        """Handle a subtask cancelled before its body ran. Not a terminal notification."""

    @abstractmethod
    def on_terminal(self, handle: SubtaskHandle[object]) -> None:
        """Handle one terminal subtask. Called under the scope lock; must not block."""

    @abstractmethod
    def aggregate(self) -> T:
        """Compute the scope's outcome. Called by the owner after join."""


class WaitAllOrFail(CompletionPolicy[tuple[object, ...]]):
    """All subtasks must succeed. The first failure shuts the scope down.

    aggregate() returns every result in fork order, or raises AggregateError
    wrapping the first failure. Siblings cancelled by that shutdown are not
    counted as further failures.
    """

    __slots__ = ("_first_cause", "_first_failed", "_settled", "_cancelled")

    def __init__(self) -> None:
        super().__init__()
        self._first_cause: BaseException | None = None
        self._first_failed: str | None = None
        self._settled: list[SubtaskHandle[object]] = []
        self._cancelled = 0

    def on_terminal(self, handle: SubtaskHandle[object]) -> None:
        self._settled.append(handle)
        match handle.state:
            case SubtaskState.FAILED if self._first_cause is None:
                self._first_cause, self._first_failed = handle.exception(), handle.name
                self.request_shutdown()
            case SubtaskState.CANCELLED:
                self._cancelled += 1

    def on_skipped(self, handle: SubtaskHandle[object]) -> None:
        self._cancelled += 1

    def aggregate(self) -> tuple[object, ...]:
        if self._first_cause is not None:
            raise AggregateError(f"subtask {self._first_failed!r} failed", self._first_cause)
        if self._cancelled:
            raise CancelledError(f"{self._cancelled} subtask(s) cancelled before completing")
        return tuple(h._result for h in sorted(self._settled, key=lambda h: h.index))


class FirstSuccess(CompletionPolicy[T]):
    """The first subtask to succeed wins and shuts the scope down.

    Failures are recorded only while no success exists, last writer wins: if
    every subtask fails, aggregate() reports the one that failed last. All
    recorded failures stay available in `causes`.
    """

    __slots__ = ("_has_result", "_result", "_cause", "_causes", "_track_suppressed")

    def __init__(self, *, track_suppressed: bool | None = None) -> None:
        super().__init__()
        if track_suppressed is None:
            from taskscope.foundation.config import get_settings
            track_suppressed = get_settings().scope.track_suppressed
        self._track_suppressed = track_suppressed
        self._has_result = False
        self._result: T | None = None
        self._cause: BaseException | None = None
        self._causes: list[BaseException] = []

    @property
    def causes(self) -> tuple[BaseException, ...]:
        """Every failure recorded before a success, in arrival order."""
        return tuple(self._causes)

    def on_terminal(self, handle: SubtaskHandle[object]) -> None:
        if self._has_result:
            return
        match handle.state:
            case SubtaskState.SUCCEEDED:
                self._has_result, self._result = True, handle._result  # type: ignore[assignment]
                self.request_shutdown()
            case SubtaskState.FAILED:
                self._cause = handle.exception()
                self._causes.append(self._cause)  # type: ignore[arg-type]

    def aggregate(self) -> T:
        if self._has_result:
            return self._result  # type: ignore[return-value]
        if self._cause is None:
            raise AggregateError("no subtask succeeded")
        suppressed = tuple(self._causes[:-1]) if self._track_suppressed else ()
        raise AggregateError(f"all {len(self._causes)} subtask(s) failed", self._cause, suppressed)


class FirstCompletion(CompletionPolicy[T]):
    """The first subtask to finish, successfully or not, wins (race).

    Later notifications are ignored. aggregate() returns that result or
    re-raises that exact exception. Equal-time finishers are decided by
    whichever notification takes the scope lock first.
    """

    __slots__ = ("_winner",)

    def __init__(self) -> None:
        super().__init__()
        self._winner: SubtaskHandle[object] | None = None

    @property
    def winner(self) -> SubtaskHandle[object] | None:
        return self._winner

    def on_terminal(self, handle: SubtaskHandle[object]) -> None:
        if self._winner is None and handle.state in (SubtaskState.SUCCEEDED, SubtaskState.FAILED):
            self._winner = handle
            self.request_shutdown()

    def aggregate(self) -> T:
        if (winner := self._winner) is None:
            raise CancelledError("no subtask completed")
        if winner.state is SubtaskState.FAILED:
            raise winner.exception()  # type: ignore[misc]
        return winner._result  # type: ignore[return-value]


# ─────────────────────────────────────────────────────────────────────────────
# Settled outcomes
# ─────────────────────────────────────────────────────────────────────────────


class SettledStatus(StrEnum):
    """Status of a settled subtask."""
    FULFILLED = "fulfilled"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class Settled(Generic[T]):
    """Outcome of one subtask (success, failure or cancellation).

    Attributes:
        status: fulfilled, rejected or cancelled
        value: Result if fulfilled
        error: Exception if rejected
        name: Subtask name
    """

    status: SettledStatus
    value: T | None = None
    error: BaseException | None = None
    name: str | None = None

    @property
    def is_fulfilled(self) -> bool:
        return self.status is SettledStatus.FULFILLED

    @property
    def is_rejected(self) -> bool:
        return self.status is SettledStatus.REJECTED

    def unwrap(self) -> T:
        """Get value or raise stored error."""
        if self.status is SettledStatus.REJECTED:
            raise self.error or RuntimeError("rejected with no error")
        if self.status is SettledStatus.CANCELLED:
            raise CancelledError(f"subtask {self.name!r} was cancelled")
        return self.value  # type: ignore[return-value]

    def unwrap_or(self, default: T) -> T:
        return self.value if self.is_fulfilled else default  # type: ignore[return-value]


_SETTLED_STATUS = {
    SubtaskState.SUCCEEDED: SettledStatus.FULFILLED,
    SubtaskState.FAILED: SettledStatus.REJECTED,
    SubtaskState.CANCELLED: SettledStatus.CANCELLED,
}


class CollectAll(CompletionPolicy[list[Settled[object]]]):
    """Never shuts down; aggregate() reports every outcome in fork order."""

    __slots__ = ("_settled",)

    def __init__(self) -> None:
        super().__init__()
        self._settled: list[SubtaskHandle[object]] = []

    def on_terminal(self, handle: SubtaskHandle[object]) -> None:
        self._settled.append(handle)

    def aggregate(self) -> list[Settled[object]]:
        return [
            Settled(_SETTLED_STATUS[h.state], value=h._result, error=h.exception(), name=h.name)
            for h in sorted(self._settled, key=lambda h: h.index)
        ]


# ─────────────────────────────────────────────────────────────────────────────
# View returned by join
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class PolicyView(Generic[T]):
    """What join() hands back: the policy's aggregation step plus read access.

    Only join() creates views, so a scope can only report an outcome after
    join was actually invoked.
    """

    _scope: Scope[T]
    _policy: CompletionPolicy[T]

    @property
    def policy(self) -> CompletionPolicy[T]:
        return self._policy

    @property
    def handles(self) -> tuple[SubtaskHandle[object], ...]:
        return self._scope.handles

    @property
    def state(self) -> ScopeState:
        return self._scope.state

    def aggregate(self) -> T:
        """Apply the policy's aggregation.

        Raises:
            IllegalAccessError: If the scope's join has not completed
            AggregateError / CancelledError / the winning cause: per policy
        """
        if not self._scope.joined:
            raise IllegalAccessError("aggregate() before the scope's join returned")
        return self._policy.aggregate()
