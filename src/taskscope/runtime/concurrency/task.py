"""Subtask handles: the owner's view of one forked unit of work.

A handle is created by Scope.fork and written exactly once by its own
subtask (or by the cancellation cascade). The owner reads it only after the
scope's join returned:

    >>> async with Scope(WaitAllOrFail()) as scope:
    ...     user = scope.fork(fetch_user)
    ...     orders = scope.fork(fetch_orders)
    ...     (await scope.join()).aggregate()
    >>> user.get(), orders.get()
"""

from __future__ import annotations

import time
import weakref
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Generic, TypeVar

from taskscope.foundation.errors import CancelledError, ErrorInfo, IllegalAccessError, SubtaskFailure

if TYPE_CHECKING:
    from .scope import Scope
    from .token import CancelToken

T = TypeVar("T")


class SubtaskState(StrEnum):
    """Subtask lifecycle states. Transitions only move forward."""
    PENDING = "pending"      # Created, not yet handed to the spawner
    RUNNING = "running"      # Started concurrently
    SUCCEEDED = "succeeded"  # Body returned a result
    FAILED = "failed"        # Body raised
    CANCELLED = "cancelled"  # Terminated by shutdown before completing

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({SubtaskState.SUCCEEDED, SubtaskState.FAILED, SubtaskState.CANCELLED})


@dataclass(slots=True, eq=False)
class SubtaskHandle(Generic[T]):
    """Handle to a forked subtask.

    Attributes:
        name: Subtask name for logs and summaries
        index: Fork sequence number within the owning scope
    """

    name: str
    index: int
    _scope_ref: weakref.ReferenceType[Scope[object]] | None = field(default=None, repr=False)
    _state: SubtaskState = SubtaskState.PENDING
    _result: T | None = field(default=None, repr=False)
    _exception: BaseException | None = field(default=None, repr=False)
    _started: bool = field(default=False, repr=False)  # body actually entered
    _readable: bool = field(default=False, repr=False)  # owner's join returned
    _settled: bool = field(default=False, repr=False)  # accounted for by the scope
    _started_at: float | None = field(default=None, repr=False)
    _finished_at: float | None = field(default=None, repr=False)

    @property
    def state(self) -> SubtaskState:
        return self._state

    @property
    def done(self) -> bool:
        """Whether the subtask reached a terminal state."""
        return self._state.terminal

    @property
    def scope(self) -> Scope[object] | None:
        """Owning scope, if it is still alive (non-owning reference)."""
        return self._scope_ref() if self._scope_ref is not None else None

    @property
    def token(self) -> CancelToken | None:
        """Cancellation token shared with the owning scope."""
        return scope.token if (scope := self.scope) is not None else None

    @property
    def elapsed(self) -> float | None:
        """Seconds from start to terminal state, or None while unfinished."""
        if self._started_at is None or self._finished_at is None:
            return None
        return self._finished_at - self._started_at

    def get(self) -> T:
        """Result of a SUCCEEDED subtask.

        Raises:
            IllegalAccessError: If the scope's join has not returned, or the
                subtask is not terminal
            SubtaskFailure: If the subtask FAILED (cause chained)
            CancelledError: If the subtask was CANCELLED
        """
        if not self._readable:
            raise IllegalAccessError(f"get() on {self.name!r} before the owning scope's join returned")
        match self._state:
            case SubtaskState.SUCCEEDED:
                return self._result  # type: ignore[return-value]
            case SubtaskState.FAILED:
                raise SubtaskFailure(self._exception, self.name) from self._exception  # type: ignore[arg-type]
            case SubtaskState.CANCELLED:
                raise CancelledError(f"subtask {self.name!r} was cancelled")
            case _:
                raise IllegalAccessError(f"subtask {self.name!r} is {self._state}, no result")

    def exception(self) -> BaseException | None:
        """Failure cause of a FAILED subtask, None otherwise."""
        return self._exception if self._state is SubtaskState.FAILED else None

    def error_info(self) -> ErrorInfo | None:
        if (exc := self.exception()) is None:
            return None
        return ErrorInfo.from_exception(exc, subtask=self.name)

    # ─────────────────────────────────────────────────────────────────────
    # Transitions (called by the engine only)
    # ─────────────────────────────────────────────────────────────────────

    def _mark_running(self) -> None:
        if self._state is SubtaskState.PENDING:
            self._state = SubtaskState.RUNNING
            self._started_at = time.monotonic()

    def _finish(self, state: SubtaskState, result: T | None = None, exc: BaseException | None = None) -> bool:
        """Move to a terminal state once. Returns False if already terminal."""
        if self._state.terminal:
            return False
        self._result, self._exception = result, exc
        self._state = state
        self._finished_at = time.monotonic()
        return True
