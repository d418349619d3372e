"""Scopes: structured lifetimes for concurrently running subtasks.

A Scope owns every subtask forked from it. The task that created the scope
is its owner and the only one allowed to fork, join, shut down or close it.
Leaving the `async with` block always closes the scope, and close does not
return while any subtask is still running.

Lifecycle:
    OPEN ──shutdown()──▶ SHUTTING_DOWN ──close()──▶ CLOSED
      └──────────────────close()─────────────────────┘

Example:
    >>> async with Scope(WaitAllOrFail(), name="report") as scope:
    ...     user = scope.fork(fetch_user)
    ...     orders = scope.fork(fetch_orders)
    ...     view = await scope.join()
    ...     user_data, order_data = view.aggregate()

Nested scopes link up automatically: a scope created inside a subtask uses
a child of that subtask's token, so shutting down the outer scope reaches
every leaf below it.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import threading
import time
import weakref
from collections import Counter
from enum import StrEnum
from typing import TYPE_CHECKING, Awaitable, Callable, Generic, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from taskscope.foundation.config import get_settings
from taskscope.foundation.errors import (
    CancelledError,
    DeadlineExceededError,
    ErrorInfo,
    ScopeClosedError,
    UnjoinedScopeError,
    WrongOwnerError,
    is_fatal,
)
from taskscope.runtime.observability.logging import bind_context, current_context, get_logger

from .policy import CompletionPolicy, PolicyView, WaitAllOrFail
from .spawner import AsyncioSpawner, Spawner, run_blocking
from .task import SubtaskHandle, SubtaskState
from .token import CancelToken, current_token

if TYPE_CHECKING:
    from types import TracebackType

T = TypeVar("T")
R = TypeVar("R")

__all__ = ["Scope", "ScopeState", "ScopeSummary", "new_scope"]

Work = Callable[[], Union[Awaitable[R], R]]

log = get_logger("taskscope.scope")

_scope_ids = itertools.count(1)


class ScopeState(StrEnum):
    """Scope lifecycle states."""
    OPEN = "open"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


class ScopeSummary(BaseModel):
    """Snapshot of a scope's subtasks, logged at close."""

    model_config = ConfigDict(frozen=True)

    name: str
    state: ScopeState
    counts: dict[SubtaskState, int] = Field(default_factory=dict)
    failures: list[ErrorInfo] = Field(default_factory=list)
    elapsed: float = Field(ge=0.0, description="Seconds since the scope was created")

    @computed_field
    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @computed_field
    @property
    def quiescent(self) -> bool:
        """Whether every subtask reached a terminal state."""
        return not (self.counts.get(SubtaskState.PENDING) or self.counts.get(SubtaskState.RUNNING))


class Scope(Generic[T]):
    """Structured scope owning a set of subtasks.

    Args:
        policy: Completion policy (default WaitAllOrFail)
        name: Label for logs and summaries
        spawner: Host capability that starts bodies (default AsyncioSpawner)
        token: Parent token to link to (default: current_token(), if any)
    """

    __slots__ = (
        "name", "_policy", "_spawner", "_token", "_state", "_handles", "_outstanding",
        "_owner", "_loop", "_loop_thread", "_lock", "_changed", "_join_attempted",
        "_joined", "_cancelled_from_outside", "_fatal", "_created", "_log", "_path",
        "_unsubscribe", "__weakref__",
    )

    def __init__(
        self,
        policy: CompletionPolicy[T] | None = None,
        *,
        name: str | None = None,
        spawner: Spawner | None = None,
        token: CancelToken | None = None,
    ) -> None:
        self._policy: CompletionPolicy[T] = policy if policy is not None else WaitAllOrFail()  # type: ignore[assignment]
        self._policy.bind(self._shutdown_from_policy)
        parent = token if token is not None else current_token()
        self._token = parent.child() if parent is not None else CancelToken()
        self._spawner: Spawner = spawner or AsyncioSpawner()
        self.name = name or f"scope-{next(_scope_ids)}"
        parent_path = current_context().get("scope")
        self._path = f"{parent_path}/{self.name}" if parent_path else self.name
        self._state = ScopeState.OPEN
        self._handles: list[SubtaskHandle[object]] = []
        self._outstanding = 0
        self._lock = threading.RLock()
        self._owner: asyncio.Task[object] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None
        self._changed: asyncio.Event | None = None
        self._join_attempted = False
        self._joined = False
        self._cancelled_from_outside = False
        self._fatal: BaseException | None = None
        self._created = time.monotonic()
        self._log = log.bind(scope=self._path)
        self._unsubscribe = self._token.add_callback(self._on_token_signal)
        if _running_loop() is not None:
            self._bind_owner()

    def __repr__(self) -> str:
        return f"Scope(name={self.name!r}, state={self._state}, subtasks={len(self._handles)})"

    # ─────────────────────────────────────────────────────────────────────
    # Properties
    # ─────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ScopeState:
        return self._state

    @property
    def token(self) -> CancelToken:
        return self._token

    @property
    def policy(self) -> CompletionPolicy[T]:
        return self._policy

    @property
    def handles(self) -> tuple[SubtaskHandle[object], ...]:
        """Forked subtasks in fork order."""
        return tuple(self._handles)

    @property
    def join_attempted(self) -> bool:
        return self._join_attempted

    @property
    def joined(self) -> bool:
        """Whether a join returned on its success path."""
        return self._joined

    @property
    def path(self) -> str:
        """Slash-separated names of the enclosing scopes and this one."""
        return self._path

    # ─────────────────────────────────────────────────────────────────────
    # Owner operations
    # ─────────────────────────────────────────────────────────────────────

    def fork(self, work: Work[R], *, name: str | None = None, blocking: bool = False) -> SubtaskHandle[R]:
        """Start work concurrently as a subtask of this scope. Never blocks.

        Args:
            work: Zero-argument callable; an awaitable return value is awaited
            name: Subtask name (default derived from the callable)
            blocking: Run work on a worker thread instead of the loop

        Raises:
            WrongOwnerError: If called from a task other than the owner
            ScopeClosedError: If the scope is shutting down or closed; work is
                never invoked
        """
        self._check_owner("fork")
        if self._state is ScopeState.OPEN and self._token.signalled:
            self._shutdown("cancelled from outside")
        if self._state is not ScopeState.OPEN:
            raise ScopeClosedError(f"cannot fork on scope {self.name!r}: {self._state}")

        with self._lock:
            handle: SubtaskHandle[R] = SubtaskHandle(
                name=name or _work_name(work, len(self._handles)),
                index=len(self._handles),
                _scope_ref=weakref.ref(self),  # type: ignore[arg-type]
            )
            self._handles.append(handle)  # type: ignore[arg-type]
            self._outstanding += 1
            # Views from an earlier join no longer cover every subtask
            self._joined = False
            handle._mark_running()
        try:
            runner = self._spawner.spawn(self._token, lambda: self._run(handle, work, blocking), name=handle.name)
        except BaseException:
            with self._lock:
                self._handles.remove(handle)  # type: ignore[arg-type]
                self._outstanding -= 1
            raise
        if isinstance(runner, asyncio.Future):
            runner.add_done_callback(lambda _: self._settle(handle, notify=False))
        self._log.debug("subtask forked", subtask=handle.name, index=handle.index, blocking=blocking)
        return handle

    async def join(self) -> PolicyView[T]:
        """Wait until every subtask is terminal.

        After a shutdown the remaining subtasks have been signalled and join
        waits for them to settle, so none is left running when it returns.
        A body that ignores the signal keeps join waiting until it finishes
        on its own; join does not return merely because the scope is
        shutting down.
        Failures are not raised here; call aggregate() on the returned view.

        Raises:
            WrongOwnerError: If called from a task other than the owner
            CancelledError: If the scope was cancelled from an enclosing scope
        """
        self._check_owner("join")
        self._join_attempted = True
        await self._wait_quiescent(deadline=None)
        return self._complete_join()

    async def join_until(self, deadline: float) -> PolicyView[T]:
        """As join(), giving up at deadline (a time.monotonic() value).

        The scope is not shut down on expiry; call shutdown() to cancel
        stragglers, then join() again or leave the block.

        Raises:
            DeadlineExceededError: If the deadline passed first
        """
        self._check_owner("join_until")
        self._join_attempted = True
        await self._wait_quiescent(deadline=deadline)
        return self._complete_join()

    async def join_within(self, timeout: float) -> PolicyView[T]:
        """join_until(now + timeout)."""
        return await self.join_until(time.monotonic() + timeout)

    def shutdown(self) -> None:
        """Stop accepting forks and signal every running subtask. Idempotent, non-blocking."""
        self._check_owner("shutdown")
        self._shutdown("shutdown requested")

    async def close(self, exc: BaseException | None = None) -> None:
        """Shut down, wait for every subtask, and mark the scope CLOSED.

        Runs automatically when the `async with` block exits. exc is the
        exception the block is exiting with, if any.

        Raises:
            UnjoinedScopeError: If subtasks were forked, join was never
                attempted and the block is exiting normally
        """
        self._check_owner("close")
        if self._state is ScopeState.CLOSED:
            return
        if self._state is ScopeState.OPEN:
            self._shutdown("scope closing")
        try:
            await self._drain()
        finally:
            self._state = ScopeState.CLOSED
            self._unsubscribe()
            self._token.detach()
            if self._log.is_enabled_for(logging.DEBUG):
                self._log.debug("scope closed", **self.summary().model_dump(mode="json", exclude={"name"}))

        if self._fatal is not None and exc is not self._fatal:
            raise self._fatal
        if self._handles and not self._join_attempted:
            if exc is None:
                raise UnjoinedScopeError(
                    f"scope {self.name!r} closed with {len(self._handles)} subtask(s) but join was never called"
                )
            self._log.warning("scope exited without join", subtasks=len(self._handles), error=type(exc).__name__)

    async def __aenter__(self) -> Scope[T]:
        self._check_owner("enter")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool:
        await self.close(exc_val)
        return False

    def summary(self) -> ScopeSummary:
        with self._lock:
            handles = list(self._handles)
        return ScopeSummary(
            name=self.name,
            state=self._state,
            counts=dict(Counter(h.state for h in handles)),
            failures=[info for h in handles if (info := h.error_info()) is not None],
            elapsed=time.monotonic() - self._created,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────

    def _bind_owner(self) -> None:
        self._owner = asyncio.current_task()
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._changed = asyncio.Event()

    def _check_owner(self, op: str) -> None:
        if self._owner is None:
            if _running_loop() is None:
                raise WrongOwnerError(f"{op}() on scope {self.name!r} outside a running event loop")
            self._bind_owner()
        if _running_loop() is not self._loop or asyncio.current_task() is not self._owner:
            raise WrongOwnerError(f"{op}() on scope {self.name!r} must be called by its owner task")

    def _shutdown(self, reason: str) -> None:
        with self._lock:
            if self._state is not ScopeState.OPEN:
                return
            self._state = ScopeState.SHUTTING_DOWN
        self._log.debug("scope shutting down", reason=reason, outstanding=self._outstanding)
        self._token.signal(reason)
        self._wake()

    def _shutdown_from_policy(self) -> None:
        self._shutdown("policy")

    def _on_token_signal(self) -> None:
        # Runs for our own shutdown too; only an OPEN scope was signalled from above
        if self._state is ScopeState.OPEN:
            self._cancelled_from_outside = True
        self._wake()

    def _wake(self) -> None:
        if self._changed is None or self._loop is None:
            return
        if threading.get_ident() == self._loop_thread:
            self._changed.set()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._changed.set)

    async def _run(self, handle: SubtaskHandle[R], work: Work[R], blocking: bool) -> None:
        """Body handed to the spawner: runs work and records its outcome."""
        bind_context(scope=self._path, subtask=handle.name)
        if self._token.signalled:
            # Shut down before the body got to run: never invoke it
            handle._finish(SubtaskState.CANCELLED)
            self._settle(handle, notify=False, skipped=True)
            return
        handle._started = True
        try:
            if blocking:
                result = await run_blocking(work)  # type: ignore[arg-type]
            else:
                result = work()
                if inspect.isawaitable(result):
                    result = await result
        except asyncio.CancelledError:
            handle._finish(SubtaskState.CANCELLED)
            self._settle(handle)
            if not self._token.signalled:
                raise  # cancelled by something other than this scope
        except CancelledError:
            handle._finish(SubtaskState.CANCELLED)
            self._settle(handle)
        except BaseException as exc:
            handle._finish(SubtaskState.FAILED, exc=exc)
            if is_fatal(exc) or not isinstance(exc, Exception):
                self._record_fatal(exc)
                self._settle(handle, notify=False)
            else:
                self._log.debug("subtask failed", subtask=handle.name, error=f"{type(exc).__name__}: {exc}")
                self._settle(handle)
        else:
            handle._finish(SubtaskState.SUCCEEDED, result=result)
            self._settle(handle)

    def _settle(self, handle: SubtaskHandle[object], *, notify: bool = True, skipped: bool = False) -> None:
        """Account for a terminal handle exactly once and notify the policy."""
        with self._lock:
            if handle._settled:
                return
            if not handle.done:
                # Runner finished without the body ever running
                handle._finish(SubtaskState.CANCELLED)
                notify, skipped = False, True
            handle._settled = True
            self._outstanding -= 1
            if notify or skipped:
                try:
                    if skipped:
                        self._policy.on_skipped(handle)
                    elif handle._started:
                        self._policy.on_terminal(handle)
                except BaseException as exc:  # noqa: BLE001 - surfaced through join
                    self._record_fatal(exc)
        self._wake()

    def _record_fatal(self, exc: BaseException) -> None:
        with self._lock:
            if self._fatal is None:
                self._fatal = exc
        self._log.error("unrecoverable error in scope", error=f"{type(exc).__name__}: {exc}")
        self._shutdown("unrecoverable error")

    async def _wait_quiescent(self, deadline: float | None) -> None:
        while True:
            self._changed.clear()
            if self._cancelled_from_outside and self._outstanding:
                self._shutdown("cancelled from outside")
                raise CancelledError(f"scope {self.name!r} cancelled: {self._token.reason}")
            if self._outstanding == 0:
                break
            if deadline is None:
                await self._changed.wait()
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DeadlineExceededError(
                    f"scope {self.name!r}: {self._outstanding} subtask(s) still running at deadline"
                )
            try:
                await asyncio.wait_for(self._changed.wait(), remaining)
            except TimeoutError:
                continue
        if self._fatal is not None:
            raise self._fatal

    def _complete_join(self) -> PolicyView[T]:
        self._joined = True
        for handle in self._handles:
            handle._readable = True
        return PolicyView(self, self._policy)

    async def _drain(self) -> None:
        """Wait for every subtask to settle, even if the owner is cancelled meanwhile."""
        interval = get_settings().scope.straggler_warning
        interrupted: BaseException | None = None
        while self._outstanding:
            self._changed.clear()
            if not self._outstanding:
                break
            try:
                await asyncio.wait_for(self._changed.wait(), interval)
            except TimeoutError:
                running = [h.name for h in self._handles if not h.done]
                self._log.warning("waiting on subtasks that ignore cancellation", subtasks=running)
            except asyncio.CancelledError as exc:
                interrupted = exc
        if interrupted is not None:
            raise interrupted


def new_scope(policy: CompletionPolicy[T] | None = None, **kwargs: object) -> Scope[T]:
    """Create a scope; use as `async with new_scope(FirstSuccess()) as scope:`."""
    return Scope(policy, **kwargs)  # type: ignore[arg-type]


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _work_name(work: Callable[..., object], index: int) -> str:
    name = getattr(work, "__name__", None) or getattr(getattr(work, "func", None), "__name__", None)
    return f"{name}#{index}" if name and name != "<lambda>" else f"subtask#{index}"
