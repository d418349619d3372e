"""Host runtime capabilities consumed by scopes.

A scope never creates tasks itself; it asks a Spawner to start a body
concurrently with the token the body should observe. AsyncioSpawner is the
default host. Tests pass fakes to observe or delay execution.

Blocking bodies run on a bounded worker-thread pool. The body keeps the
caller's context, so current_token() works inside the thread.
"""

from __future__ import annotations

import asyncio
import contextvars
import functools
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Callable, Coroutine, Protocol, TypeVar, runtime_checkable

from .token import _set_current_token

if TYPE_CHECKING:
    from .token import CancelToken

T = TypeVar("T")

__all__ = ["Spawner", "AsyncioSpawner", "run_blocking", "shutdown_worker_pool"]

Body = Callable[[], Coroutine[object, object, None]]


@runtime_checkable
class Spawner(Protocol):
    """Starts a body concurrently with its starter.

    spawn() must not block and must make token available to the body through
    current_token(). The returned object is opaque to the scope, except that
    an asyncio future is watched so a body that never got to run is still
    accounted for.
    """

    def spawn(self, token: CancelToken, body: Body, *, name: str | None = None) -> object: ...


class AsyncioSpawner:
    """Runs each body as an asyncio task on the running loop.

    With interrupt=True a token signal also cancels the task, making every
    await inside the body a cancellation point. With interrupt=False bodies
    only stop at explicit checkpoints (checkpoint(), sleep(), token polls).
    """

    __slots__ = ("interrupt",)

    def __init__(self, *, interrupt: bool | None = None) -> None:
        if interrupt is None:
            from taskscope.foundation.config import get_settings
            interrupt = get_settings().scope.interrupt_on_shutdown
        self.interrupt = interrupt

    def __repr__(self) -> str:
        return f"AsyncioSpawner(interrupt={self.interrupt})"

    def spawn(self, token: CancelToken, body: Body, *, name: str | None = None) -> asyncio.Task[None]:
        loop = asyncio.get_running_loop()
        ctx = contextvars.copy_context()
        ctx.run(_set_current_token, token)
        task = loop.create_task(body(), name=name, context=ctx)
        if self.interrupt:
            # Scheduled, not immediate: the body's first step always runs first
            remove = token.add_callback(lambda: loop.call_soon_threadsafe(task.cancel, "scope shutdown"))
            task.add_done_callback(lambda _: remove())
        return task


# ─────────────────────────────────────────────────────────────────────────────
# Worker threads for blocking bodies
# ─────────────────────────────────────────────────────────────────────────────

_worker_pool: ThreadPoolExecutor | None = None
_pool_lock = threading.Lock()


def _get_worker_pool() -> ThreadPoolExecutor:
    """Get or create the worker pool for blocking subtasks."""
    global _worker_pool
    if _worker_pool is None:
        with _pool_lock:
            if _worker_pool is None:
                from taskscope.foundation.config import get_settings
                _worker_pool = ThreadPoolExecutor(
                    max_workers=get_settings().scope.max_workers,
                    thread_name_prefix="taskscope-worker-",
                )
    return _worker_pool


def shutdown_worker_pool(*, wait: bool = True) -> None:
    """Shut down the worker pool; the next blocking subtask creates a fresh one."""
    global _worker_pool
    with _pool_lock:
        pool, _worker_pool = _worker_pool, None
    if pool is not None:
        pool.shutdown(wait=wait)


async def run_blocking(func: Callable[[], T]) -> T:
    """Run a blocking callable on a worker thread and wait for it.

    If the awaiting task is cancelled, the thread cannot be interrupted, so
    this keeps waiting until func returns (it should poll current_token())
    and then re-raises the cancellation. A subtask never reports terminal
    while its thread is still running.
    """
    loop = asyncio.get_running_loop()
    ctx = contextvars.copy_context()
    fut = loop.run_in_executor(_get_worker_pool(), functools.partial(ctx.run, func))
    try:
        return await asyncio.shield(fut)
    except asyncio.CancelledError:
        while not fut.done():
            try:
                await asyncio.wait({fut})
            except asyncio.CancelledError:
                continue
        if not fut.cancelled():
            fut.exception()  # mark retrieved
        raise
