"""Cooperative cancellation tokens.

A CancelToken is a one-way flag shared by a scope and every subtask it
started. Signalling is idempotent and safe from any thread; a signalled
token never resets. Child tokens link to a parent so a shutdown anywhere
above reaches every leaf of the task tree.

Subtask bodies observe the token at checkpoints:

    >>> async def crawl(urls):
    ...     for url in urls:
    ...         await checkpoint()      # raises CancelledError once signalled
    ...         await fetch(url)

    >>> def crunch(rows):               # blocking body run with blocking=True
    ...     token = current_token()
    ...     for row in rows:
    ...         token.raise_if_signalled()
    ...         process(row)
"""

from __future__ import annotations

import asyncio
import contextvars
import itertools
import threading
from typing import Callable

from taskscope.foundation.errors import CancelledError

__all__ = ["CancelToken", "current_token", "checkpoint", "sleep"]

# Token of the subtask running in the current context, set by the spawner
_current_token: contextvars.ContextVar[CancelToken | None] = contextvars.ContextVar(
    "current_token", default=None
)


class CancelToken:
    """Idempotent, thread-safe cancellation flag.

    Example:
        >>> token = CancelToken()
        >>> token.signal("shutdown")
        True
        >>> token.signal("again")
        False
        >>> token.reason
        'shutdown'
    """

    __slots__ = ("_event", "_lock", "_callbacks", "_reason", "_unlink", "_keys", "__weakref__")

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: dict[int, Callable[[], object]] = {}
        self._reason: str | None = None
        self._unlink: Callable[[], None] | None = None
        self._keys = itertools.count()

    def __repr__(self) -> str:
        return f"CancelToken(signalled={self.signalled}, reason={self._reason!r})"

    @property
    def signalled(self) -> bool:
        return self._event.is_set()

    def is_signalled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Reason given by the first signal() call."""
        return self._reason

    def signal(self, reason: str | None = None) -> bool:
        """Signal cancellation. Returns True only for the call that flipped the flag.

        Callbacks run on the calling thread, outside the token's lock.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            callbacks, self._callbacks = list(self._callbacks.values()), {}
        for cb in callbacks:
            cb()
        return True

    def add_callback(self, cb: Callable[[], object]) -> Callable[[], None]:
        """Run cb once when signalled (immediately if already signalled).

        Returns a function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                key = next(self._keys)
                self._callbacks[key] = cb
                return lambda: self._remove(key)
        cb()
        return _noop

    def _remove(self, key: int) -> None:
        with self._lock:
            self._callbacks.pop(key, None)

    def child(self) -> CancelToken:
        """Create a token that is signalled whenever this one is."""
        child = CancelToken()
        child._unlink = self.add_callback(lambda: child.signal(self._reason or "parent cancelled"))
        return child

    def detach(self) -> None:
        """Unlink from the parent token, if any. Used when a scope closes."""
        if self._unlink is not None:
            self._unlink()
            self._unlink = None

    def raise_if_signalled(self) -> None:
        if self._event.is_set():
            raise CancelledError(self._reason or "cancelled")

    def wait(self, timeout: float | None = None) -> bool:
        """Block the calling thread until signalled or timeout. Returns the flag.

        For blocking bodies running on worker threads; never call from the loop.
        """
        return self._event.wait(timeout)


def _noop() -> None:
    pass


def current_token() -> CancelToken | None:
    """Token of the subtask running in this context, or None outside any scope."""
    return _current_token.get()


def _set_current_token(token: CancelToken) -> None:
    _current_token.set(token)


async def checkpoint(token: CancelToken | None = None) -> None:
    """Cooperative cancellation checkpoint.

    Raises CancelledError if the token (default: current_token()) is
    signalled, then yields to the event loop so pending work can run.
    """
    token = token or _current_token.get()
    if token is not None:
        token.raise_if_signalled()
    await asyncio.sleep(0)
    if token is not None:
        token.raise_if_signalled()


async def sleep(delay: float, token: CancelToken | None = None) -> None:
    """Sleep for delay seconds, waking early with CancelledError if signalled."""
    token = token or _current_token.get()
    if token is None:
        await asyncio.sleep(delay)
        return
    token.raise_if_signalled()
    loop = asyncio.get_running_loop()
    waiter = loop.create_future()

    def wake() -> None:
        if not waiter.done():
            waiter.set_result(None)

    remove = token.add_callback(lambda: loop.call_soon_threadsafe(wake))
    try:
        await asyncio.wait({waiter}, timeout=max(delay, 0.0))
    finally:
        remove()
        waiter.cancel()
    token.raise_if_signalled()
