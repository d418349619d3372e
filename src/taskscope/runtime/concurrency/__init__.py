"""Structured concurrency: scopes, subtask handles, tokens and policies.

Key Components:
    - Scope: owns forked subtasks; join, shutdown, close
    - SubtaskHandle: the owner's read-after-join view of one subtask
    - CancelToken: cooperative, thread-safe cancellation shared down the tree
    - Completion policies: WaitAllOrFail, FirstSuccess, FirstCompletion, CollectAll
    - Helpers: parallel_all, race_first_success, race, with_timeout, map_bounded
    - Spawner: host capability that starts subtask bodies

Example:
    >>> from taskscope.runtime.concurrency import Scope, WaitAllOrFail
    >>>
    >>> async with Scope(WaitAllOrFail()) as scope:
    ...     a = scope.fork(load_a)
    ...     b = scope.fork(load_b)
    ...     view = await scope.join()
    >>> view.aggregate()
"""

from __future__ import annotations

# Tokens
from .token import CancelToken, checkpoint, current_token, sleep

# Subtasks & scopes
from .task import SubtaskHandle, SubtaskState
from .scope import Scope, ScopeState, ScopeSummary, new_scope

# Policies
from .policy import (
    CollectAll,
    CompletionPolicy,
    FirstCompletion,
    FirstSuccess,
    PolicyView,
    Settled,
    SettledStatus,
    WaitAllOrFail,
)

# Host runtime
from .spawner import AsyncioSpawner, Spawner, run_blocking, shutdown_worker_pool

# Helpers
from .wait import (
    all_settled,
    delay_then_fail,
    fallback,
    map_bounded,
    parallel_all,
    race,
    race_first_success,
    retry_with_backoff,
    with_timeout,
)

__all__ = [
    # Tokens
    "CancelToken", "checkpoint", "current_token", "sleep",
    # Subtasks & scopes
    "SubtaskHandle", "SubtaskState", "Scope", "ScopeState", "ScopeSummary", "new_scope",
    # Policies
    "CompletionPolicy", "PolicyView", "WaitAllOrFail", "FirstSuccess", "FirstCompletion",
    "CollectAll", "Settled", "SettledStatus",
    # Host runtime
    "Spawner", "AsyncioSpawner", "run_blocking", "shutdown_worker_pool",
    # Helpers
    "parallel_all", "race_first_success", "race", "with_timeout", "delay_then_fail",
    "all_settled", "map_bounded", "retry_with_backoff", "fallback",
]
