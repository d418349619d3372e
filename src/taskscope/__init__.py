"""Taskscope - structured concurrency for asyncio task trees.

Every concurrent subtask belongs to a Scope. A scope's owner forks work,
joins, and reads results through a completion policy; leaving the scope
guarantees no subtask is still running. Cancellation is cooperative and
cascades down nested scopes through linked tokens.

Quick Start:
    >>> from taskscope import Scope, WaitAllOrFail
    >>>
    >>> async def handle(request):
    ...     async with Scope(WaitAllOrFail(), name="handle") as scope:
    ...         user = scope.fork(lambda: fetch_user(request.user_id))
    ...         order = scope.fork(lambda: fetch_order(request.order_id))
    ...         (await scope.join()).aggregate()
    ...     return user.get(), order.get()

Policies:
    >>> from taskscope import Scope, FirstSuccess
    >>>
    >>> async with Scope(FirstSuccess()) as scope:
    ...     scope.fork(query_primary)
    ...     scope.fork(query_replica)
    ...     answer = (await scope.join()).aggregate()

Helpers:
    >>> from taskscope import parallel_all, race, with_timeout, map_bounded
    >>>
    >>> a, b = await parallel_all(load_a, load_b)
    >>> page = await with_timeout(2.0, lambda: fetch(url))
    >>> pages = await map_bounded(fetch, urls, limit=8)

Blocking work runs on worker threads and polls its token:
    >>> def crunch():
    ...     token = current_token()
    ...     while not token.signalled:
    ...         step()
    >>> scope.fork(crunch, blocking=True)

Configuration (environment, prefix TASKSCOPE_):
    TASKSCOPE_SCOPE_INTERRUPT_ON_SHUTDOWN, TASKSCOPE_SCOPE_STRAGGLER_WARNING,
    TASKSCOPE_SCOPE_TRACK_SUPPRESSED, TASKSCOPE_SCOPE_MAX_WORKERS,
    TASKSCOPE_LOG_LEVEL, TASKSCOPE_LOG_FORMAT, TASKSCOPE_DEBUG
"""

__version__ = "0.1.0"

# Errors
from .foundation.errors import (
    AggregateError,
    CancelledError,
    DeadlineExceededError,
    ErrorCode,
    ErrorInfo,
    IllegalAccessError,
    ScopeClosedError,
    SubtaskFailure,
    TaskScopeError,
    TaskTimeoutError,
    UnjoinedScopeError,
    WrongOwnerError,
)

# Configuration
from .foundation.config import (
    LoggingSettings,
    ScopeSettings,
    TaskscopeSettings,
    clear_settings_cache,
    get_settings,
)

# Engine
from .runtime.concurrency import (
    AsyncioSpawner,
    CancelToken,
    CollectAll,
    CompletionPolicy,
    FirstCompletion,
    FirstSuccess,
    PolicyView,
    Scope,
    ScopeState,
    ScopeSummary,
    Settled,
    SettledStatus,
    Spawner,
    SubtaskHandle,
    SubtaskState,
    WaitAllOrFail,
    all_settled,
    checkpoint,
    current_token,
    delay_then_fail,
    fallback,
    map_bounded,
    new_scope,
    parallel_all,
    race,
    race_first_success,
    retry_with_backoff,
    run_blocking,
    shutdown_worker_pool,
    sleep,
    with_timeout,
)

# Logging
from .runtime.observability.logging import configure_logging, get_logger, log_context

__all__ = [
    # Version
    "__version__",
    # Errors
    "TaskScopeError", "ScopeClosedError", "WrongOwnerError", "UnjoinedScopeError",
    "IllegalAccessError", "CancelledError", "DeadlineExceededError", "TaskTimeoutError",
    "SubtaskFailure", "AggregateError", "ErrorCode", "ErrorInfo",
    # Configuration
    "TaskscopeSettings", "ScopeSettings", "LoggingSettings", "get_settings", "clear_settings_cache",
    # Scopes & subtasks
    "Scope", "ScopeState", "ScopeSummary", "new_scope", "SubtaskHandle", "SubtaskState",
    # Tokens
    "CancelToken", "current_token", "checkpoint", "sleep",
    # Policies
    "CompletionPolicy", "PolicyView", "WaitAllOrFail", "FirstSuccess", "FirstCompletion",
    "CollectAll", "Settled", "SettledStatus",
    # Host runtime
    "Spawner", "AsyncioSpawner", "run_blocking", "shutdown_worker_pool",
    # Helpers
    "parallel_all", "race_first_success", "race", "with_timeout", "delay_then_fail",
    "all_settled", "map_bounded", "retry_with_backoff", "fallback",
    # Logging
    "configure_logging", "get_logger", "log_context",
]
