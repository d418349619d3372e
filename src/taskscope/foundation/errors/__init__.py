"""Error taxonomy for taskscope.

- ErrorCode: Standard error codes for scope and subtask failures
- TaskScopeError and subclasses: the exceptions the engine raises
- ErrorInfo: Serializable failure record for summaries and logs
- Json* aliases: structured payload types
"""

from .errors import (
    FATAL_ERRORS,
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
    is_fatal,
)
from .types import JsonDict, JsonMapping, JsonPrimitive, JsonValue

__all__ = [
    # Codes & records
    "ErrorCode", "ErrorInfo", "FATAL_ERRORS", "is_fatal",
    # Exceptions
    "TaskScopeError", "ScopeClosedError", "WrongOwnerError", "UnjoinedScopeError",
    "IllegalAccessError", "CancelledError", "DeadlineExceededError", "TaskTimeoutError",
    "SubtaskFailure", "AggregateError",
    # Payload types
    "JsonDict", "JsonMapping", "JsonPrimitive", "JsonValue",
]
