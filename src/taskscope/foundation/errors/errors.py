"""Error taxonomy for scopes and subtasks.

Every engine error derives from TaskScopeError and carries an ErrorCode for
programmatic handling. ErrorInfo is the serializable record of a failure,
used in scope summaries and log output.
"""

from __future__ import annotations

import traceback
from enum import StrEnum
from typing import Annotated, ClassVar, Self

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class ErrorCode(StrEnum):
    """Standard error codes for scope and subtask failures."""
    SCOPE_CLOSED = "SCOPE_CLOSED"
    WRONG_OWNER = "WRONG_OWNER"
    UNJOINED_SCOPE = "UNJOINED_SCOPE"
    SUBTASK_FAILED = "SUBTASK_FAILED"
    CANCELLED = "CANCELLED"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    TIMEOUT = "TIMEOUT"
    AGGREGATE = "AGGREGATE"
    ILLEGAL_ACCESS = "ILLEGAL_ACCESS"
    UNKNOWN = "UNKNOWN"


# Host-level failures that must never travel the ordinary failure channel
FATAL_ERRORS: tuple[type[BaseException], ...] = (MemoryError, SystemExit, KeyboardInterrupt)

# Codes that describe misuse of the API rather than a runtime outcome
_DEFECT_CODES: frozenset[ErrorCode] = frozenset({
    ErrorCode.SCOPE_CLOSED,
    ErrorCode.WRONG_OWNER,
    ErrorCode.UNJOINED_SCOPE,
    ErrorCode.ILLEGAL_ACCESS,
})


def is_fatal(exc: BaseException) -> bool:
    """Whether exc is a host-level failure that must be re-raised unwrapped."""
    return isinstance(exc, FATAL_ERRORS)


class ErrorInfo(BaseModel):
    """Structured record of a failure.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        error_type: Class name of the original exception
        subtask: Name of the subtask that produced the error, if any
        details: Optional formatted traceback
    """

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        json_schema_extra={
            "title": "Error Info",
            "examples": [{
                "message": "connection reset",
                "code": "SUBTASK_FAILED",
                "error_type": "ConnectionError",
                "subtask": "fetch-orders",
            }],
        },
    )

    message: Annotated[str, Field(min_length=1, description="Human-readable error message")]
    code: ErrorCode = Field(default=ErrorCode.UNKNOWN, description="Machine-readable error classification")
    error_type: str = Field(default="Exception", description="Class name of the original exception")
    subtask: str | None = Field(default=None, description="Subtask that produced the error")
    details: str | None = Field(default=None, repr=False)

    @field_validator("message", mode="before")
    @classmethod
    def _ensure_message(cls, v: object) -> str:
        """Accept exceptions and empty messages."""
        text = str(v) if isinstance(v, BaseException) else v
        return text or "<no message>"  # type: ignore[return-value]

    @computed_field
    @property
    def is_defect(self) -> bool:
        """Whether this error signals API misuse rather than a task outcome."""
        return self.code in _DEFECT_CODES

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        subtask: str | None = None,
        include_trace: bool = False,
    ) -> Self:
        """Create from exception, classifying engine errors by their own code."""
        code = exc.code if isinstance(exc, TaskScopeError) else ErrorCode.SUBTASK_FAILED
        return cls(
            message=str(exc) or type(exc).__name__,
            code=code,
            error_type=type(exc).__name__,
            subtask=subtask,
            details="".join(traceback.format_exception(exc)) if include_trace else None,
        )

    def render(self) -> str:
        where = f" in {self.subtask}" if self.subtask else ""
        return f"[{self.code}] {self.error_type}{where}: {self.message}"

    __str__ = render


# ─────────────────────────────────────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────────────────────────────────────


class TaskScopeError(Exception):
    """Base class for all scope engine errors."""

    code: ClassVar[ErrorCode] = ErrorCode.UNKNOWN

    def info(self, *, subtask: str | None = None) -> ErrorInfo:
        return ErrorInfo.from_exception(self, subtask=subtask)


class ScopeClosedError(TaskScopeError):
    """Fork attempted on a scope that is shutting down or closed. The work never runs."""

    code = ErrorCode.SCOPE_CLOSED


class WrongOwnerError(TaskScopeError):
    """Owner-only scope operation called from a different task."""

    code = ErrorCode.WRONG_OWNER


class UnjoinedScopeError(TaskScopeError):
    """Scope exited with subtasks but join was never attempted."""

    code = ErrorCode.UNJOINED_SCOPE


class IllegalAccessError(TaskScopeError):
    """Result read before join returned, or from a handle that has no result."""

    code = ErrorCode.ILLEGAL_ACCESS


class CancelledError(TaskScopeError):
    """Work terminated by a shutdown signal before completing.

    Distinct from asyncio.CancelledError: this is the engine's own cooperative
    cancellation outcome and is an ordinary Exception.
    """

    code = ErrorCode.CANCELLED


class DeadlineExceededError(TaskScopeError):
    """join_until's deadline elapsed before the scope became quiescent."""

    code = ErrorCode.DEADLINE_EXCEEDED


class TaskTimeoutError(TaskScopeError, TimeoutError):
    """Raised by the timeout sibling of with_timeout."""

    code = ErrorCode.TIMEOUT


class SubtaskFailure(TaskScopeError):
    """Wraps the error a subtask body reported."""

    __slots__ = ("cause", "subtask")
    code = ErrorCode.SUBTASK_FAILED

    def __init__(self, cause: BaseException, subtask: str | None = None) -> None:
        self.cause = cause
        self.subtask = subtask
        where = f"subtask {subtask!r}" if subtask else "subtask"
        super().__init__(f"{where} failed: {type(cause).__name__}: {cause}")


class AggregateError(TaskScopeError):
    """Policy aggregation failed.

    Attributes:
        cause: The failure the policy chose to surface (None when nothing ran)
        suppressed: Earlier failures the policy dropped, when tracking is enabled
    """

    __slots__ = ("cause", "suppressed")
    code = ErrorCode.AGGREGATE

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        suppressed: tuple[BaseException, ...] = (),
    ) -> None:
        self.cause = cause
        self.suppressed = suppressed
        detail = f": {type(cause).__name__}: {cause}" if cause is not None else ""
        super().__init__(f"{message}{detail}")
        if cause is not None:
            self.__cause__ = cause
