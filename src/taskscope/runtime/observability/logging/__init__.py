"""Structured logging module: context-aware logging for scopes and subtasks."""

from .logger import (
    BoundLogger,
    CaptureRenderer,
    ConsoleRenderer,
    JsonRenderer,
    LogEntry,
    LogRenderer,
    NoOpRenderer,
    bind_context,
    configure_logging,
    current_context,
    get_logger,
    log_context,
    reset_logging,
)

__all__ = [
    "BoundLogger",
    "CaptureRenderer",
    "ConsoleRenderer",
    "JsonRenderer",
    "LogEntry",
    "LogRenderer",
    "NoOpRenderer",
    "bind_context",
    "configure_logging",
    "current_context",
    "get_logger",
    "log_context",
    "reset_logging",
]
