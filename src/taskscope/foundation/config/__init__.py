"""Configuration management using pydantic-settings."""

from .settings import (
    LoggingSettings,
    ScopeSettings,
    TaskscopeSettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "LoggingSettings",
    "ScopeSettings",
    "TaskscopeSettings",
    "clear_settings_cache",
    "get_settings",
]
