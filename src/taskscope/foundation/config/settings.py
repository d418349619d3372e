"""Environment-based configuration using pydantic-settings.

Example:
    >>> from taskscope.foundation.config import get_settings
    >>> settings = get_settings()
    >>> settings.scope.interrupt_on_shutdown
    True
    >>> settings.logging.level
    'INFO'

    # Or with environment variables:
    # TASKSCOPE_SCOPE_STRAGGLER_WARNING=10
    # TASKSCOPE_LOG_LEVEL=DEBUG
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, PositiveFloat, PositiveInt, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ScopeSettings(BaseSettings):
    """Scope engine behaviour."""

    model_config = SettingsConfigDict(
        env_prefix="TASKSCOPE_SCOPE_",
        extra="ignore",
    )

    interrupt_on_shutdown: bool = Field(
        default=True,
        description="Map a token signal to asyncio task cancellation so every await is a checkpoint",
    )
    straggler_warning: PositiveFloat = Field(
        default=5.0,
        description="Seconds between warnings while close waits on signalled subtasks",
    )
    track_suppressed: bool = Field(
        default=False,
        description="Attach dropped failure causes to AggregateError.suppressed",
    )
    max_workers: PositiveInt | None = Field(
        default=None,
        description="Worker threads for blocking subtasks (None = executor default)",
    )


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TASKSCOPE_LOG_",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json", "none"] = "console"

    @field_validator("level", mode="before")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v


class TaskscopeSettings(BaseSettings):
    """Root settings, loaded from TASKSCOPE_* environment variables and .env."""

    model_config = SettingsConfigDict(
        env_prefix="TASKSCOPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    debug: bool = Field(default=False, description="Enable debug mode")

    scope: ScopeSettings = Field(default_factory=ScopeSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @computed_field
    @property
    def effective_log_level(self) -> str:
        """DEBUG when debug mode is on, configured level otherwise."""
        return "DEBUG" if self.debug else self.logging.level


@lru_cache(maxsize=1)
def get_settings() -> TaskscopeSettings:
    """Get the global settings instance (cached)."""
    return TaskscopeSettings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing).

    After calling this, the next get_settings() call will
    reload configuration from environment.
    """
    get_settings.cache_clear()
