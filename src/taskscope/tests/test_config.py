"""Tests for environment-driven settings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from taskscope import AsyncioSpawner, FirstSuccess, ScopeSettings, get_settings
from taskscope.foundation.config import clear_settings_cache


def test_defaults() -> None:
    settings = get_settings()
    assert settings.debug is False
    assert settings.scope.interrupt_on_shutdown is True
    assert settings.scope.straggler_warning == 5.0
    assert settings.scope.track_suppressed is False
    assert settings.scope.max_workers is None
    assert settings.logging.level == "INFO"
    assert settings.logging.format == "console"


def test_settings_are_cached() -> None:
    assert get_settings() is get_settings()


def test_scope_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKSCOPE_SCOPE_INTERRUPT_ON_SHUTDOWN", "false")
    monkeypatch.setenv("TASKSCOPE_SCOPE_STRAGGLER_WARNING", "0.5")
    monkeypatch.setenv("TASKSCOPE_SCOPE_MAX_WORKERS", "4")
    clear_settings_cache()
    settings = get_settings()
    assert settings.scope.interrupt_on_shutdown is False
    assert settings.scope.straggler_warning == 0.5
    assert settings.scope.max_workers == 4
    assert AsyncioSpawner().interrupt is False


def test_explicit_arguments_override_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKSCOPE_SCOPE_INTERRUPT_ON_SHUTDOWN", "false")
    clear_settings_cache()
    assert AsyncioSpawner(interrupt=True).interrupt is True


def test_track_suppressed_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKSCOPE_SCOPE_TRACK_SUPPRESSED", "1")
    clear_settings_cache()
    assert FirstSuccess()._track_suppressed is True
    assert FirstSuccess(track_suppressed=False)._track_suppressed is False


def test_log_level_is_normalized(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKSCOPE_LOG_LEVEL", "warning")
    monkeypatch.setenv("TASKSCOPE_LOG_FORMAT", "json")
    clear_settings_cache()
    settings = get_settings()
    assert settings.logging.level == "WARNING"
    assert settings.logging.format == "json"
    assert settings.effective_log_level == "WARNING"


def test_debug_forces_debug_level(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKSCOPE_DEBUG", "true")
    clear_settings_cache()
    assert get_settings().effective_log_level == "DEBUG"


def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKSCOPE_SCOPE_MAX_WORKERS", "0")
    with pytest.raises(ValidationError):
        ScopeSettings()
    monkeypatch.setenv("TASKSCOPE_SCOPE_MAX_WORKERS", "2")
    monkeypatch.setenv("TASKSCOPE_SCOPE_STRAGGLER_WARNING", "-1")
    with pytest.raises(ValidationError):
        ScopeSettings()
