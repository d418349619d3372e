"""Shared fixtures: isolated settings and captured log output per test."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from taskscope.foundation.config import clear_settings_cache
from taskscope.runtime.observability.logging import CaptureRenderer, configure_logging, reset_logging


@pytest.fixture(autouse=True)
def _isolated_settings() -> Iterator[None]:
    clear_settings_cache()
    yield
    clear_settings_cache()
    reset_logging()


@pytest.fixture
def capture() -> CaptureRenderer:
    """Route all structured logging into memory at DEBUG level."""
    renderer = CaptureRenderer()
    configure_logging(renderer=renderer, level="DEBUG")
    return renderer
