"""Tests for structured logging renderers and context propagation."""

from __future__ import annotations

import io

import orjson
import pytest

from taskscope.runtime.observability.logging import (
    CaptureRenderer,
    ConsoleRenderer,
    JsonRenderer,
    NoOpRenderer,
    bind_context,
    configure_logging,
    current_context,
    get_logger,
    log_context,
)


def test_json_renderer_writes_json_lines() -> None:
    out = io.StringIO()
    configure_logging(format="json", level="INFO", output=out)
    get_logger("worker", shard=3).info("batch done", size=10)
    record = orjson.loads(out.getvalue().splitlines()[0])
    assert record["event"] == "batch done"
    assert record["level"] == "info"
    assert record["logger"] == "worker"
    assert record["shard"] == 3
    assert record["size"] == 10
    assert "timestamp" in record


def test_console_renderer_plain_output() -> None:
    out = io.StringIO()
    configure_logging(renderer=ConsoleRenderer(output=out, colors=False, show_timestamp=False))
    get_logger("worker").warning("slow subtask", subtask="fetch", elapsed=1.5)
    line = out.getvalue().strip()
    assert line.startswith("[warning] slow subtask")
    assert 'subtask="fetch"' in line
    assert "elapsed=1.5" in line


def test_console_renderer_prints_exception() -> None:
    out = io.StringIO()
    configure_logging(renderer=ConsoleRenderer(output=out, colors=False))
    try:
        raise ValueError("boom")
    except ValueError as e:
        get_logger().exception("failed", e)
    assert "ValueError: boom" in out.getvalue()


def test_level_filtering(capture: CaptureRenderer) -> None:
    configure_logging(renderer=capture, level="WARNING")
    log = get_logger("filter")
    log.debug("hidden")
    log.info("hidden too")
    log.error("shown")
    assert capture.events() == ["shown"]


def test_level_follows_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKSCOPE_LOG_LEVEL", "ERROR")
    renderer = configure_logging(renderer=CaptureRenderer())
    log = get_logger()
    log.warning("dropped")
    log.error("kept")
    assert renderer.events() == ["kept"]


def test_none_format_is_silent() -> None:
    assert isinstance(configure_logging(format="none"), NoOpRenderer)


def test_unknown_format() -> None:
    with pytest.raises(ValueError):
        configure_logging(format="xml")


def test_bind_and_unbind(capture: CaptureRenderer) -> None:
    log = get_logger("svc").bind(request="r1", user="u1").unbind("user")
    log.info("handled")
    ctx = capture.entries[0].context
    assert ctx["request"] == "r1"
    assert "user" not in ctx
    assert ctx["logger"] == "svc"


def test_log_context_is_scoped(capture: CaptureRenderer) -> None:
    log = get_logger()
    with log_context(tenant="acme"):
        assert current_context()["tenant"] == "acme"
        log.info("inside")
    log.info("outside")
    assert capture.entries[0].context["tenant"] == "acme"
    assert "tenant" not in capture.entries[1].context


@pytest.mark.asyncio
async def test_bind_context_stays_in_task(capture: CaptureRenderer) -> None:
    import asyncio

    async def child() -> None:
        bind_context(subtask="child")
        get_logger().info("from child")

    await asyncio.create_task(child())
    get_logger().info("from parent")
    assert capture.entries[0].context["subtask"] == "child"
    assert "subtask" not in capture.entries[1].context
