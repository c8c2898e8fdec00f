"""Unit tests for logging configuration."""

from __future__ import annotations

import json
import logging
import sys
from io import StringIO

import pytest
import structlog

from docker_publish.config import LoggingSettings
from docker_publish.logging import (
    bind_run_context,
    clear_run_context,
    get_logger,
    setup_logging,
)


@pytest.fixture(autouse=True)
def reset_logging() -> None:
    """Reset logging configuration before each test."""
    root = logging.getLogger()
    root.handlers.clear()

    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def capture_stream() -> StringIO:
    """Create a StringIO stream for capturing log output."""
    return StringIO()


@pytest.fixture
def json_settings() -> LoggingSettings:
    """Create LoggingSettings for JSON output to stderr."""
    return LoggingSettings(level="INFO", format="json")


def _capture(stream: StringIO) -> None:
    logging.getLogger().handlers[0].stream = stream  # type: ignore[attr-defined]


def test_default_handler_writes_to_stderr(json_settings: LoggingSettings) -> None:
    """Test that diagnostics never share stdout with relayed engine output."""
    setup_logging(json_settings)

    root = logging.getLogger()
    assert len(root.handlers) == 1
    handler = root.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr


def test_json_output_format(json_settings: LoggingSettings, capture_stream: StringIO) -> None:
    """Test that JSON format produces valid JSON output."""
    setup_logging(json_settings)
    _capture(capture_stream)

    get_logger("test.module").info("docker_build_started", tags=2)

    log_entry = json.loads(capture_stream.getvalue().strip())
    assert log_entry["event"] == "docker_build_started"
    assert log_entry["tags"] == 2
    assert log_entry["level"] == "info"
    assert log_entry["logger"] == "test.module"
    assert "timestamp" in log_entry


def test_console_output_format(capture_stream: StringIO) -> None:
    """Test that console format produces human-readable output."""
    setup_logging(LoggingSettings(level="DEBUG", format="console"))
    _capture(capture_stream)

    get_logger("test.module").debug("cache_seeded", ref="docker.io/img:latest")

    output = capture_stream.getvalue()
    assert "cache_seeded" in output
    assert "docker.io/img:latest" in output
    with pytest.raises(json.JSONDecodeError):
        json.loads(output.strip())


def test_log_level_filtering(json_settings: LoggingSettings, capture_stream: StringIO) -> None:
    """Test that events below the configured level are dropped."""
    setup_logging(json_settings)
    _capture(capture_stream)

    logger = get_logger("test.module")
    logger.debug("debug_message")
    assert capture_stream.getvalue() == ""

    logger.warning("warning_message")
    assert "warning_message" in capture_stream.getvalue()


def test_run_context_binding(json_settings: LoggingSettings, capture_stream: StringIO) -> None:
    """Test that the image and ref are attached to every event."""
    setup_logging(json_settings)
    _capture(capture_stream)

    bind_run_context(image="docker.io/my/testimage", ref="refs/heads/master")
    get_logger("module1").info("event1")
    get_logger("module2").info("event2")

    first, second = (json.loads(line) for line in capture_stream.getvalue().splitlines())
    for entry in (first, second):
        assert entry["image"] == "docker.io/my/testimage"
        assert entry["ref"] == "refs/heads/master"


def test_exception_formatting(json_settings: LoggingSettings, capture_stream: StringIO) -> None:
    """Test that exceptions are formatted into the event."""
    setup_logging(json_settings)
    _capture(capture_stream)

    try:
        raise ConnectionError("stream interrupted")
    except ConnectionError:
        get_logger("test.module").exception("docker_build_log_read_failed")

    log_entry = json.loads(capture_stream.getvalue().strip())
    assert log_entry["level"] == "error"
    assert "ConnectionError: stream interrupted" in log_entry["exception"]


def test_run_context_cleared(json_settings: LoggingSettings, capture_stream: StringIO) -> None:
    """Test that a cleared run context no longer reaches events."""
    setup_logging(json_settings)
    _capture(capture_stream)

    bind_run_context(image="docker.io/my/testimage", ref="refs/heads/master")
    clear_run_context()
    get_logger("test.module").info("event")

    log_entry = json.loads(capture_stream.getvalue().strip())
    assert "image" not in log_entry
    assert "ref" not in log_entry


def test_default_level_hides_progress(capture_stream: StringIO) -> None:
    """Test that informational events are hidden unless asked for."""
    setup_logging(LoggingSettings())
    _capture(capture_stream)

    get_logger("test.module").info("registry_login_started")

    assert capture_stream.getvalue() == ""
