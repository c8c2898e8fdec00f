"""Structured logging configuration for docker-publish.

This module configures structlog with support for:
- JSON and console output formats
- Run context binding (image, ref) for every event of a publish run

Diagnostic events are written to stderr so that stdout carries nothing but
the build, pull and push output relayed from the engine.

Example usage:
    >>> from docker_publish.config import LoggingSettings
    >>> from docker_publish.logging import setup_logging, get_logger, bind_run_context
    >>>
    >>> setup_logging(LoggingSettings(level="INFO", format="json"))
    >>> bind_run_context(image="docker.io/my/image", ref="refs/heads/master")
    >>> get_logger(__name__).info("docker_build_started", tags=2)
"""

from __future__ import annotations

import logging
import sys

import structlog

from docker_publish.config import LoggingSettings

_RUN_CONTEXT_KEYS = ("image", "ref")


def bind_run_context(image: str, ref: str) -> None:
    """Bind the image and ref being published to all subsequent logs.

    Args:
        image: Canonical image name being published
        ref: Source-control ref that triggered the run
    """
    structlog.contextvars.bind_contextvars(image=image, ref=ref)


def clear_run_context() -> None:
    """Remove the context bound by ``bind_run_context``."""
    structlog.contextvars.unbind_contextvars(*_RUN_CONTEXT_KEYS)


def setup_logging(config: LoggingSettings) -> None:
    """Configure structlog with the given configuration.

    Sets up the complete logging pipeline:
    - JSON or console rendering based on config.format
    - A single stderr handler
    - Timestamp, log level, and logger name processors

    Args:
        config: Logging settings
    """
    log_level = getattr(logging, config.level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    root_logger.addHandler(handler)

    if config.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:  # console
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            # image / ref from bind_run_context
            structlog.contextvars.merge_contextvars,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Configured structlog BoundLogger instance
    """
    return structlog.get_logger(name)
