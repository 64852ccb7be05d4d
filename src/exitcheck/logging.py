"""
Logging configuration.

structlog on top of stdlib logging, configured once per process, plus
helpers for binding exit-test context (``exit_test``, ``handler``) to every
entry logged by the current task.

Level and format come from the arguments, else from settings
(``EXITCHECK_LOG_LEVEL``, ``EXITCHECK_LOG_FORMAT``).

A parent and its children usually log into the same terminal, so every
entry carries the ``pid`` of the process that wrote it. The child logs to
``stderr`` only; nothing the library logs may end up in an observed
standard output stream.

Usage:
    from exitcheck.logging import configure_logging, get_logger
    configure_logging(level="DEBUG", format="json")
    logger = get_logger(__name__)
    logger.info("exit_test_spawned", argv=["python", "-m", "exitcheck", "run"])
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Literal, TextIO

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_configured = False


def _add_pid(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("pid", os.getpid())
    return event_dict


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.dev.ConsoleRenderer(
        colors=False,
        exception_formatter=structlog.dev.plain_traceback,
    )


def configure_logging(
    level: str | None = None,
    format: Literal["json", "console"] | None = None,
    stream: TextIO | None = None,
    force: bool = False,
) -> None:
    """
    Configure structured logging for the process.

    Only the first call takes effect unless ``force=True``; the child
    passes ``force`` to move everything onto its stderr.

    Args:
        level: Log level (overrides EXITCHECK_LOG_LEVEL)
        format: Output format (overrides EXITCHECK_LOG_FORMAT)
        stream: Destination stream (default: stderr)
        force: Reconfigure even if already configured
    """
    global _configured

    if _configured and not force:
        return

    from exitcheck.settings import get_settings

    settings = get_settings()
    numeric_level = getattr(logging, (level or settings.log_level).upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            _add_pid,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer((format or settings.log_format).lower()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stderr,
        level=numeric_level,
        force=True,
    )
    logging.getLogger("exitcheck").setLevel(numeric_level)

    _configured = True


def is_configured() -> bool:
    return _configured


def get_logger(name: str | None = None) -> Any:
    """Structured logger, normally ``get_logger(__name__)``."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Attach ``kwargs`` to every later entry logged by this task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Bind ``kwargs`` for the duration of the block.

    Example:
        with log_context(exit_test="test_mod:12:9#0", handler="local"):
            logger.info("exit_test_dispatched")
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
