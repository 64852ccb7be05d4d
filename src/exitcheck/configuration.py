"""Per-context configuration: where issues go and which handler runs exit tests.

The configuration travels with the calling context (a ``ContextVar``), so
concurrent or mocked test runs each see their own handler. Code that never
installs one gets ``Configuration.default()``: issues are logged and exit
tests run in real child processes.

Usage:
    events = []
    config = Configuration(
        event_handler=events.append,
        exit_test_handler=StaticResultHandler(ExitTestResult(StatusAtExit.exit_code(0))),
    )
    with use_configuration(config):
        await expect_exit(ExitCondition.success(), body)
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import TYPE_CHECKING

from exitcheck.logging import get_logger

if TYPE_CHECKING:
    from exitcheck.handlers._types import ExitTestHandler
    from exitcheck.issues import Event

logger = get_logger(__name__)

EventHandler = Callable[["Event"], None]


def log_event(event: Event) -> None:
    """Event handler that writes recorded issues to the log."""
    issue = event.issue
    if issue is None:
        return
    log = logger.error if issue.is_failure else logger.warning
    log(
        "issue_recorded",
        kind=issue.kind.value,
        description=issue.description,
        source_location=str(issue.source_location) if issue.source_location else None,
    )


@dataclass
class Configuration:
    """Settings for one test run.

    Attributes:
        event_handler: Receives every recorded ``Event``. ``None`` logs them.
        exit_test_handler: Runs exit tests. ``None`` means exit tests cannot
            run, which is recorded as a system failure at each call site.
    """

    event_handler: EventHandler | None = None
    exit_test_handler: ExitTestHandler | None = None

    def handle_event(self, event: Event) -> None:
        if self.event_handler is None:
            log_event(event)
        else:
            self.event_handler(event)

    @classmethod
    def default(cls) -> Configuration:
        """Logging event handler and the real subprocess handler."""
        from exitcheck.handlers.local_process import LocalProcessHandler

        return cls(event_handler=log_event, exit_test_handler=LocalProcessHandler())


_current: ContextVar[Configuration | None] = ContextVar("exitcheck_configuration", default=None)
_default: Configuration | None = None
_default_lock = threading.Lock()


def current_configuration() -> Configuration:
    """The configuration bound to this context, or the process default."""
    global _default

    config = _current.get()
    if config is not None:
        return config
    with _default_lock:
        if _default is None:
            _default = Configuration.default()
        return _default


@contextmanager
def use_configuration(config: Configuration) -> Iterator[Configuration]:
    """Bind ``config`` for the duration of the block (and tasks spawned in it)."""
    token = _current.set(config)
    try:
        yield config
    finally:
        _current.reset(token)
