"""Base exit-test handler with shared lifecycle logic.

Architecture:

    .. code-block:: text

        ExitTestHandler (Protocol)
              │
              ▼
        BaseExitTestHandler
        └── __call__() → logging + error wrapping → _do_run()
              │
        ┌─────┴────────────────────────┐
        │                              │
        ▼                              ▼
    LocalProcessHandler          mock_handlers
    (real child process)         (canned results)

    .. code-block:: text

        __call__(test_id, captured_values, observing)
          ├── log: exit_test_dispatched
          ├── _do_run(...)  ← subclass implements
          ├── restrict result to observed streams
          ├── log: exit_test_completed
          ├── on ExitCheckError: log, re-raise with test_id context
          ├── on CancelledError: log, re-raise untouched
          └── on anything else: wrap in HandlerError
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING

from exitcheck.errors import ExitCheckError, HandlerError
from exitcheck.handlers._types import ExitTestResult, ObservedStream
from exitcheck.logging import get_logger, log_context

if TYPE_CHECKING:
    from exitcheck.capture import CapturedValue
    from exitcheck.registry import ExitTestID

logger = get_logger(__name__)


class BaseExitTestHandler:
    """Base class for handlers.

    Subclasses MUST implement ``_do_run`` and SHOULD set ``handler_name``.
    """

    handler_name: str = "base"

    async def __call__(
        self,
        test_id: ExitTestID,
        captured_values: Sequence[CapturedValue],
        observing: frozenset[ObservedStream],
    ) -> ExitTestResult:
        with log_context(handler=self.handler_name, exit_test=str(test_id)):
            logger.debug(
                "exit_test_dispatched",
                captures=[value.name for value in captured_values],
                observing=sorted(stream.value for stream in observing),
            )
            try:
                result = await self._do_run(test_id, captured_values, observing)
            except asyncio.CancelledError:
                logger.debug("exit_test_cancelled")
                raise
            except ExitCheckError as exc:
                if exc.context.test_id is None:
                    exc.context.test_id = str(test_id)
                logger.warning("exit_test_failed", **exc.to_dict())
                raise
            except Exception as exc:
                logger.warning("exit_test_failed", error=repr(exc))
                raise HandlerError(
                    f"{self.handler_name} handler failed: {exc}",
                    cause=exc,
                ).with_context(test_id=str(test_id), handler=self.handler_name) from exc

            result = result.restricted_to(observing)
            logger.debug("exit_test_completed", status_at_exit=str(result.status_at_exit))
        return result

    async def _do_run(
        self,
        test_id: ExitTestID,
        captured_values: Sequence[CapturedValue],
        observing: frozenset[ObservedStream],
    ) -> ExitTestResult:
        raise NotImplementedError
