"""Mock exit-test handlers: test doubles for expectation paths.

Provides handlers that extend ``BaseExitTestHandler`` for exercising
``expect_exit`` / ``require_exit`` without spawning anything.

Architecture::

    BaseExitTestHandler
    ├── StaticResultHandler   (always returns the same result)
    ├── FailingHandler        (always raises)
    ├── SequenceHandler       (scripted results, one per call)
    └── RecordingHandler      (wraps another handler, records calls)

Example::

    from exitcheck.handlers.mock_handlers import StaticResultHandler

    handler = StaticResultHandler(ExitTestResult(StatusAtExit.exit_code(123)))
    with use_configuration(Configuration(exit_test_handler=handler)):
        result = await expect_exit(ExitCondition.exit_code(123), body)

See Also:
    exitcheck.handlers._base: BaseExitTestHandler
    exitcheck.handlers.local_process: the real handler
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from exitcheck.errors import HandlerError
from exitcheck.handlers._base import BaseExitTestHandler
from exitcheck.handlers._types import ExitTestHandler, ExitTestResult, ObservedStream
from exitcheck.status import StatusAtExit

if TYPE_CHECKING:
    from exitcheck.capture import CapturedValue
    from exitcheck.registry import ExitTestID


# ---------------------------------------------------------------------------
# StaticResultHandler: always the same result
# ---------------------------------------------------------------------------

class StaticResultHandler(BaseExitTestHandler):
    """Handler that returns a fixed result for every exit test.

    Parameters
    ----------
    result
        The result to return. Defaults to a successful exit.
    """

    handler_name = "static"

    def __init__(self, result: ExitTestResult | None = None) -> None:
        self.result = result or ExitTestResult(StatusAtExit.exit_code(0))

    async def _do_run(
        self,
        test_id: ExitTestID,
        captured_values: Sequence[CapturedValue],
        observing: frozenset[ObservedStream],
    ) -> ExitTestResult:
        return self.result


# ---------------------------------------------------------------------------
# FailingHandler: always raises
# ---------------------------------------------------------------------------

class FailingHandler(BaseExitTestHandler):
    """Handler that raises on every call.

    Useful for the system-failure path of an expectation.

    Parameters
    ----------
    error
        The exception to raise. Non-``ExitCheckError`` exceptions reach the
        caller wrapped in ``HandlerError`` by the base class.

    Example::

        handler = FailingHandler(RuntimeError("fork failed"))
    """

    handler_name = "failing"

    def __init__(self, error: BaseException | None = None) -> None:
        self.error = error or HandlerError("Simulated handler failure")

    async def _do_run(
        self,
        test_id: ExitTestID,
        captured_values: Sequence[CapturedValue],
        observing: frozenset[ObservedStream],
    ) -> ExitTestResult:
        raise self.error


# ---------------------------------------------------------------------------
# SequenceHandler: scripted results
# ---------------------------------------------------------------------------

class SequenceHandler(BaseExitTestHandler):
    """Handler that returns scripted results in order.

    Each item is returned by one call; exception items are raised instead.
    Once the script is exhausted the last item repeats.

    Example::

        handler = SequenceHandler([
            ExitTestResult(StatusAtExit.exit_code(0)),
            ExitTestResult(StatusAtExit.signal(signal.SIGABRT)),
        ])
    """

    handler_name = "sequence"

    def __init__(self, results: Iterable[ExitTestResult | BaseException]) -> None:
        self._results = list(results)
        if not self._results:
            raise ValueError("SequenceHandler needs at least one result")
        self._index = 0

    @property
    def calls(self) -> int:
        return self._index

    async def _do_run(
        self,
        test_id: ExitTestID,
        captured_values: Sequence[CapturedValue],
        observing: frozenset[ObservedStream],
    ) -> ExitTestResult:
        item = self._results[min(self._index, len(self._results) - 1)]
        self._index += 1
        if isinstance(item, BaseException):
            raise item
        return item


# ---------------------------------------------------------------------------
# RecordingHandler: records every call
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HandlerCall:
    """One recorded handler invocation."""

    test_id: ExitTestID
    captured_values: tuple[CapturedValue, ...]
    observing: frozenset[ObservedStream]


class RecordingHandler(BaseExitTestHandler):
    """Handler that records its calls and delegates to another handler.

    Parameters
    ----------
    inner
        Handler that produces the results (default: ``StaticResultHandler()``).
    """

    handler_name = "recording"

    def __init__(self, inner: ExitTestHandler | None = None) -> None:
        self.inner = inner or StaticResultHandler()
        self.calls: list[HandlerCall] = []

    async def _do_run(
        self,
        test_id: ExitTestID,
        captured_values: Sequence[CapturedValue],
        observing: frozenset[ObservedStream],
    ) -> ExitTestResult:
        self.calls.append(HandlerCall(test_id, tuple(captured_values), observing))
        return await self.inner(test_id, captured_values, observing)
