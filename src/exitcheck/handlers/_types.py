"""Exit-test handler types and protocol.

This module defines the seam between an expectation and whatever actually
runs the exit test:

- ExitTestHandler: Protocol for running one exit test body
- ExitTestResult: What a handler reports back
- ObservedStream: Standard streams a caller may ask to observe

Design Notes:
    A handler is the only pluggable part of the machinery. The real handler
    re-invokes the interpreter (``local_process``); test doubles return
    canned results (``mock_handlers``). Expectations never know which one
    they are talking to.

Architecture:

    .. code-block:: text

        ┌─────────────────────────────────────────────────────────────┐
        │                    _types.py Module Map                     │
        ├─────────────────────────────────────────────────────────────┤
        │                                                             │
        │  ┌─────────────────┐    ┌──────────────────────────────┐   │
        │  │ ExitTestHandler │    │       ExitTestResult         │   │
        │  │   (Protocol)    │───▶│  status_at_exit              │   │
        │  │  async __call__ │    │  standard_output_content     │   │
        │  └─────────────────┘    │  standard_error_content      │   │
        │           ▲             └──────────────────────────────┘   │
        │           │                                                 │
        │  ┌────────┴────────┐                                        │
        │  │ ObservedStream  │  STANDARD_OUTPUT / STANDARD_ERROR      │
        │  └─────────────────┘                                        │
        └─────────────────────────────────────────────────────────────┘

See Also:
    exitcheck.handlers._base: BaseExitTestHandler
    exitcheck.handlers.local_process: the real handler
    exitcheck.handlers.mock_handlers: test doubles
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from exitcheck.status import StatusAtExit

if TYPE_CHECKING:
    from exitcheck.capture import CapturedValue
    from exitcheck.registry import ExitTestID


class ObservedStream(str, Enum):
    """A standard stream of the child whose bytes the caller wants back."""

    STANDARD_OUTPUT = "stdout"
    STANDARD_ERROR = "stderr"


def normalize_observing(observing: Iterable[ObservedStream | str] | None) -> frozenset[ObservedStream]:
    """Accept enum members or their values ("stdout", "stderr")."""
    if not observing:
        return frozenset()
    return frozenset(ObservedStream(stream) for stream in observing)


@dataclass(frozen=True)
class ExitTestResult:
    """Outcome of one exit test.

    Streams that were not observed are always empty, whatever the child
    wrote to them.
    """

    status_at_exit: StatusAtExit
    standard_output_content: bytes = b""
    standard_error_content: bytes = b""

    def restricted_to(self, observing: frozenset[ObservedStream]) -> ExitTestResult:
        """Copy with unobserved streams emptied."""
        return ExitTestResult(
            status_at_exit=self.status_at_exit,
            standard_output_content=(
                self.standard_output_content if ObservedStream.STANDARD_OUTPUT in observing else b""
            ),
            standard_error_content=(
                self.standard_error_content if ObservedStream.STANDARD_ERROR in observing else b""
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status_at_exit": self.status_at_exit.to_dict(),
            "standard_output_content": self.standard_output_content.decode("utf-8", errors="replace"),
            "standard_error_content": self.standard_error_content.decode("utf-8", errors="replace"),
        }


@runtime_checkable
class ExitTestHandler(Protocol):
    """Runs one exit test body and reports how it terminated.

    Handlers may raise; the caller turns any exception into a system
    failure at the call site. They must let ``asyncio.CancelledError``
    propagate.
    """

    async def __call__(
        self,
        test_id: ExitTestID,
        captured_values: Sequence[CapturedValue],
        observing: frozenset[ObservedStream],
    ) -> ExitTestResult:
        ...
