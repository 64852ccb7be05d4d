"""Exit-test handlers.

``LocalProcessHandler`` is resolved on first access: it pulls in the
process engine and the child entry point, which themselves depend on the
types defined here.
"""

from typing import Any

from exitcheck.handlers._base import BaseExitTestHandler
from exitcheck.handlers._types import (
    ExitTestHandler,
    ExitTestResult,
    ObservedStream,
    normalize_observing,
)
from exitcheck.handlers.mock_handlers import (
    FailingHandler,
    HandlerCall,
    RecordingHandler,
    SequenceHandler,
    StaticResultHandler,
)

__all__ = [
    "BaseExitTestHandler",
    "ExitTestHandler",
    "ExitTestResult",
    "FailingHandler",
    "HandlerCall",
    "LocalProcessHandler",
    "ObservedStream",
    "RecordingHandler",
    "SequenceHandler",
    "StaticResultHandler",
    "normalize_observing",
]


def __getattr__(name: str) -> Any:
    if name == "LocalProcessHandler":
        from exitcheck.handlers.local_process import LocalProcessHandler

        return LocalProcessHandler
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
