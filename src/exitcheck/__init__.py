"""
exitcheck - exit tests for Python.

An exit test runs a test body in a fresh interpreter and checks how that
process terminated: a given exit code, any failure, or a signal. Use it for
code that ends the process (``sys.exit``, ``os._exit``, ``os.abort``) and
therefore cannot be observed from inside the test runner.

Example:
    import sys
    from exitcheck import ExitCondition, expect_exit

    async def test_exits_with_123():
        code = 123

        def body():
            sys.exit(code)

        await expect_exit(ExitCondition.exit_code(123), body)
"""

__version__ = "0.1.0"

from exitcheck.configuration import Configuration, current_configuration, use_configuration
from exitcheck.entry_point import ExitTest, current_exit_test
from exitcheck.errors import (
    CaptureDecodeError,
    CaptureError,
    ExitCheckError,
    ExitTestNotFoundError,
    ExitTestNotRegisteredError,
    ExitTestSystemError,
    ExpectationFailedError,
    HandlerError,
    SpawnError,
    StatusDecodeError,
)
from exitcheck.expectations import expect_exit, require_exit
from exitcheck.handlers import ExitTestHandler, ExitTestResult, ObservedStream
from exitcheck.issues import (
    Event,
    ErrorSnapshot,
    EventKind,
    Issue,
    IssueKind,
    Severity,
    SourceLocation,
    check,
    record_error,
    record_issue,
)
from exitcheck.registry import ExitTestID
from exitcheck.status import ExitCondition, StatusAtExit

__all__ = [
    "CaptureDecodeError",
    "CaptureError",
    "Configuration",
    "ErrorSnapshot",
    "Event",
    "EventKind",
    "ExitCheckError",
    "ExitCondition",
    "ExitTest",
    "ExitTestHandler",
    "ExitTestID",
    "ExitTestNotFoundError",
    "ExitTestNotRegisteredError",
    "ExitTestResult",
    "ExitTestSystemError",
    "ExpectationFailedError",
    "HandlerError",
    "Issue",
    "IssueKind",
    "ObservedStream",
    "Severity",
    "SourceLocation",
    "SpawnError",
    "StatusAtExit",
    "StatusDecodeError",
    "check",
    "current_configuration",
    "current_exit_test",
    "expect_exit",
    "record_error",
    "record_issue",
    "require_exit",
    "use_configuration",
]
