"""
Structured error types for exitcheck.

Every failure inside the exit-test machinery is raised as an
``ExitCheckError`` subclass carrying a category, structured context and an
optional chained cause. The hierarchy separates the three ways an exit test
can go wrong so that the assertion boundary can treat them differently.

Manifesto:
    - **Caller errors surface immediately:** an uncapturable value or an
      unregistered body is a bug at the call site; nothing is spawned.
    - **System failures never masquerade as test failures:** spawn, decode
      and handler failures become ``SYSTEM`` issues and a ``None`` result.
    - **Expectation mismatches are data, not exceptions:** they are only
      raised under the fail-fast ``require_exit`` convention.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        ExitCheckError                         │
        │            (category, context, cause, to_dict())              │
        ├──────────────────────────────────────────────────────────────┤
        │                                                               │
        │  CallerError              ExitTestSystemError                 │
        │  (CALLER)                 (SYSTEM)                            │
        │     │                        │                                │
        │  CaptureError             SpawnError                          │
        │  ExitTestNotRegistered    StatusDecodeError                   │
        │                           HandlerError                        │
        │                           BackchannelError                    │
        │                           CaptureDecodeError                  │
        │                           ExitTestNotFoundError               │
        │                                                               │
        │  ExpectationFailedError (EXPECTATION)                         │
        └──────────────────────────────────────────────────────────────┘

Tags:
    errors, exit-tests, error-taxonomy, exitcheck
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Normalized categories used for routing and reporting."""

    CALLER = "CALLER"              # Misuse at the call site
    CAPTURE = "CAPTURE"            # Value capture encode/decode
    REGISTRY = "REGISTRY"          # Body lookup
    SPAWN = "SPAWN"                # Child process could not start
    DECODE = "DECODE"              # Termination status could not be decoded
    HANDLER = "HANDLER"            # Handler-level failure
    BACKCHANNEL = "BACKCHANNEL"    # Issue forwarding channel
    EXPECTATION = "EXPECTATION"    # Condition did not match
    INTERNAL = "INTERNAL"          # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only non-None fields are emitted by ``to_dict()``; anything that does not
    fit a typed field goes into ``metadata``.
    """

    test_id: str | None = None
    source_location: str | None = None
    pid: int | None = None
    argv: list[str] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["test_id", "source_location", "pid", "argv"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ExitCheckError(Exception):
    """
    Base exception for all exitcheck errors.

    Subclasses set ``default_category``; callers may override it per
    instance. ``cause`` is chained as ``__cause__`` so tracebacks keep the
    original failure.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ExitCheckError:
        """
        Add context to this error (fluent API).

        Usage:
            raise SpawnError("Failed").with_context(argv=["python", "-m", "x"])
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CALLER ERRORS (surface immediately, the exit test never runs)
# =============================================================================


class CallerError(ExitCheckError):
    """The exit test was declared incorrectly at the call site."""

    default_category = ErrorCategory.CALLER


class CaptureError(CallerError):
    """A captured value cannot be encoded through its declared type."""

    default_category = ErrorCategory.CAPTURE

    def __init__(self, name: str, message: str, **kwargs: Any):
        super().__init__(f"Cannot capture '{name}': {message}", **kwargs)
        self.name = name


class ExitTestNotRegisteredError(CallerError):
    """The body is not reachable from its module and cannot be re-run."""

    default_category = ErrorCategory.REGISTRY


# =============================================================================
# SYSTEM FAILURES (recorded as SYSTEM issues, result is None)
# =============================================================================


class ExitTestSystemError(ExitCheckError):
    """The exit-test machinery itself failed."""

    default_category = ErrorCategory.HANDLER


class SpawnError(ExitTestSystemError):
    """The child process could not be started."""

    default_category = ErrorCategory.SPAWN


class StatusDecodeError(ExitTestSystemError):
    """A native termination status could not be decoded."""

    default_category = ErrorCategory.DECODE


class HandlerError(ExitTestSystemError):
    """A handler raised something that is not an ExitCheckError."""

    default_category = ErrorCategory.HANDLER


class BackchannelError(ExitTestSystemError):
    """Forwarded issues could not be read or written."""

    default_category = ErrorCategory.BACKCHANNEL


class CaptureDecodeError(ExitTestSystemError):
    """
    The child could not rebuild its captured values.

    Always indicates skew between the encoding and decoding process
    (different source, different declared types, truncated payload).
    """

    default_category = ErrorCategory.CAPTURE


class ExitTestNotFoundError(ExitTestSystemError):
    """The child has no body registered under the requested ID."""

    default_category = ErrorCategory.REGISTRY

    def __init__(self, test_id: Any, **kwargs: Any):
        super().__init__(f"No exit test registered for {test_id}", **kwargs)
        self.test_id = test_id


# =============================================================================
# EXPECTATION FAILURES
# =============================================================================


class ExpectationFailedError(ExitCheckError):
    """Raised by ``require_exit`` after the issue has been recorded."""

    default_category = ErrorCategory.EXPECTATION

    def __init__(self, message: str, *, issue: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.issue = issue


def is_caller_error(error: BaseException) -> bool:
    """Whether ``error`` should surface at the call site instead of being recorded."""
    return isinstance(error, CallerError)


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of any exception, defaulting to INTERNAL."""
    if isinstance(error, ExitCheckError):
        return error.category
    if isinstance(error, OSError):
        return ErrorCategory.SPAWN
    return ErrorCategory.INTERNAL
