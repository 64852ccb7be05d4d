"""Issues and events recorded during exit tests.

An ``Issue`` is anything a test wants reported: a failed expectation, a
caught error, a system failure of the exit-test machinery. Issues are
delivered as ``Event`` values to the event handler of the current
``Configuration``.

Issues recorded inside a child process are serialized with ``to_dict`` and
re-recorded in the parent through ``from_dict``. The live ``error`` object
does not cross the process boundary; the parent gets an ``ErrorSnapshot``
carrying the qualified type name and message of the original.
"""

from __future__ import annotations

import inspect
import sys
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IssueKind(str, Enum):
    """Kinds of issue the exit-test machinery records or forwards."""

    UNCONDITIONAL = "unconditional"
    EXPECTATION_FAILED = "expectation_failed"
    ERROR_CAUGHT = "error_caught"
    SYSTEM = "system"
    API_MISUSED = "api_misused"

    @property
    def summary(self) -> str:
        return _KIND_SUMMARIES[self]


_KIND_SUMMARIES = {
    IssueKind.UNCONDITIONAL: "Issue recorded",
    IssueKind.EXPECTATION_FAILED: "Expectation failed",
    IssueKind.ERROR_CAUGHT: "Caught error",
    IssueKind.SYSTEM: "A system failure occurred",
    IssueKind.API_MISUSED: "An API was misused",
}


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class SourceLocation:
    """A position in a source file. Lines and columns are 1-based."""

    filename: str
    line: int
    column: int = 0

    @classmethod
    def of_caller(cls, depth: int = 1) -> SourceLocation:
        """Location of the frame ``depth`` levels above the caller of this method."""
        frame = sys._getframe(depth + 1)
        info = inspect.getframeinfo(frame, context=0)
        column = 0
        positions = getattr(info, "positions", None)
        if positions is not None and positions.col_offset is not None:
            column = positions.col_offset + 1
        return cls(info.filename, info.lineno, column)

    def to_dict(self) -> dict[str, Any]:
        return {"filename": self.filename, "line": self.line, "column": self.column}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceLocation:
        return cls(data["filename"], int(data["line"]), int(data.get("column", 0)))

    def __str__(self) -> str:
        if self.column:
            return f"{self.filename}:{self.line}:{self.column}"
        return f"{self.filename}:{self.line}"


class ErrorSnapshot(Exception):
    """An error raised in another process, kept as its type name and message."""

    def __init__(self, type_name: str, message: str = "") -> None:
        super().__init__(message)
        self.type_name = type_name
        self.message = message

    @classmethod
    def of(cls, error: BaseException) -> ErrorSnapshot:
        if isinstance(error, ErrorSnapshot):
            return error
        error_type = type(error)
        return cls(f"{error_type.__module__}.{error_type.__qualname__}", str(error))

    @property
    def short_type_name(self) -> str:
        return self.type_name.rpartition(".")[2]

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type_name, "message": self.message}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorSnapshot:
        return cls(str(data["type"]), str(data.get("message", "")))

    def __repr__(self) -> str:
        return f"ErrorSnapshot({self.type_name!r}, {self.message!r})"


def _describe(error: BaseException) -> str:
    if isinstance(error, ErrorSnapshot):
        return f"{error.short_type_name}: {error.message}"
    return f"{type(error).__name__}: {error}"


@dataclass
class Issue:
    """A single recorded issue."""

    kind: IssueKind
    comments: list[str] = field(default_factory=list)
    source_location: SourceLocation | None = None
    severity: Severity = Severity.ERROR
    error: BaseException | None = field(default=None, compare=False, repr=False)
    error_description: str | None = None

    def __post_init__(self) -> None:
        if self.error is not None and self.error_description is None:
            self.error_description = _describe(self.error)

    @property
    def is_failure(self) -> bool:
        return self.severity is Severity.ERROR

    @property
    def description(self) -> str:
        text = self.kind.summary
        if self.error_description:
            text = f"{text}: {self.error_description}"
        if self.comments:
            text = f"{text}: " + "\n".join(self.comments)
        return text

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "kind": self.kind.value,
            "comments": list(self.comments),
            "severity": self.severity.value,
        }
        if self.source_location is not None:
            result["source_location"] = self.source_location.to_dict()
        if self.error is not None:
            result["error"] = ErrorSnapshot.of(self.error).to_dict()
        if self.error_description is not None:
            result["error_description"] = self.error_description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Issue:
        location = data.get("source_location")
        error: ErrorSnapshot | None = None
        if data.get("error"):
            error = ErrorSnapshot.from_dict(data["error"])
        elif data.get("error_description"):
            type_name, _, message = data["error_description"].partition(": ")
            error = ErrorSnapshot(type_name, message)
        return cls(
            kind=IssueKind(data["kind"]),
            comments=list(data.get("comments", [])),
            source_location=SourceLocation.from_dict(location) if location else None,
            severity=Severity(data.get("severity", Severity.ERROR.value)),
            error=error,
            error_description=data.get("error_description"),
        )

    def __str__(self) -> str:
        if self.source_location is not None:
            return f"{self.description} at {self.source_location}"
        return self.description


class EventKind(str, Enum):
    ISSUE_RECORDED = "issue_recorded"


@dataclass(frozen=True)
class Event:
    """Something that happened while running a test, delivered to event handlers."""

    kind: EventKind
    issue: Issue | None = None
    timestamp: datetime = field(default_factory=_utcnow, compare=False)

    @classmethod
    def issue_recorded(cls, issue: Issue) -> Event:
        return cls(EventKind.ISSUE_RECORDED, issue)


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------


def record(issue: Issue) -> Issue:
    """Deliver ``issue`` to the current configuration's event handler."""
    from exitcheck.configuration import current_configuration

    current_configuration().handle_event(Event.issue_recorded(issue))
    return issue


def record_issue(
    comment: str | None = None,
    *,
    kind: IssueKind = IssueKind.UNCONDITIONAL,
    severity: Severity = Severity.ERROR,
    source_location: SourceLocation | None = None,
) -> Issue:
    """Record an issue unconditionally."""
    return record(
        Issue(
            kind=kind,
            comments=[comment] if comment else [],
            source_location=source_location or SourceLocation.of_caller(),
            severity=severity,
        )
    )


def record_error(
    error: BaseException,
    comment: str | None = None,
    *,
    source_location: SourceLocation | None = None,
) -> Issue:
    """Record a caught error."""
    return record(
        Issue(
            kind=IssueKind.ERROR_CAUGHT,
            comments=[comment] if comment else [],
            source_location=source_location or SourceLocation.of_caller(),
            error=error,
        )
    )


def check(
    condition: bool,
    comment: str | None = None,
    *,
    source_location: SourceLocation | None = None,
) -> bool:
    """Record an EXPECTATION_FAILED issue when ``condition`` is false.

    Unlike ``assert`` this keeps running, so several checks inside one exit
    test body all get reported.
    """
    if not condition:
        record(
            Issue(
                kind=IssueKind.EXPECTATION_FAILED,
                comments=[comment] if comment else [],
                source_location=source_location or SourceLocation.of_caller(),
            )
        )
    return bool(condition)
