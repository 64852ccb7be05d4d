"""Child-to-parent issue forwarding.

Issues recorded inside an exit test body must reach the parent's event
handler even when the child then crashes. The child appends one JSON record
per issue to a file whose path the parent passes in the environment, and
flushes after every record; the parent reads the file after the child has
terminated.

Record format (one per line)::

    {"kind": "issue", "issue": {"kind": "expectation_failed", ...}}

A final line without a trailing newline is a record the child was writing
when it died. It is dropped with a warning; every other malformed line is a
``BackchannelError``.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import IO, Any, Literal

from pydantic import BaseModel, ValidationError

from exitcheck.errors import BackchannelError
from exitcheck.issues import Event, Issue
from exitcheck.logging import get_logger

logger = get_logger(__name__)


class BackchannelRecord(BaseModel):
    kind: Literal["issue"] = "issue"
    issue: dict[str, Any]


class BackchannelWriter:
    """Appends issues to the back-channel file (child side).

    Instances are event handlers: pass one as ``Configuration.event_handler``.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._file: IO[str] | None = None
        self._lock = threading.Lock()

    def open(self) -> BackchannelWriter:
        try:
            self._file = self.path.open("a", encoding="utf-8")
        except OSError as exc:
            raise BackchannelError(f"Cannot open back channel {self.path}: {exc}", cause=exc) from exc
        return self

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def __enter__(self) -> BackchannelWriter:
        return self.open()

    def __exit__(self, *args: Any) -> None:
        self.close()

    def write_issue(self, issue: Issue) -> None:
        line = BackchannelRecord(issue=issue.to_dict()).model_dump_json()
        with self._lock:
            if self._file is None:
                raise BackchannelError(f"Back channel {self.path} is not open")
            self._file.write(line + "\n")
            self._file.flush()

    def __call__(self, event: Event) -> None:
        if event.issue is not None:
            self.write_issue(event.issue)


def read_issues(path: str | Path) -> list[Issue]:
    """Read every issue the child forwarded (parent side).

    A missing file means the child never got far enough to open it and
    yields no issues.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except OSError as exc:
        raise BackchannelError(f"Cannot read back channel {path}: {exc}", cause=exc) from exc

    lines = text.split("\n")
    if lines[-1]:
        logger.warning("backchannel_record_truncated", path=str(path), length=len(lines[-1]))
    issues = []
    for number, line in enumerate(lines[:-1], start=1):
        if not line.strip():
            continue
        try:
            record = BackchannelRecord.model_validate_json(line)
            issues.append(Issue.from_dict(record.issue))
        except (ValidationError, KeyError, ValueError) as exc:
            raise BackchannelError(
                f"Malformed back-channel record at {path}:{number}",
                cause=exc,
            ).with_context(line=number) from exc
    return issues
