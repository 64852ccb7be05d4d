"""Child side of an exit test.

The parent re-invokes the interpreter as ``python -m exitcheck run`` with
three environment variables:

    EXITCHECK_EXIT_TEST_ID      JSON of the ``ExitTestID`` to run
    EXITCHECK_CAPTURE_PATH      file holding the encoded capture payload
    EXITCHECK_BACKCHANNEL_PATH  file the child appends forwarded issues to

``run_exit_test`` finds the body, rebuilds it with its captured values,
runs it and returns the process exit code:

    ============================  ===========================================
    outcome                       exit code
    ============================  ===========================================
    no/invalid test ID            64 (EX_USAGE)
    body not found                69 (EX_UNAVAILABLE), SYSTEM issue
    captures do not decode        70 (EX_SOFTWARE), SYSTEM issue
    body raises SystemExit(c)     c (None → 0, non-int → 1)
    body raises                   1, ERROR_CAUGHT issue, traceback on stderr
    body returns                  1 if a failing issue was recorded, else 0
    ============================  ===========================================

Anything the body does to end the process itself (``os._exit``,
``os.abort``, a fatal signal) bypasses all of this, which is the point.
"""

from __future__ import annotations

import asyncio
import inspect
import os
import sys
import traceback
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from exitcheck.backchannel import BackchannelWriter
from exitcheck.capture import decode_captures
from exitcheck.configuration import Configuration, log_event, use_configuration
from exitcheck.errors import CaptureDecodeError, ExitTestNotFoundError
from exitcheck.issues import Event, Issue, IssueKind, SourceLocation, record
from exitcheck.logging import bind_context, configure_logging, get_logger
from exitcheck.registry import ExitTestID, load_module_for, registry_for
from exitcheck.status import EXIT_FAILURE, EXIT_SUCCESS

logger = get_logger(__name__)

EXIT_TEST_ID_ENV = "EXITCHECK_EXIT_TEST_ID"
CAPTURE_PATH_ENV = "EXITCHECK_CAPTURE_PATH"
BACKCHANNEL_PATH_ENV = "EXITCHECK_BACKCHANNEL_PATH"

EX_USAGE = 64
EX_UNAVAILABLE = 69
EX_SOFTWARE = 70


@dataclass(frozen=True)
class ExitTest:
    """The exit test running in this process."""

    id: ExitTestID
    body: Callable[[], Any]

    def __call__(self) -> None:
        result = self.body()
        if inspect.iscoroutine(result):
            asyncio.run(result)


_current: ExitTest | None = None


def current_exit_test() -> ExitTest | None:
    """The exit test this process is running, or ``None`` outside a child."""
    return _current


class _ChildEventSink:
    """Event handler of the child: forwards issues and remembers failures."""

    def __init__(self, writer: BackchannelWriter | None) -> None:
        self._writer = writer
        self.failed = False

    def __call__(self, event: Event) -> None:
        if event.issue is not None and event.issue.is_failure:
            self.failed = True
        if self._writer is not None:
            self._writer(event)
        else:
            log_event(event)


def _exit_status(code: Any) -> int:
    """Exit code the interpreter would use for ``SystemExit(code)``."""
    if code is None:
        return EXIT_SUCCESS
    if isinstance(code, int):
        return code
    print(code, file=sys.stderr)
    return EXIT_FAILURE


def _error_location(error: BaseException, test_id: ExitTestID) -> SourceLocation:
    """Innermost traceback frame inside the test's file, else the body itself."""
    for frame in reversed(traceback.extract_tb(error.__traceback__)):
        if frame.filename == test_id.filename and frame.lineno is not None:
            column = (frame.colno + 1) if getattr(frame, "colno", None) is not None else 0
            return SourceLocation(frame.filename, frame.lineno, column)
    return test_id.source_location


def _record_system(error: BaseException, location: SourceLocation) -> None:
    record(Issue(kind=IssueKind.SYSTEM, source_location=location, error=error))


def _run(test_id: ExitTestID, environ: Mapping[str, str], sink: _ChildEventSink) -> int:
    global _current

    location = test_id.source_location
    try:
        module = load_module_for(test_id)
        found = registry_for(module, test_id.module).find(test_id)
    except Exception as exc:
        logger.error("exit_test_module_load_failed", error=repr(exc))
        _record_system(ExitTestNotFoundError(test_id, cause=exc), location)
        return EX_UNAVAILABLE
    if found is None:
        logger.error("exit_test_not_found")
        _record_system(ExitTestNotFoundError(test_id), location)
        return EX_UNAVAILABLE

    capture_path = environ.get(CAPTURE_PATH_ENV)
    try:
        if capture_path:
            try:
                payload = Path(capture_path).read_bytes()
            except OSError as exc:
                raise CaptureDecodeError(f"Cannot read capture payload: {exc}", cause=exc) from exc
            values = decode_captures(payload, found.capture_names, test_id)
        elif found.capture_names:
            raise CaptureDecodeError(
                f"Exit test captures {list(found.capture_names)} but no payload was provided"
            )
        else:
            values = {}
    except CaptureDecodeError as exc:
        logger.error("exit_test_capture_decode_failed", **exc.to_dict())
        _record_system(exc, location)
        return EX_SOFTWARE

    _current = ExitTest(test_id, found.make_body(vars(module), values))
    logger.debug("exit_test_started", captures=list(values))
    try:
        _current()
    except SystemExit as exc:
        return _exit_status(exc.code)
    except Exception as exc:
        traceback.print_exception(exc)
        record(
            Issue(
                kind=IssueKind.ERROR_CAUGHT,
                source_location=_error_location(exc, test_id),
                error=exc,
            )
        )
        return EXIT_FAILURE
    return EXIT_FAILURE if sink.failed else EXIT_SUCCESS


def run_exit_test(environ: Mapping[str, str] | None = None) -> int:
    """Run the exit test named in ``environ`` and return the exit code."""
    environ = os.environ if environ is None else environ
    configure_logging(stream=sys.stderr, force=True)

    raw_id = environ.get(EXIT_TEST_ID_ENV)
    if not raw_id:
        logger.error("exit_test_id_missing", variable=EXIT_TEST_ID_ENV)
        return EX_USAGE
    try:
        test_id = ExitTestID.from_json(raw_id)
    except (ValueError, KeyError, TypeError) as exc:
        logger.error("exit_test_id_invalid", value=raw_id, error=repr(exc))
        return EX_USAGE
    bind_context(exit_test=str(test_id))

    backchannel_path = environ.get(BACKCHANNEL_PATH_ENV)
    writer = BackchannelWriter(backchannel_path).open() if backchannel_path else None
    sink = _ChildEventSink(writer)
    base = Configuration.default()
    try:
        with use_configuration(Configuration(event_handler=sink, exit_test_handler=base.exit_test_handler)):
            return _run(test_id, environ, sink)
    finally:
        if writer is not None:
            writer.close()
