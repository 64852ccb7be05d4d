"""Local process handler: runs exit tests in a fresh interpreter.

The default handler. Each exit test re-invokes the interpreter on the
child entry point with the test ID, a capture payload file and a
back-channel file, waits for it to terminate, then forwards the issues the
child recorded to the parent's event handler.

Architecture:

    .. code-block:: text

        LocalProcessHandler: one child per exit test
        ┌──────────────────────────────────────────────────────────────┐
        │                                                              │
        │  Parent side                 │ Child side                    │
        │  ────────────────────────────┼───────────────────────────────│
        │  encode_captures → file      │ EXITCHECK_CAPTURE_PATH        │
        │  ExitTestID.to_json()        │ EXITCHECK_EXIT_TEST_ID        │
        │  empty file                  │ EXITCHECK_BACKCHANNEL_PATH    │
        │  sys.path                    │ PYTHONPATH                    │
        │  ProcessExecutionEngine      │ python -m exitcheck run       │
        │  read_issues → record()      │ BackchannelWriter             │
        │                              │                               │
        │  The temporary directory holding both files is removed once  │
        │  the child has terminated, including on cancellation.        │
        │                                                              │
        └──────────────────────────────────────────────────────────────┘

Example:
    >>> handler = LocalProcessHandler()
    >>> result = await handler(test_id, [], frozenset())
    >>> result.status_at_exit
    StatusAtExit(kind=<StatusKind.EXIT_CODE: 'exit_code'>, value=0)
"""

from __future__ import annotations

import os
import sys
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

from exitcheck.backchannel import read_issues
from exitcheck.capture import encode_captures
from exitcheck.engine import ProcessExecutionEngine
from exitcheck.entry_point import BACKCHANNEL_PATH_ENV, CAPTURE_PATH_ENV, EXIT_TEST_ID_ENV
from exitcheck.handlers._base import BaseExitTestHandler
from exitcheck.handlers._types import ExitTestResult, ObservedStream
from exitcheck.issues import Issue, record
from exitcheck.logging import get_logger
from exitcheck.settings import ExitCheckSettings, get_settings

if TYPE_CHECKING:
    from exitcheck.capture import CapturedValue
    from exitcheck.registry import ExitTestID

logger = get_logger(__name__)


class LocalProcessHandler(BaseExitTestHandler):
    """Runs each exit test as a child interpreter process.

    Parameters
    ----------
    settings
        Source of the child argv, kill grace period, environment
        inheritance and working directory. Defaults to ``get_settings()``.
    env
        Extra environment variables for the child, applied after the
        inherited environment.
    """

    handler_name = "local"

    def __init__(
        self,
        settings: ExitCheckSettings | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._extra_env = dict(env or {})
        self._engine = ProcessExecutionEngine(kill_timeout_seconds=self._settings.kill_timeout_seconds)

    async def _do_run(
        self,
        test_id: ExitTestID,
        captured_values: Sequence[CapturedValue],
        observing: frozenset[ObservedStream],
    ) -> ExitTestResult:
        with tempfile.TemporaryDirectory(prefix="exitcheck-") as tmp:
            capture_path = Path(tmp) / "captures.json"
            backchannel_path = Path(tmp) / "backchannel.jsonl"
            capture_path.write_bytes(encode_captures(test_id, captured_values))
            backchannel_path.touch()

            env = self._build_env(test_id, capture_path, backchannel_path)
            cwd = str(self._settings.working_dir) if self._settings.working_dir else None
            result = await self._engine.run(
                self._settings.child_argv(),
                env=env,
                cwd=cwd,
                observing=observing,
            )
            issues = read_issues(backchannel_path)

        self._forward(test_id, issues)
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_env(self, test_id: ExitTestID, capture_path: Path, backchannel_path: Path) -> dict[str, str]:
        """Build the child environment."""
        env = dict(os.environ) if self._settings.inherit_env else {}
        env.update(self._extra_env)
        # The child must be able to import the body's module the way we did
        env["PYTHONPATH"] = os.pathsep.join(entry for entry in sys.path if entry)
        env[EXIT_TEST_ID_ENV] = test_id.to_json()
        env[CAPTURE_PATH_ENV] = str(capture_path)
        env[BACKCHANNEL_PATH_ENV] = str(backchannel_path)
        return env

    def _forward(self, test_id: ExitTestID, issues: list[Issue]) -> None:
        """Re-record child issues here, once each, kind preserved."""
        for issue in issues:
            if issue.source_location is None:
                issue = replace(issue, source_location=test_id.source_location)
            logger.debug("exit_test_issue_forwarded", kind=issue.kind.value)
            record(issue)
