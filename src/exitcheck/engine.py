"""Process execution engine: spawn a child, drain its streams, decode its exit.

Both standard output and standard error of the child are always piped and
always drained, concurrently with waiting for the child. A child that
writes more than a pipe buffer holds would otherwise block forever on a
stream nobody reads. Only the bytes of observed streams are kept.

.. code-block:: text

    run(argv, env, cwd, observing)
      ├── create_subprocess_exec(stdout=PIPE, stderr=PIPE, stdin=DEVNULL)
      │     └── OSError → SpawnError
      ├── gather(drain stdout, drain stderr, wait())
      │     └── CancelledError → terminate, kill after grace, re-raise
      └── decode_returncode → ExitTestResult

There is no timeout here. Wrap the call in ``asyncio.timeout`` to bound it;
the resulting cancellation terminates the child.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence

from exitcheck.decoder import decode_returncode
from exitcheck.errors import ErrorContext, SpawnError
from exitcheck.handlers._types import ExitTestResult, ObservedStream
from exitcheck.logging import get_logger

logger = get_logger(__name__)

_CHUNK_SIZE = 64 * 1024


async def _drain(stream: asyncio.StreamReader | None, keep: bool) -> bytes:
    """Read ``stream`` to EOF, returning its bytes only when ``keep``."""
    if stream is None:
        return b""
    chunks: list[bytes] = []
    while True:
        chunk = await stream.read(_CHUNK_SIZE)
        if not chunk:
            break
        if keep:
            chunks.append(chunk)
    return b"".join(chunks)


class ProcessExecutionEngine:
    """Runs one child process to completion.

    Args:
        kill_timeout_seconds: Grace period between terminate and kill when
            the caller is cancelled while the child is still running.
    """

    def __init__(self, *, kill_timeout_seconds: float = 5.0) -> None:
        self._kill_timeout = kill_timeout_seconds

    async def run(
        self,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        observing: frozenset[ObservedStream] = frozenset(),
    ) -> ExitTestResult:
        if not argv:
            raise SpawnError("No command to run")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(env) if env is not None else None,
                cwd=cwd,
            )
        except OSError as exc:
            raise SpawnError(
                f"Failed to start {argv[0]}: {exc}",
                context=ErrorContext(argv=list(argv)),
                cause=exc,
            ) from exc

        logger.debug("exit_test_spawned", pid=process.pid, argv=list(argv))
        try:
            stdout, stderr, _ = await asyncio.gather(
                _drain(process.stdout, ObservedStream.STANDARD_OUTPUT in observing),
                _drain(process.stderr, ObservedStream.STANDARD_ERROR in observing),
                process.wait(),
            )
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        status = decode_returncode(process.returncode)
        logger.debug("exit_test_terminated", pid=process.pid, status_at_exit=str(status))
        return ExitTestResult(
            status_at_exit=status,
            standard_output_content=stdout,
            standard_error_content=stderr,
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Terminate, then kill after the grace period."""
        if process.returncode is not None:
            return
        logger.info("exit_test_terminating", pid=process.pid)
        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self._kill_timeout)
            except TimeoutError:
                logger.warning("exit_test_killing", pid=process.pid, grace_seconds=self._kill_timeout)
                process.kill()
                await process.wait()
        except ProcessLookupError:
            pass  # Already gone
