"""Decode native termination results into ``StatusAtExit``.

Two native shapes reach this module:

- a raw POSIX wait status, as returned by ``os.waitpid`` / ``os.wait``;
- a ``returncode`` from ``asyncio.subprocess.Process`` or ``subprocess``,
  where POSIX reports death-by-signal as a negative number.

Windows has no signals in the POSIX sense. ``abort()`` there terminates the
process with exit code 3 and is reported as ``exit_code(3)``; it is never
turned into a fabricated ``signal(SIGABRT)``. Which termination modes a
platform can report as a signal is a capability limit of the platform, not
something this module special-cases per signal number.
"""

from __future__ import annotations

import os
import sys

from exitcheck.errors import ErrorContext, StatusDecodeError
from exitcheck.status import StatusAtExit


def _to_int32(value: int) -> int:
    """Fold an unsigned 32-bit value (Windows NTSTATUS codes) into signed range."""
    value &= 0xFFFFFFFF
    if value >= 2**31:
        value -= 2**32
    return value


def decode_wait_status(raw: int) -> StatusAtExit:
    """Decode a POSIX wait status.

    Raises:
        StatusDecodeError: The platform has no wait-status helpers, or the
            status describes a stopped/continued process rather than a
            terminated one.
    """
    if not hasattr(os, "WIFEXITED"):
        raise StatusDecodeError(
            f"Wait statuses cannot be decoded on {sys.platform}",
            context=ErrorContext(metadata={"raw_status": raw}),
        )
    if os.WIFEXITED(raw):
        return StatusAtExit.exit_code(os.WEXITSTATUS(raw))
    if os.WIFSIGNALED(raw):
        return StatusAtExit.signal(os.WTERMSIG(raw))
    raise StatusDecodeError(
        f"Wait status {raw:#x} does not describe a terminated process",
        context=ErrorContext(metadata={"raw_status": raw}),
    )


def decode_returncode(returncode: int | None, platform: str | None = None) -> StatusAtExit:
    """Decode a ``returncode`` as reported by Python's process APIs.

    Args:
        returncode: ``Process.returncode``; ``None`` means the process has
            not terminated and is an error.
        platform: Override of ``sys.platform`` (tests).
    """
    if returncode is None:
        raise StatusDecodeError("Process has not terminated; no return code available")

    platform = platform or sys.platform
    if platform == "win32":
        return StatusAtExit.exit_code(_to_int32(returncode))
    if returncode < 0:
        return StatusAtExit.signal(-returncode)
    return StatusAtExit.exit_code(_to_int32(returncode))
