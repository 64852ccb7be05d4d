"""End-to-end exit tests: every test here re-invokes the interpreter.

Bodies are nested functions so they are found again by the child, which
imports this module by name. They use ``check`` rather than ``assert`` so
that a failure inside the child is forwarded as an issue.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys

import pytest
from pydantic import BaseModel

from exitcheck import check, current_exit_test, expect_exit, record_error, require_exit
from exitcheck.errors import ExpectationFailedError
from exitcheck.handlers import LocalProcessHandler, ObservedStream
from exitcheck.issues import ErrorSnapshot, IssueKind
from exitcheck.settings import ExitCheckSettings
from exitcheck.status import ExitCondition, StatusAtExit

pytestmark = pytest.mark.integration

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")


class Shape(BaseModel):
    sides: int


class ColoredShape(Shape):
    color: str = "red"


# ── Exit statuses ────────────────────────────────────────────────────────


class TestExitStatus:
    @pytest.mark.asyncio
    async def test_success(self, collector):
        def body():
            pass

        with collector.use(LocalProcessHandler()):
            result = await expect_exit(ExitCondition.success(), body)
        assert result.status_at_exit == StatusAtExit.exit_code(0)
        assert collector.issues == []

    @pytest.mark.asyncio
    async def test_exit_code(self, collector):
        def body():
            sys.exit(123)

        with collector.use(LocalProcessHandler()):
            result = await expect_exit(ExitCondition.exit_code(123), body)
        assert result.status_at_exit == StatusAtExit.exit_code(123)
        assert collector.issues == []

    @pytest.mark.asyncio
    async def test_os_exit_is_failure(self, collector):
        def body():
            os._exit(9)

        with collector.use(LocalProcessHandler()):
            result = await expect_exit(ExitCondition.failure(), body)
        assert result.status_at_exit == StatusAtExit.exit_code(9)

    @pytest.mark.asyncio
    async def test_mismatch_is_recorded(self, collector):
        def body():
            sys.exit(2)

        with collector.use(LocalProcessHandler()):
            result = await expect_exit(ExitCondition.success(), body)
        assert result.status_at_exit == StatusAtExit.exit_code(2)
        assert collector.kinds() == [IssueKind.EXPECTATION_FAILED]

    @pytest.mark.asyncio
    @posix_only
    async def test_abort_is_sigabrt(self, collector):
        def body():
            os.abort()

        with collector.use(LocalProcessHandler()):
            result = await expect_exit(ExitCondition.signal(signal.SIGABRT), body)
        assert result.status_at_exit == StatusAtExit.signal(signal.SIGABRT)
        assert collector.issues == []

    @pytest.mark.asyncio
    @posix_only
    async def test_signal_is_failure(self, collector):
        def body():
            os.kill(os.getpid(), signal.SIGKILL)

        with collector.use(LocalProcessHandler()):
            await expect_exit(ExitCondition.failure(), body)
        assert collector.issues == []

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform != "win32", reason="POSIX reports only 8 bits of an exit code")
    async def test_wide_exit_code(self, collector):
        def body():
            sys.exit(512 + 123)

        with collector.use(LocalProcessHandler()):
            await expect_exit(ExitCondition.exit_code(512 + 123), body)
        assert collector.issues == []

    @pytest.mark.asyncio
    async def test_coroutine_body(self, collector):
        async def body():
            await asyncio.sleep(0)
            sys.exit(4)

        with collector.use(LocalProcessHandler()):
            await expect_exit(ExitCondition.exit_code(4), body)
        assert collector.issues == []


# ── Streams ──────────────────────────────────────────────────────────────


class TestStreams:
    @pytest.mark.asyncio
    async def test_observe_stdout_only(self, collector):
        def body():
            print("to stdout")
            print("to stderr", file=sys.stderr)

        with collector.use(LocalProcessHandler()):
            result = await expect_exit(
                ExitCondition.success(), body, observing=[ObservedStream.STANDARD_OUTPUT]
            )
        assert b"to stdout" in result.standard_output_content
        assert result.standard_error_content == b""

    @pytest.mark.asyncio
    async def test_observe_stderr_only(self, collector):
        def body():
            print("to stdout")
            print("to stderr", file=sys.stderr)

        with collector.use(LocalProcessHandler()):
            result = await expect_exit(
                ExitCondition.success(), body, observing=[ObservedStream.STANDARD_ERROR]
            )
        assert b"to stderr" in result.standard_error_content
        assert result.standard_output_content == b""

    @pytest.mark.asyncio
    async def test_observe_both(self, collector):
        def body():
            print("to stdout")
            print("to stderr", file=sys.stderr)

        with collector.use(LocalProcessHandler()):
            result = await expect_exit(ExitCondition.success(), body, observing=list(ObservedStream))
        assert b"to stdout" in result.standard_output_content
        assert b"to stderr" in result.standard_error_content
        assert b"to stderr" not in result.standard_output_content


# ── Captures ─────────────────────────────────────────────────────────────


class TestCaptures:
    @pytest.mark.asyncio
    async def test_values_round_trip(self, collector):
        i = 123
        s = "abc"

        def body():
            check(i == 123, "int capture")
            check(s == "abc", "str capture")

        with collector.use(LocalProcessHandler()):
            await expect_exit(ExitCondition.success(), body)
        assert collector.issues == []

    @pytest.mark.asyncio
    async def test_declared_base_type(self, collector):
        shape = ColoredShape(sides=3, color="blue")

        def body():
            check(type(shape).__name__ == "Shape", "decoded as the declared type")
            check(shape.sides == 3, "field kept")

        with collector.use(LocalProcessHandler()):
            await expect_exit(ExitCondition.success(), body, captures={"shape": Shape})
        assert collector.issues == []

    @pytest.mark.asyncio
    async def test_generic_capture(self, collector):
        table = {"a": [1, 2], "b": []}

        def body():
            sys.exit(sum(len(value) for value in table.values()))

        with collector.use(LocalProcessHandler()):
            await expect_exit(ExitCondition.exit_code(2), body, captures={"table": dict[str, list[int]]})
        assert collector.issues == []

    @pytest.mark.asyncio
    async def test_non_finite_floats(self, collector):
        x = float("nan")
        y = float("-inf")

        def body():
            check(x != x, "NaN survives")
            check(y == float("-inf"), "-inf survives")

        with collector.use(LocalProcessHandler()):
            result = await expect_exit(ExitCondition.success(), body)
        assert result.status_at_exit == StatusAtExit.exit_code(0)
        assert collector.issues == []

    @pytest.mark.asyncio
    async def test_binary_buffer(self, collector):
        buffer = bytes(range(256)) * 4096

        def body():
            check(len(buffer) == 1024 * 1024, "length kept")
            check(buffer[:256] == bytes(range(256)), "content kept")

        with collector.use(LocalProcessHandler()):
            await expect_exit(ExitCondition.success(), body)
        assert collector.issues == []

    @pytest.mark.asyncio
    async def test_multi_megabyte_payload(self, collector):
        numbers = list(range(1_000_000))

        def body():
            sys.exit(0 if len(numbers) == 1_000_000 and numbers[-1] == 999_999 else 1)

        with collector.use(LocalProcessHandler()):
            await expect_exit(ExitCondition.success(), body)
        assert collector.issues == []


# ── Issue forwarding ─────────────────────────────────────────────────────


class TestIssueForwarding:
    @pytest.mark.asyncio
    async def test_child_issue_forwarded_once(self, collector):
        def body():
            check(False, "recorded in the child")
            sys.exit(0)

        with collector.use(LocalProcessHandler()):
            await expect_exit(ExitCondition.success(), body)
        (issue,) = collector.issues
        assert issue.kind is IssueKind.EXPECTATION_FAILED
        assert issue.comments == ["recorded in the child"]
        assert issue.source_location.filename == __file__

    @pytest.mark.asyncio
    async def test_failed_check_fails_the_child(self, collector):
        def body():
            check(1 + 1 == 3, "arithmetic")

        with collector.use(LocalProcessHandler()):
            await expect_exit(ExitCondition.failure(), body)
        assert collector.kinds() == [IssueKind.EXPECTATION_FAILED]

    @pytest.mark.asyncio
    async def test_uncaught_error_forwarded(self, collector):
        def body():
            raise RuntimeError("escaped")

        with collector.use(LocalProcessHandler()):
            result = await expect_exit(ExitCondition.exit_code(1), body)
        assert result.status_at_exit == StatusAtExit.exit_code(1)
        (issue,) = collector.issues
        assert issue.kind is IssueKind.ERROR_CAUGHT
        assert "RuntimeError: escaped" in issue.description
        assert isinstance(issue.error, ErrorSnapshot)
        assert issue.error.type_name == "builtins.RuntimeError"
        assert issue.error.message == "escaped"

    @pytest.mark.asyncio
    async def test_recorded_error_keeps_error(self, collector):
        def body():
            record_error(ValueError("boom"))

        with collector.use(LocalProcessHandler()):
            await expect_exit(ExitCondition.failure(), body)
        (issue,) = collector.issues
        assert issue.kind is IssueKind.ERROR_CAUGHT
        assert issue.error is not None
        assert issue.error.type_name == "builtins.ValueError"
        assert issue.description == "Caught error: ValueError: boom"

    @pytest.mark.asyncio
    async def test_uncaught_error_traceback_on_stderr(self, collector):
        def body():
            raise RuntimeError("escaped")

        with collector.use(LocalProcessHandler()):
            result = await expect_exit(
                ExitCondition.failure(), body, observing=[ObservedStream.STANDARD_ERROR]
            )
        assert b"Traceback" in result.standard_error_content
        assert b"RuntimeError: escaped" in result.standard_error_content


# ── Entry point behavior ─────────────────────────────────────────────────


class TestChildContext:
    @pytest.mark.asyncio
    async def test_current_exit_test(self, collector):
        def body():
            sys.exit(0 if current_exit_test() is not None else 1)

        assert current_exit_test() is None
        with collector.use(LocalProcessHandler()):
            await expect_exit(ExitCondition.success(), body)
        assert collector.issues == []

    @pytest.mark.asyncio
    async def test_extra_env(self, collector):
        def body():
            sys.exit(0 if os.environ.get("EXITCHECK_TEST_MARKER") == "on" else 1)

        with collector.use(LocalProcessHandler(env={"EXITCHECK_TEST_MARKER": "on"})):
            await expect_exit(ExitCondition.success(), body)
        assert collector.issues == []

    @pytest.mark.asyncio
    async def test_bad_entry_point_is_a_system_failure(self, collector, tmp_path):
        def body():
            pass

        settings = ExitCheckSettings(_env_file=None, entry_point=[str(tmp_path / "missing")])
        with collector.use(LocalProcessHandler(settings)):
            result = await expect_exit(ExitCondition.success(), body)
        assert result is None
        assert collector.kinds() == [IssueKind.SYSTEM]

    @pytest.mark.asyncio
    async def test_require_exit_raises_on_mismatch(self, collector):
        def body():
            sys.exit(3)

        with collector.use(LocalProcessHandler()):
            with pytest.raises(ExpectationFailedError):
                await require_exit(ExitCondition.success(), body)
        assert collector.kinds() == [IssueKind.EXPECTATION_FAILED]

    @pytest.mark.asyncio
    async def test_concurrent_exit_tests(self, collector):
        def exits_1():
            sys.exit(1)

        def exits_2():
            sys.exit(2)

        with collector.use(LocalProcessHandler()):
            first, second = await asyncio.gather(
                expect_exit(ExitCondition.exit_code(1), exits_1),
                expect_exit(ExitCondition.exit_code(2), exits_2),
            )
        assert first.status_at_exit == StatusAtExit.exit_code(1)
        assert second.status_at_exit == StatusAtExit.exit_code(2)
        assert collector.issues == []
