"""Exit-test expectations.

``expect_exit`` runs a body through the configured handler and compares how
it terminated against an ``ExitCondition``:

    ┌─────────────────────────────────┬──────────────────────┬──────────────┐
    │ outcome                         │ recorded issue       │ returns      │
    ├─────────────────────────────────┼──────────────────────┼──────────────┤
    │ body unregistered / uncapturable│ none, error raised   │ n/a          │
    │ no handler / handler raised     │ SYSTEM               │ None         │
    │ status does not match           │ EXPECTATION_FAILED   │ the result   │
    │ status matches                  │ none                 │ the result   │
    └─────────────────────────────────┴──────────────────────┴──────────────┘

``require_exit`` is the fail-fast variant: where ``expect_exit`` records an
issue it also raises ``ExpectationFailedError``, so it only ever returns a
matching result.

Example:
    async def test_exits_with_123():
        def body():
            sys.exit(123)

        await expect_exit(ExitCondition.exit_code(123), body)
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any, cast

from exitcheck.capture import CapturedValue, capture_values
from exitcheck.configuration import current_configuration
from exitcheck.errors import ExpectationFailedError, categorize_error, is_caller_error
from exitcheck.handlers._types import ExitTestResult, ObservedStream, normalize_observing
from exitcheck.issues import Issue, IssueKind, SourceLocation, record
from exitcheck.logging import get_logger
from exitcheck.registry import ExitTestID, id_for
from exitcheck.status import ExitCondition

logger = get_logger(__name__)


async def _run(
    condition: ExitCondition,
    test_id: ExitTestID,
    values: Sequence[CapturedValue],
    observing: frozenset[ObservedStream],
    location: SourceLocation,
) -> tuple[ExitTestResult | None, Issue | None]:
    handler = current_configuration().exit_test_handler
    if handler is None:
        issue = record(
            Issue(
                kind=IssueKind.SYSTEM,
                comments=["No exit test handler is configured; exit tests cannot run"],
                source_location=location,
            )
        )
        return None, issue

    try:
        result = await handler(test_id, values, observing)
    except Exception as exc:
        if is_caller_error(exc):
            raise
        logger.debug(
            "exit_test_system_failure",
            exit_test=str(test_id),
            category=categorize_error(exc).value,
            error=repr(exc),
        )
        return None, record(Issue(kind=IssueKind.SYSTEM, source_location=location, error=exc))

    if condition.matches(result.status_at_exit):
        return result, None

    issue = record(
        Issue(
            kind=IssueKind.EXPECTATION_FAILED,
            comments=[f"Expected exit status {condition}, but the exit test exited with {result.status_at_exit}"],
            source_location=location,
        )
    )
    return result, issue


def _prepare(
    body: Callable[[], Any],
    observing: Iterable[ObservedStream | str],
    captures: Mapping[str, Any] | None,
) -> tuple[ExitTestID, list[CapturedValue], frozenset[ObservedStream]]:
    # Caller errors surface here, before any handler runs
    test_id = id_for(body)
    values = capture_values(body, captures)
    return test_id, values, normalize_observing(observing)


async def expect_exit(
    condition: ExitCondition,
    body: Callable[[], Any],
    *,
    observing: Iterable[ObservedStream | str] = (),
    captures: Mapping[str, Any] | None = None,
    source_location: SourceLocation | None = None,
) -> ExitTestResult | None:
    """Expect ``body``, run in its own process, to terminate as ``condition`` says.

    Args:
        condition: The expected termination.
        body: A zero-argument function (or coroutine function) reachable
            from its module. Its free variables are captured and rebuilt
            in the child.
        observing: Streams whose content the result should carry.
        captures: Declared types for captured variables, by name. Variables
            not listed are declared as ``type(value)``.
        source_location: Where to attribute issues (default: the caller).

    Returns:
        The result, or ``None`` if the exit test could not run at all.

    Raises:
        ExitTestNotRegisteredError: ``body`` cannot be found again in a child.
        CaptureError: A captured value cannot be encoded.
    """
    location = source_location or SourceLocation.of_caller()
    test_id, values, observed = _prepare(body, observing, captures)
    result, _ = await _run(condition, test_id, values, observed, location)
    return result


async def require_exit(
    condition: ExitCondition,
    body: Callable[[], Any],
    *,
    observing: Iterable[ObservedStream | str] = (),
    captures: Mapping[str, Any] | None = None,
    source_location: SourceLocation | None = None,
) -> ExitTestResult:
    """Like ``expect_exit``, but raise when the expectation does not hold.

    Raises:
        ExpectationFailedError: After recording the issue, when the status
            does not match or the exit test could not run.
    """
    location = source_location or SourceLocation.of_caller()
    test_id, values, observed = _prepare(body, observing, captures)
    result, issue = await _run(condition, test_id, values, observed, location)
    if issue is not None:
        raise ExpectationFailedError(issue.description, issue=issue).with_context(
            test_id=str(test_id),
            source_location=str(location),
        )
    # _run records an issue whenever it has no result
    return cast(ExitTestResult, result)
