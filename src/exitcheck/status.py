"""Exit conditions and exit statuses.

``ExitCondition`` is what a caller expects; ``StatusAtExit`` is what a
process actually did. Both are immutable tagged variants.

Matching rules:

    ┌────────────────────┬──────────────────────────────────────────┐
    │ ExitCondition      │ matches StatusAtExit                     │
    ├────────────────────┼──────────────────────────────────────────┤
    │ success            │ exit_code(0) only                        │
    │ failure            │ exit_code(n != 0), any signal(_)         │
    │ exit_code(n)       │ exit_code(n) only                        │
    │ signal(n)          │ signal(n) only                           │
    └────────────────────┴──────────────────────────────────────────┘

Some platforms (Linux) only report the low 8 bits of an exit code, so an
``exit_code(512)`` expectation can never match there.
"""

from __future__ import annotations

import signal as _signal
from dataclasses import dataclass
from enum import Enum

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


def _check_int32(value: int, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{what} must be an int, got {type(value).__name__}")
    if not _INT32_MIN <= value <= _INT32_MAX:
        raise ValueError(f"{what} {value} does not fit in a signed 32-bit integer")
    return value


def signal_name(number: int) -> str:
    """``SIGABRT`` for 6 on most platforms; the bare number when unknown."""
    try:
        return _signal.Signals(number).name
    except ValueError:
        return str(number)


class StatusKind(str, Enum):
    """How a process terminated."""

    EXIT_CODE = "exit_code"
    SIGNAL = "signal"


class ConditionKind(str, Enum):
    """What a caller expects."""

    SUCCESS = "success"
    FAILURE = "failure"
    EXIT_CODE = "exit_code"
    SIGNAL = "signal"


@dataclass(frozen=True)
class StatusAtExit:
    """The decoded termination status of a process."""

    kind: StatusKind
    value: int

    def __post_init__(self) -> None:
        _check_int32(self.value, self.kind.value)

    @classmethod
    def exit_code(cls, code: int) -> StatusAtExit:
        return cls(StatusKind.EXIT_CODE, code)

    @classmethod
    def signal(cls, number: int) -> StatusAtExit:
        return cls(StatusKind.SIGNAL, int(number))

    @property
    def is_success(self) -> bool:
        return self.kind is StatusKind.EXIT_CODE and self.value == EXIT_SUCCESS

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind.value, "value": self.value}

    def __str__(self) -> str:
        if self.kind is StatusKind.SIGNAL:
            return f".signal({signal_name(self.value)})"
        return f".exitCode({self.value})"


@dataclass(frozen=True)
class ExitCondition:
    """The termination an exit test expects.

    Build one with the constructors rather than directly::

        ExitCondition.success()
        ExitCondition.failure()
        ExitCondition.exit_code(123)
        ExitCondition.signal(signal.SIGABRT)
    """

    kind: ConditionKind
    value: int | None = None

    def __post_init__(self) -> None:
        if self.kind in (ConditionKind.SUCCESS, ConditionKind.FAILURE):
            if self.value is not None:
                raise ValueError(f"{self.kind.value} does not take a value")
        else:
            if self.value is None:
                raise ValueError(f"{self.kind.value} requires a value")
            _check_int32(self.value, self.kind.value)

    @classmethod
    def success(cls) -> ExitCondition:
        return cls(ConditionKind.SUCCESS)

    @classmethod
    def failure(cls) -> ExitCondition:
        return cls(ConditionKind.FAILURE)

    @classmethod
    def exit_code(cls, code: int) -> ExitCondition:
        return cls(ConditionKind.EXIT_CODE, code)

    @classmethod
    def signal(cls, number: int) -> ExitCondition:
        return cls(ConditionKind.SIGNAL, int(number))

    def matches(self, status: StatusAtExit) -> bool:
        """Whether ``status`` satisfies this condition. Never raises."""
        if self.kind is ConditionKind.SUCCESS:
            return status.kind is StatusKind.EXIT_CODE and status.value == EXIT_SUCCESS
        if self.kind is ConditionKind.FAILURE:
            if status.kind is StatusKind.SIGNAL:
                return True
            return status.value != EXIT_SUCCESS
        if self.kind is ConditionKind.EXIT_CODE:
            return status.kind is StatusKind.EXIT_CODE and status.value == self.value
        return status.kind is StatusKind.SIGNAL and status.value == self.value

    def __str__(self) -> str:
        if self.kind is ConditionKind.SUCCESS:
            return ".success"
        if self.kind is ConditionKind.FAILURE:
            return ".failure"
        if self.kind is ConditionKind.SIGNAL:
            return f".signal({signal_name(self.value)})"
        return f".exitCode({self.value})"


def matches(condition: ExitCondition, status: StatusAtExit) -> bool:
    """Module-level alias for ``condition.matches(status)``."""
    return condition.matches(status)
