"""Settings for the exit-test machinery.

Environment-driven configuration via pydantic-settings. Every field can be
set with an ``EXITCHECK_`` prefixed environment variable or a ``.env`` file.

Fields
──────
python_executable     : Interpreter used to re-invoke the child
entry_point           : Full argv override for the child (advanced)
kill_timeout_seconds  : Grace period between SIGTERM and SIGKILL on cancel
inherit_env           : Child inherits the parent environment
working_dir           : Child working directory (default: parent cwd)
log_level             : Structlog log level
log_format            : "console" or "json"

The variables that carry the test ID, capture payload and back channel to
the child are part of the internal re-invocation contract and live in
``exitcheck.entry_point``; they are not settings.
"""

from __future__ import annotations

import sys
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExitCheckSettings(BaseSettings):
    """Settings shared by the parent (spawning) and child (running) sides."""

    model_config = SettingsConfigDict(
        env_prefix="EXITCHECK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Re-invocation ────────────────────────────────────────────
    python_executable: str = Field(default_factory=lambda: sys.executable)
    entry_point: list[str] | None = Field(
        default=None,
        description="argv used instead of '<python> -m exitcheck run'",
    )
    kill_timeout_seconds: float = 5.0
    inherit_env: bool = True
    working_dir: Path | None = None

    # ── Observability ────────────────────────────────────────────
    log_level: str = "WARNING"
    log_format: Literal["console", "json"] = "console"

    @field_validator("kill_timeout_seconds")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("kill_timeout_seconds must be >= 0")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        upper = value.upper()
        if upper not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return upper

    def child_argv(self) -> list[str]:
        """argv that re-invokes the child entry point."""
        if self.entry_point:
            return list(self.entry_point)
        return [self.python_executable, "-m", "exitcheck", "run"]


@lru_cache(maxsize=1)
def get_settings() -> ExitCheckSettings:
    """Load settings once per process."""
    return ExitCheckSettings()
