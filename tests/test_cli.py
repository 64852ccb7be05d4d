"""Tests for the exitcheck CLI."""

from __future__ import annotations

import json
import os
import subprocess
import sys
import textwrap

import pytest
from typer.testing import CliRunner

from exitcheck import __version__
from exitcheck.cli import app
from exitcheck.entry_point import EX_USAGE, EXIT_TEST_ID_ENV

runner = CliRunner()

_SAMPLE = textwrap.dedent(
    """
    def outer():
        def inner():
            pass

        return inner
    """
)


class TestVersion:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"exitcheck {__version__}" in result.output


class TestList:
    def test_list_file(self, tmp_path):
        path = tmp_path / "sample_exit_tests.py"
        path.write_text(_SAMPLE, encoding="utf-8")
        result = runner.invoke(app, ["list", str(path)])
        assert result.exit_code == 0
        assert "outer.<locals>.inner" in result.output

    def test_list_json(self, tmp_path):
        path = tmp_path / "sample_exit_tests_json.py"
        path.write_text(_SAMPLE, encoding="utf-8")
        result = runner.invoke(app, ["list", str(path), "--json"])
        assert result.exit_code == 0
        records = [json.loads(line) for line in result.output.strip().splitlines()]
        inner = next(record for record in records if record["qualname"] == "outer.<locals>.inner")
        assert inner["line"] == 3
        assert inner["column"] == 5

    def test_list_module_name(self):
        result = runner.invoke(app, ["list", "exitcheck.status"])
        assert result.exit_code == 0
        assert "ExitCondition.matches" in result.output

    def test_list_unknown_module(self):
        result = runner.invoke(app, ["list", "no_such_module_xyz"])
        assert result.exit_code == 1


@pytest.mark.integration
class TestRunCommand:
    def test_run_without_id(self):
        env = {key: value for key, value in os.environ.items() if key != EXIT_TEST_ID_ENV}
        completed = subprocess.run(
            [sys.executable, "-m", "exitcheck", "run"],
            env=env,
            capture_output=True,
            timeout=60,
        )
        assert completed.returncode == EX_USAGE
        assert completed.stdout == b""
