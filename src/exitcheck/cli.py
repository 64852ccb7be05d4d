"""
Typer application for exitcheck.

``exitcheck run`` is the child entry point the parent re-invokes; it is not
meant to be called by hand. ``exitcheck list`` shows the exit test IDs a
module would be given, which helps when a child reports that it cannot
find a body.
"""

from __future__ import annotations

import importlib
import json
from pathlib import Path

import typer
from typer import Typer

from exitcheck.registry import _load_from_file, registry_for

app = Typer(
    name="exitcheck",
    help="exitcheck: run test bodies in a child process and check how they exit.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from exitcheck import __version__

        typer.echo(f"exitcheck {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """exitcheck CLI: child entry point and registry inspection."""


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("run")
def run() -> None:
    """Run the exit test named by EXITCHECK_EXIT_TEST_ID (child side)."""
    from exitcheck.entry_point import run_exit_test

    raise typer.Exit(code=run_exit_test())


@app.command("list")
def list_exit_tests(
    module: str = typer.Argument(..., help="Dotted module name or path to a .py file."),
    as_json: bool = typer.Option(False, "--json", help="Emit one JSON object per line."),
) -> None:
    """List the exit test IDs of every body reachable from MODULE."""
    try:
        if module.endswith(".py"):
            path = Path(module).resolve()
            loaded = _load_from_file(path.stem, str(path))
        else:
            loaded = importlib.import_module(module)
    except (ImportError, OSError) as exc:
        typer.echo(f"Cannot load {module}: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    for record in sorted(registry_for(loaded), key=lambda r: r.id):
        if as_json:
            typer.echo(json.dumps(record.id.to_dict(), sort_keys=True))
        else:
            typer.echo(f"{record.id.line}:{record.id.column}#{record.id.ordinal}\t{record.id.qualname}")
