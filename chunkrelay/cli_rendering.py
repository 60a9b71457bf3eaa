"""CLI output and error rendering helpers.

This module centralizes user-facing CLI presentation for command diagnostics,
job outcomes, and saved progress listings.
"""

from __future__ import annotations

from pathlib import Path
from typing import NoReturn

import typer

from .errors import EngineError
from .models.datatypes import JobOutcome, ProgressState

CANCELLED_EXIT_CODE = 130


def exit_with_command_error(command_name: str, exc: Exception) -> NoReturn:
    """Print concise diagnostics for command failures and exit with code 1."""

    if isinstance(exc, EngineError):
        typer.secho(
            f"{command_name} failed at stage `{exc.stage}` [{exc.kind}]: {exc.detail}",
            fg=typer.colors.RED,
            err=True,
        )
        if exc.hint:
            typer.secho(f"Hint: {exc.hint}", fg=typer.colors.YELLOW, err=True)
    else:
        typer.secho(f"{command_name} failed: {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1) from exc


def echo_job_outcome(command_name: str, outcome: JobOutcome, target: Path) -> None:
    """Print the terminal job outcome; exits non-zero only for cancellation."""

    if outcome is JobOutcome.COMPLETED:
        typer.echo(f"Output: {target}")
    elif outcome is JobOutcome.ALREADY_COMPLETE:
        typer.echo(f"Nothing to do: `{target}` is already complete.")
    elif outcome is JobOutcome.EMPTY_SOURCE:
        typer.echo("Source contains no text; nothing to do.")
    else:
        typer.secho(
            f"{command_name} cancelled; progress saved. Rerun the same command to resume.",
            fg=typer.colors.YELLOW,
            err=True,
        )
        raise typer.Exit(code=CANCELLED_EXIT_CODE)


def echo_progress_entries(entries: list[ProgressState], locked: set[str]) -> None:
    """Print compact deterministic rows for saved progress records."""

    if not entries:
        typer.echo("No saved progress.")
        return
    for entry in entries:
        done = entry.last_index + 1
        model = entry.config.get("model", "?")
        mode = entry.config.get("mode", "?")
        marker = " (running)" if entry.source_key in locked else ""
        typer.echo(
            f"{entry.file_name}: {done}/{entry.total_chunks} chunks "
            f"mode={mode} model={model} key={entry.source_key}{marker}"
        )
