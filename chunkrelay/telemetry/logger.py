"""Structured run logging utilities.

Responsibilities:
- Emit concise, deterministic phase-level runtime logs through `loguru`.
- Never include prompt text, model output, or credentials in log lines.
"""

from __future__ import annotations

import sys
import threading
from enum import Enum
from typing import TextIO

from loguru import logger as _loguru_logger

_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


def _sanitize_context_value(value: object) -> str:
    """Convert context values into stable, shell-safe tokens."""

    raw = str(value.value if isinstance(value, Enum) else value).strip()
    if not raw:
        return "none"
    return "".join(
        character if character.isalnum() or character in {"-", "_", ".", ":", "/"} else "_"
        for character in raw
    )


def _format_context(context: dict[str, object]) -> str:
    """Serialize context key/value pairs in deterministic key order."""

    if not context:
        return ""
    tokens = [
        f"{key}={_sanitize_context_value(context[key])}"
        for key in sorted(context.keys())
    ]
    return " " + " ".join(tokens)


class RunLogger:
    """Emit deterministic phase logs for CLI-observable job activity.

    Lines look like `[phase] level=INFO stage=request event=retry chunk=3 ...`.
    The logger reconfigures the global `loguru` sink, so one instance per
    process is expected.
    """

    _configure_lock = threading.Lock()

    def __init__(self, sink: TextIO | None = None, level: str = "INFO") -> None:
        """Initialize logger sink and configure deterministic formatting."""

        normalized_level = level.strip().upper()
        if normalized_level not in _LEVELS:
            raise ValueError(
                f"Unsupported log level `{level}`; supported: {', '.join(_LEVELS)}."
            )
        self._sink = sink or sys.stderr
        self._level = normalized_level
        with self._configure_lock:
            _loguru_logger.remove()
            _loguru_logger.add(
                self._sink, format="{message}", level=normalized_level, colorize=False
            )

    def _emit(self, level: str, event: str, stage: str, **context: object) -> None:
        """Emit one structured runtime log line."""

        line = f"[phase] level={level} stage={stage} event={event}{_format_context(context)}"
        _loguru_logger.log(level, line)

    def log_stage_start(self, stage: str, **context: object) -> None:
        self._emit("INFO", "start", stage, **context)

    def log_stage_complete(self, stage: str, **context: object) -> None:
        self._emit("INFO", "complete", stage, **context)

    def log_stage_failure(self, stage: str, error_type: str) -> None:
        """Emit a stage-failure runtime event without sensitive payload details."""

        self._emit("ERROR", "failure", stage, error_type=error_type)

    def log_chunk_state(self, index: int, state: str, **context: object) -> None:
        """Emit one executor state transition at debug level."""

        self._emit("DEBUG", state, "request", chunk=index, **context)

    def log_retry(self, index: int, **context: object) -> None:
        self._emit("WARNING", "retry", "request", chunk=index, **context)

    def log_commit(self, index: int, **context: object) -> None:
        self._emit("INFO", "commit", "assemble", chunk=index, **context)

    def log_resume(self, decision: str, **context: object) -> None:
        self._emit("INFO", decision, "progress", **context)

    def log_cancellation(self, state: str) -> None:
        self._emit("WARNING", state, "cancel")

    def log_warning(self, stage: str, event: str, **context: object) -> None:
        self._emit("WARNING", event, stage, **context)
