"""Domain exceptions for engine and CLI diagnostics.

Every user-visible failure carries a stable machine-readable `kind` next to
the human-readable `detail`, plus the `stage` where it was raised.
"""

from __future__ import annotations


class EngineError(RuntimeError):
    """Raised when a specific engine stage fails."""

    default_kind = "engine_error"

    def __init__(
        self,
        *,
        stage: str,
        detail: str,
        kind: str | None = None,
        hint: str | None = None,
    ) -> None:
        """Initialize a stage-scoped engine error."""

        super().__init__(detail)
        self.stage = stage
        self.detail = detail
        self.kind = kind or self.default_kind
        self.hint = hint


class ConfigurationError(EngineError):
    """Invalid configuration or incompatible saved progress; raised before network activity."""

    default_kind = "invalid_config"


class SourceFileError(EngineError):
    """Source file is missing, unreadable, or unusable."""

    default_kind = "source_not_found"


class TargetExistsError(EngineError):
    """Target output already exists and no progress record claims it."""

    default_kind = "target_exists"


class ProviderError(EngineError):
    """Raised when one provider exchange fails or returns a malformed stream."""

    default_kind = "http_error"

    def __init__(
        self,
        detail: str,
        *,
        kind: str | None = None,
        status_code: int | None = None,
        provider_code: str | None = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        """Initialize provider error metadata for retry decisions and diagnostics."""

        super().__init__(stage="request", detail=detail, kind=kind)
        self.status_code = status_code
        self.provider_code = provider_code
        self.retry_after_seconds = retry_after_seconds


class ChunkFailedError(EngineError):
    """A chunk exhausted its retry budget."""

    default_kind = "chunk_failed"

    def __init__(self, *, index: int, attempts: int, last_error: ProviderError) -> None:
        """Initialize with the chunk index and the error of the final attempt."""

        super().__init__(
            stage="request",
            detail=(
                f"Chunk {index} failed after {attempts} attempt(s): "
                f"[{last_error.kind}] {last_error.detail}"
            ),
            hint="Rerun the same command to resume from the last committed chunk.",
        )
        self.index = index
        self.attempts = attempts
        self.last_error = last_error


class JobCancelledError(EngineError):
    """Raised inside workers when the job was forcefully cancelled."""

    default_kind = "cancelled"

    def __init__(self, detail: str = "Job was cancelled.") -> None:
        """Initialize a cancellation marker error."""

        super().__init__(stage="cancel", detail=detail)
