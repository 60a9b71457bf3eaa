"""Batch job entry point.

Responsibilities:
- Validate configuration and files before any network activity.
- Decide between a fresh run, a resume, and an already-complete source.
- Wire segmenter, executors, scheduler, assembler, and progress store together.
- Expose cancellation through an explicit `JobContext`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import queue
import signal
import threading
from pathlib import Path
from typing import Any, Callable, Protocol

from ..config import RunConfig, RuntimeSettings, resolve_state_dir
from ..errors import (
    ConfigurationError,
    SourceFileError,
    TargetExistsError,
)
from ..llm.backends import strategy_for
from ..llm.executor import DeltaCallback, ExchangeSettings, RequestExecutor
from ..llm.prompts import PromptComposer
from ..llm.reasoning import ReasoningTracker
from ..llm.stream_client import StreamingClient
from ..models.datatypes import (
    ChatMessage,
    ChunkJob,
    JobOutcome,
    ProgressState,
    RequestOutcome,
)
from ..telemetry.logger import RunLogger
from ..text.normalizer import TextNormalizer
from ..text.segmenter import Segmenter
from .assembler import OutputAssembler
from .cancellation import CancellationController
from .progress import ProgressStore, compute_fingerprint, source_key
from .scheduler import Scheduler

CommitCallback = Callable[[int, int], None]

_BYTES_PER_MB = 1024 * 1024


class CancellableJob(Protocol):
    """Anything the interrupt handler can cancel."""

    def cancel(self) -> object:
        """Escalate cancellation one step."""


class _InterruptRelay:
    """Run interrupt-driven cancellation on a worker thread.

    Signal handlers only enqueue here; the relay thread applies each queued
    step through `JobContext.cancel_active()`.
    """

    def __init__(self, context: JobContext) -> None:
        self._context = context
        self._pending: queue.SimpleQueue[bool] = queue.SimpleQueue()
        self._handled = threading.Condition()
        self._notified = 0
        self._processed = 0
        self._thread = threading.Thread(
            target=self._drain, name="chunkrelay-interrupts", daemon=True
        )
        self._thread.start()

    def notify(self) -> None:
        """Queue one cancellation step; safe to call from a signal handler."""

        self._notified += 1
        self._pending.put(True)

    def wait_idle(self, timeout: float) -> bool:
        """Block until every queued step has been applied."""

        with self._handled:
            return self._handled.wait_for(
                lambda: self._processed >= self._notified, timeout=timeout
            )

    def _drain(self) -> None:
        while self._pending.get():
            self._context.cancel_active()
            with self._handled:
                self._processed += 1
                self._handled.notify_all()


@dataclass(slots=True)
class JobContext:
    """Holds the job currently running in this process, if any."""

    active_job: CancellableJob | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _relay: _InterruptRelay | None = field(default=None, repr=False)

    def activate(self, job: CancellableJob) -> None:
        with self._lock:
            self.active_job = job

    def clear(self, job: CancellableJob | None = None) -> None:
        """Forget the active job; with `job`, only if it is still the active one."""

        with self._lock:
            if job is None or self.active_job is job:
                self.active_job = None

    def cancel_active(self) -> bool:
        """Cancel the active job one step; return whether one was running."""

        with self._lock:
            job = self.active_job
        if job is None:
            return False
        job.cancel()
        return True

    def interrupt_relay(self) -> _InterruptRelay:
        """Return this context's relay, starting its thread on first use."""

        with self._lock:
            if self._relay is None:
                self._relay = _InterruptRelay(self)
            return self._relay


def install_interrupt_handler(context: JobContext) -> Any:
    """Route SIGINT to `context.cancel_active()`; return the previous handler.

    The first interrupt requests a graceful stop, the second aborts in-flight
    requests. With no active job, SIGINT behaves as usual. The cancellation
    itself runs on the context's relay thread, not inside the handler.
    """

    relay = context.interrupt_relay()

    def _handle(signum: int, frame: object) -> None:
        if context.active_job is None:
            raise KeyboardInterrupt
        relay.notify()

    return signal.signal(signal.SIGINT, _handle)


class BatchJob:
    """One source file processed into one target file."""

    def __init__(
        self,
        config: RunConfig,
        source_path: Path,
        target_path: Path,
        *,
        store: ProgressStore | None = None,
        client: StreamingClient | None = None,
        run_logger: RunLogger | None = None,
        on_delta: DeltaCallback | None = None,
        on_commit: CommitCallback | None = None,
        on_plan: Callable[[int, int], None] | None = None,
        cancellation: CancellationController | None = None,
    ) -> None:
        self.config = config
        self.source_path = source_path
        self.target_path = target_path
        self._store = store
        self._client = client
        self._logger = run_logger
        self._on_delta = on_delta
        self._on_commit = on_commit
        self._on_plan = on_plan
        self.cancellation = cancellation or CancellationController(run_logger)
        self._normalizer = TextNormalizer()
        self._progress: ProgressState | None = None

    def cancel(self) -> object:
        """Escalate cancellation: graceful stop first, then abort in-flight requests."""

        return self.cancellation.cancel()

    def execute(self, context: JobContext | None = None) -> JobOutcome:
        """Run the job to completion, cancellation, or failure.

        Raises:
            ConfigurationError: Invalid configuration, locked source, or incompatible progress.
            SourceFileError: Missing, oversized, or unreadable source.
            TargetExistsError: Target exists without a progress record.
            ChunkFailedError: A chunk exhausted its retries; committed progress is kept.
        """

        runtime = self._validated_runtime()
        text = self._read_source()
        chunks = Segmenter(self._normalizer).segment(text, self.config.chunk_size)
        if not chunks:
            if self._logger is not None:
                self._logger.log_stage_complete("segment", chunks=0)
            return JobOutcome.EMPTY_SOURCE

        key = source_key(text)
        store = self._store or ProgressStore(
            resolve_state_dir(self.config.state_dir), run_logger=self._logger
        )
        with store.lock(key):
            progress = self._prepare_target(store, key, runtime, len(chunks))
            if progress is None:
                return JobOutcome.ALREADY_COMPLETE
            start_index = progress.last_index + 1
            pending = chunks[start_index:]
            if self._on_plan is not None:
                self._on_plan(start_index, len(chunks))
            if self._logger is not None:
                self._logger.log_stage_start(
                    "job",
                    chunks=len(chunks),
                    pending=len(pending),
                    dialect=runtime.dialect,
                    parallel=self.config.effective_concurrency,
                )

            active = context if context is not None else JobContext()
            active.activate(self)
            try:
                self._run_chunks(store, runtime, pending, progress)
            except Exception as exc:
                if self._logger is not None:
                    self._logger.log_stage_failure(
                        "job", getattr(exc, "kind", type(exc).__name__)
                    )
                raise
            finally:
                active.clear(self)

            finished = self._progress is not None and self._progress.is_complete
            if self.cancellation.is_requested and not finished:
                return JobOutcome.CANCELLED
            store.remove(key)
            if self._logger is not None:
                self._logger.log_stage_complete("job", chunks=len(chunks))
            return JobOutcome.COMPLETED

    def _validated_runtime(self) -> RuntimeSettings:
        try:
            self.config.validate()
            runtime = self.config.resolved_runtime()
            self.config.validate_runtime(runtime)
        except ValueError as exc:
            raise ConfigurationError(stage="config", detail=str(exc)) from exc
        if not self.config.effective_prompts.has_any:
            raise ConfigurationError(
                stage="config",
                kind="missing_prompt",
                detail="At least one non-empty system or user prompt is required.",
                hint="Pass `--prompt` or `--system-prompt`, or set them in the run config.",
            )
        return runtime

    def _read_source(self) -> str:
        source = self.source_path
        if not source.is_file():
            raise SourceFileError(
                stage="validate",
                detail=f"Source file `{source}` does not exist.",
            )
        if source.resolve() == self.target_path.resolve():
            raise SourceFileError(
                stage="validate",
                kind="source_target_same",
                detail="Source and target must be different files.",
            )
        size = source.stat().st_size
        limit = int(self.config.max_source_mb * _BYTES_PER_MB)
        if size > limit:
            raise SourceFileError(
                stage="validate",
                kind="source_too_large",
                detail=(
                    f"Source file is {size / _BYTES_PER_MB:.1f} MB; "
                    f"the limit is {self.config.max_source_mb:g} MB."
                ),
            )
        try:
            raw = source.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise SourceFileError(
                stage="validate",
                kind="source_unreadable",
                detail=f"Source file `{source}` could not be read as UTF-8: {exc}",
            ) from exc
        return self._normalizer.normalize(raw)

    def _prepare_target(
        self, store: ProgressStore, key: str, runtime: RuntimeSettings, total: int
    ) -> ProgressState | None:
        """Return the progress record to continue from, or `None` when already complete."""

        fingerprint = compute_fingerprint(self.config.fingerprint_fields(runtime))
        file_name = str(self.target_path)
        saved = store.load(key)

        if saved is None:
            if self.target_path.exists():
                raise TargetExistsError(
                    stage="validate",
                    detail=f"Target `{self.target_path}` already exists.",
                    hint="Choose another target or remove the existing file.",
                )
            fresh = ProgressState(
                source_key=key,
                file_name=file_name,
                last_index=-1,
                fingerprint=fingerprint,
                total_chunks=total,
                config=self.config.persisted_fields(runtime),
            )
            self._progress = fresh
            store.save(fresh)
            self.target_path.parent.mkdir(parents=True, exist_ok=True)
            self.target_path.touch()
            if self._logger is not None:
                self._logger.log_resume("fresh", chunks=total)
            return fresh

        if saved.fingerprint != fingerprint or saved.total_chunks != total:
            raise ConfigurationError(
                stage="progress",
                kind="stale_progress",
                detail=(
                    "Saved progress for this source was made with a different model, "
                    "prompt, chunk size, language, mode, or dialect."
                ),
                hint="Restore the original settings or run `chunkrelay progress rm <source>`.",
            )
        if saved.file_name != file_name:
            raise ConfigurationError(
                stage="progress",
                kind="stale_progress",
                detail=f"Saved progress for this source writes to `{saved.file_name}`.",
                hint="Use the original target or run `chunkrelay progress rm <source>`.",
            )
        if saved.is_complete:
            store.remove(key)
            if self._logger is not None:
                self._logger.log_resume("already_complete", chunks=total)
            return None

        self._truncate_target(saved)
        self._progress = saved
        if self._logger is not None:
            self._logger.log_resume("resume", from_index=saved.last_index + 1, chunks=total)
        return saved

    def _truncate_target(self, saved: ProgressState) -> None:
        """Drop bytes written after the last recorded commit."""

        if not self.target_path.exists():
            if saved.output_bytes == 0:
                self.target_path.touch()
                return
            raise ConfigurationError(
                stage="progress",
                kind="stale_progress",
                detail=f"Target `{self.target_path}` is missing but progress says it was written.",
                hint="Run `chunkrelay progress rm <source>` to start over.",
            )
        size = self.target_path.stat().st_size
        if size < saved.output_bytes:
            raise ConfigurationError(
                stage="progress",
                kind="stale_progress",
                detail=(
                    f"Target `{self.target_path}` is shorter ({size} bytes) than recorded "
                    f"progress ({saved.output_bytes} bytes)."
                ),
                hint="Run `chunkrelay progress rm <source>` to start over.",
            )
        if size > saved.output_bytes:
            with self.target_path.open("r+b") as handle:
                handle.truncate(saved.output_bytes)

    def _run_chunks(
        self,
        store: ProgressStore,
        runtime: RuntimeSettings,
        pending: list[ChunkJob],
        progress: ProgressState,
    ) -> list[RequestOutcome]:
        config = self.config
        composer = PromptComposer(
            config.effective_prompts,
            mode=config.mode,
            source_language=config.source_language,
            target_language=config.target_language,
            context_info=config.context_info,
            images=config.images,
        )
        client = self._client or StreamingClient(
            url=runtime.url,
            api_key=runtime.api_key,
            timeout_seconds=config.timeout_seconds,
        )
        settings = ExchangeSettings(
            client=client,
            strategy=strategy_for(runtime.dialect),
            composer=composer,
            model=runtime.model,
            params=config.params,
            retry=config.retry,
            attempt_timeout_seconds=config.timeout_seconds,
            show_reasoning=config.show_reasoning,
            preference=config.reasoning_preference,
            continue_reasoning=config.session_mode,
            stream=config.stream,
        )
        session = _SessionHistory(composer) if config.session_mode else None

        def execute_chunk(job: ChunkJob) -> RequestOutcome:
            executor = RequestExecutor(
                settings,
                self.cancellation,
                run_logger=self._logger,
                on_delta=self._on_delta,
            )
            if session is None:
                return executor.execute(job, ReasoningTracker())
            outcome = executor.execute(job, ReasoningTracker(), session.messages())
            session.record(job, outcome)
            return outcome

        latest = progress

        def commit(outcome: RequestOutcome, output_bytes: int) -> None:
            nonlocal latest
            latest = latest.advanced(last_index=outcome.index, output_bytes=output_bytes)
            self._progress = latest
            store.save(latest)
            if self._on_commit is not None:
                self._on_commit(outcome.index, latest.total_chunks)

        with self.target_path.open("ab") as sink:
            assembler = OutputAssembler(
                sink,
                next_index=progress.last_index + 1,
                on_commit=commit,
                normalizer=self._normalizer,
            )
            scheduler = Scheduler(
                execute_chunk=execute_chunk,
                assembler=assembler,
                cancellation=self.cancellation,
                run_logger=self._logger,
            )
            return scheduler.run(
                pending, config.effective_concurrency, config.inter_request_delay
            )


class _SessionHistory:
    """Previous turn replayed into the next request in session mode."""

    def __init__(self, composer: PromptComposer) -> None:
        self._composer = composer
        self._previous: tuple[ChatMessage, ChatMessage] | None = None

    def messages(self) -> tuple[ChatMessage, ...]:
        return self._previous or ()

    def record(self, job: ChunkJob, outcome: RequestOutcome) -> None:
        reasoning = outcome.reasoning_state
        self._previous = (
            ChatMessage(role="user", text=self._composer.user_text(job.text)),
            ChatMessage(
                role="assistant",
                text=outcome.text,
                reasoning=None if reasoning.is_empty else reasoning,
            ),
        )
