"""Per-chunk request execution with retry and temperature escalation.

Responsibilities:
- Drive one chunk through `SENDING -> STREAMING -> SUCCEEDED` with retries.
- Fold parsed `StreamItem`s into answer text, keeping revealed reasoning apart.
- Discard partial text between attempts and escalate temperature per retry.
- Abort the open response on forceful cancellation.

Key types:
- `RetryPolicy`: attempt budget, escalation step and cap, retry delay.
- `ExchangeSettings`: everything shared by all chunks of one job.
- `RequestExecutor`: one chunk, one state machine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from time import monotonic
from typing import TYPE_CHECKING, Callable, Sequence

from ..errors import ChunkFailedError, JobCancelledError, ProviderError
from ..models.datatypes import (
    ChatMessage,
    ChunkJob,
    GenerationParams,
    ParamSetting,
    RequestOutcome,
    StreamItem,
    StreamItemKind,
)
from ..telemetry.logger import RunLogger
from .backends import BackendStrategy, StrategyContext
from .prompts import PromptComposer
from .reasoning import ReasoningPreference, ReasoningTracker
from .stream_client import STREAM_END, StreamingClient

if TYPE_CHECKING:
    from ..engine.cancellation import CancellationController

DeltaCallback = Callable[[int, str], None]


class ExecutorState(str, Enum):
    """Lifecycle states of one chunk exchange."""

    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry budget and temperature escalation settings.

    Attributes:
        max_attempts: Total attempts per chunk, including the first.
        temp_increment: Temperature added per retry.
        max_temperature: Upper bound for escalated temperature.
        base_temperature: Escalation base when no temperature is configured.
        retry_delay_seconds: Wait before each retry.
        max_retry_delay_seconds: Cap applied to provider `Retry-After` hints.
    """

    max_attempts: int = 5
    temp_increment: float = 0.15
    max_temperature: float = 1.0
    base_temperature: float = 0.0
    retry_delay_seconds: float = 2.0
    max_retry_delay_seconds: float = 60.0

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("`max_attempts` must be at least 1.")
        if self.temp_increment < 0:
            raise ValueError("`temp_increment` must not be negative.")
        if not 0.0 <= self.max_temperature <= 2.0:
            raise ValueError("`max_temperature` must be between 0 and 2.")
        if self.retry_delay_seconds < 0 or self.max_retry_delay_seconds < 0:
            raise ValueError("Retry delays must not be negative.")

    def temperature_offset(self, attempt: int) -> float:
        """Return the offset added on `attempt` (1-based); zero for the first attempt."""

        return round(max(0, attempt - 1) * self.temp_increment, 6)

    def temperature_for(self, attempt: int, configured: ParamSetting[float]) -> float | None:
        """Return the effective temperature for an attempt, `None` to leave it unset."""

        if attempt <= 1:
            return configured.value if configured.enabled else None
        base = configured.value if configured.enabled and configured.value is not None else (
            self.base_temperature
        )
        ceiling = max(self.max_temperature, base)
        return round(min(ceiling, base + self.temperature_offset(attempt)), 6)

    def delay_for(self, error: ProviderError) -> float:
        """Return the wait before the next attempt, honoring `Retry-After` when larger."""

        delay = self.retry_delay_seconds
        if error.retry_after_seconds is not None:
            delay = max(delay, min(error.retry_after_seconds, self.max_retry_delay_seconds))
        return delay


@dataclass(frozen=True, slots=True)
class ExchangeSettings:
    """Job-wide inputs shared by every chunk exchange.

    Attributes:
        client: Streaming transport.
        strategy: Wire dialect strategy.
        composer: Message builder.
        model: Model identifier.
        params: Generation parameters.
        retry: Retry policy.
        attempt_timeout_seconds: Wall-clock budget for one attempt.
        show_reasoning: Append conditional reasoning text to the output.
        preference: Reasoning form replayed in session mode.
        continue_reasoning: Thread reasoning into later turns.
        stream: Ask the backend for a streamed response.
    """

    client: StreamingClient
    strategy: BackendStrategy
    composer: PromptComposer
    model: str
    params: GenerationParams = field(default_factory=GenerationParams)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    attempt_timeout_seconds: float = 600.0
    show_reasoning: bool = False
    preference: ReasoningPreference = ReasoningPreference.ENCRYPTED
    continue_reasoning: bool = False
    stream: bool = True


@dataclass(slots=True)
class _AttemptText:
    """Text gathered during one attempt.

    Revealed reasoning is kept apart from the answer so a final full message
    replaces only the answer, whichever dialect produced it.
    """

    revealed: str = ""
    body: str = ""


class RequestExecutor:
    """Execute one chunk against the backend."""

    def __init__(
        self,
        settings: ExchangeSettings,
        cancellation: CancellationController,
        *,
        run_logger: RunLogger | None = None,
        on_delta: DeltaCallback | None = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._settings = settings
        self._cancellation = cancellation
        self._logger = run_logger
        self._on_delta = on_delta
        self._clock = clock
        self._state = ExecutorState.IDLE
        self._attempt = 0
        self.temperatures: list[float | None] = []

    @property
    def state(self) -> ExecutorState:
        return self._state

    @property
    def attempt(self) -> int:
        return self._attempt

    def execute(
        self,
        job: ChunkJob,
        tracker: ReasoningTracker | None = None,
        history: Sequence[ChatMessage] = (),
    ) -> RequestOutcome:
        """Run the chunk to success, or raise.

        Raises:
            ChunkFailedError: When every attempt failed.
            JobCancelledError: When the job was forcefully cancelled.
        """

        active_tracker = tracker if tracker is not None else ReasoningTracker()
        messages = self._settings.composer.compose(job.text, history)
        retry = self._settings.retry

        for attempt in range(1, retry.max_attempts + 1):
            self._attempt = attempt
            self._raise_if_forceful()
            active_tracker.reset()
            temperature = retry.temperature_for(attempt, self._settings.params.temperature)
            self.temperatures.append(temperature)
            context = StrategyContext(
                model=self._settings.model,
                params=self._settings.params,
                temperature=temperature,
                tracker=active_tracker,
                preference=self._settings.preference,
                continue_reasoning=self._settings.continue_reasoning,
                stream=self._settings.stream,
            )
            try:
                text = self._attempt_once(job, messages, context)
            except ProviderError as exc:
                if self._cancellation.is_forceful:
                    raise JobCancelledError() from exc
                self._log_attempt_failure(job, attempt, temperature, exc)
                if attempt >= retry.max_attempts:
                    self._transition(ExecutorState.FAILED, job)
                    raise ChunkFailedError(
                        index=job.index, attempts=attempt, last_error=exc
                    ) from exc
                self._transition(ExecutorState.RETRYING, job)
                if self._cancellation.wait_forceful(retry.delay_for(exc)):
                    raise JobCancelledError() from exc
                continue
            except JobCancelledError:
                raise
            except Exception as exc:
                if self._cancellation.is_forceful:
                    raise JobCancelledError() from exc
                raise

            self._transition(ExecutorState.SUCCEEDED, job)
            return RequestOutcome(
                index=job.index,
                text=text,
                reasoning_state=active_tracker.state,
                attempts=attempt,
            )

        raise ValueError("`max_attempts` must be at least 1.")

    def _attempt_once(
        self, job: ChunkJob, messages: Sequence[ChatMessage], context: StrategyContext
    ) -> str:
        """Send one request and consume its stream; return the accumulated text."""

        strategy = self._settings.strategy
        payload = strategy.build_payload(messages, context)
        self._transition(ExecutorState.SENDING, job)
        deadline = self._clock() + self._settings.attempt_timeout_seconds

        def check_deadline() -> None:
            if self._clock() > deadline:
                raise ProviderError(
                    f"Attempt exceeded {self._settings.attempt_timeout_seconds:g}s "
                    "while streaming.",
                    kind="timeout",
                )

        text = _AttemptText()
        finished = False
        with self._settings.client.open_stream(payload) as stream:
            handle = self._cancellation.register_abort(stream.close)
            try:
                self._transition(ExecutorState.STREAMING, job)
                for event in stream.events(on_line=check_deadline):
                    self._raise_if_forceful()
                    check_deadline()
                    if event is STREAM_END:
                        finished = True
                        break
                    for item in strategy.parse_chunk(event, context):
                        self._fold(job.index, text, item)
                    if event.get("type") in strategy.terminal_event_types:
                        finished = True
                        break
            finally:
                self._cancellation.unregister_abort(handle)

        self._raise_if_forceful()
        if not finished:
            raise ProviderError(
                "Stream ended before the completion signal.",
                kind="malformed_stream",
            )
        if not text.body.strip():
            raise ProviderError("Model returned empty text output.", kind="empty_output")
        return text.revealed + text.body

    def _fold(self, index: int, text: _AttemptText, item: StreamItem) -> None:
        """Apply one stream item to the attempt's buffers."""

        if item.kind is StreamItemKind.CONDITIONAL:
            if not self._settings.show_reasoning:
                return
            text.revealed += item.text
            emitted = item.text
        elif item.kind is StreamItemKind.OUTPUT:
            # A full message supersedes streamed deltas; only new text is emitted.
            emitted = item.text[len(text.body) :] if item.text.startswith(text.body) else ""
            text.body = item.text
        else:
            text.body += item.text
            emitted = item.text
        if self._on_delta is not None and emitted:
            self._on_delta(index, emitted)

    def _raise_if_forceful(self) -> None:
        if self._cancellation.is_forceful:
            raise JobCancelledError()

    def _transition(self, state: ExecutorState, job: ChunkJob) -> None:
        self._state = state
        if self._logger is not None:
            self._logger.log_chunk_state(job.index, state.value, attempt=self._attempt)

    def _log_attempt_failure(
        self,
        job: ChunkJob,
        attempt: int,
        temperature: float | None,
        error: ProviderError,
    ) -> None:
        if self._logger is None:
            return
        self._logger.log_retry(
            job.index,
            attempt=attempt,
            max_attempts=self._settings.retry.max_attempts,
            temperature="default" if temperature is None else temperature,
            error_kind=error.kind,
        )
