"""Core datatypes shared across chunkrelay modules.

Responsibilities:
- Represent immutable records exchanged between engine components.
- Replace positional `(enabled, value)` tuples with explicit settings types.

Key types:
- `ChunkJob`, `RequestOutcome`, `ReasoningState`, `StreamItem`,
  `ParamSetting`, `PromptSetting`, `GenerationParams`, `ChatMessage`,
  `ProgressState`, and the `TerminationState` / `JobOutcome` enums.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class ChunkJob:
    """A bounded slice of normalized source text scheduled as one exchange.

    Attributes:
        index: 0-based position in source order.
        text: Chunk text, stripped of boundary whitespace.
    """

    index: int
    text: str


@dataclass(frozen=True, slots=True)
class ReasoningState:
    """Snapshot of accumulated hidden reasoning for one session.

    Attributes:
        encrypted: Opaque continuation token; stored and replayed, never inspected.
        unencrypted: Concatenated plaintext reasoning transcript.
        summary: Latest reasoning summary text.
        passthrough_items: Function-call items replayed verbatim on the next turn.
    """

    encrypted: str | None = None
    unencrypted: str | None = None
    summary: str | None = None
    passthrough_items: tuple[dict[str, Any], ...] = ()

    @property
    def is_empty(self) -> bool:
        """Return whether nothing was recorded."""

        return (
            self.encrypted is None
            and self.unencrypted is None
            and self.summary is None
            and not self.passthrough_items
        )


@dataclass(frozen=True, slots=True)
class RequestOutcome:
    """Successful result of one chunk exchange.

    Attributes:
        index: Index of the originating `ChunkJob`.
        text: Final accumulated output text.
        reasoning_state: Reasoning captured during the exchange.
        attempts: Number of attempts used, including the successful one.
    """

    index: int
    text: str
    reasoning_state: ReasoningState = field(default_factory=ReasoningState)
    attempts: int = 1


class StreamItemKind(str, Enum):
    """How a parsed stream fragment folds into accumulated text."""

    DELTA = "delta"
    OUTPUT = "output"
    CONDITIONAL = "conditional"


@dataclass(frozen=True, slots=True)
class StreamItem:
    """One normalized fragment parsed from a streamed event."""

    text: str
    kind: StreamItemKind = StreamItemKind.DELTA


@dataclass(frozen=True, slots=True)
class ParamSetting(Generic[T]):
    """One optional generation parameter.

    Attributes:
        enabled: Whether the value is sent to the backend.
        value: Parameter value used when enabled.
    """

    enabled: bool = False
    value: T | None = None

    @classmethod
    def on(cls, value: T) -> ParamSetting[T]:
        """Return an enabled setting for `value`."""

        return cls(enabled=True, value=value)

    @classmethod
    def off(cls) -> ParamSetting[T]:
        """Return a disabled setting."""

        return cls(enabled=False, value=None)

    def as_json(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "value": self.value}


@dataclass(frozen=True, slots=True)
class PromptSetting:
    """One prompt slot with its enablement flag and message role.

    Attributes:
        enabled: Whether the prompt is used.
        text: Prompt text or template.
        role: Message role the prompt is sent with.
    """

    enabled: bool = False
    text: str = ""
    role: str = "user"

    @property
    def active_text(self) -> str | None:
        """Return stripped prompt text when enabled and non-empty."""

        if not self.enabled:
            return None
        stripped = self.text.strip()
        return stripped or None

    def as_json(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "text": self.text, "role": self.role}


class TerminationState(str, Enum):
    """Job-wide cancellation level; only moves forward."""

    NONE = "none"
    REQUESTED = "requested"
    FORCEFUL = "forceful"


class JobOutcome(str, Enum):
    """Distinguishable terminal outcomes of `BatchJob.execute`."""

    COMPLETED = "completed"
    ALREADY_COMPLETE = "already_complete"
    EMPTY_SOURCE = "empty_source"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ProgressState:
    """Persisted resumable checkpoint for one source text.

    Attributes:
        source_key: Hash of the normalized source text; names the progress file.
        file_name: Target output path.
        last_index: Last durably committed chunk index, `-1` when none.
        fingerprint: Hash of the determinism-relevant configuration.
        output_bytes: Target size in bytes right after the last commit.
        total_chunks: Number of chunks in the job.
        config: Non-secret resolved configuration fields.
    """

    source_key: str
    file_name: str
    last_index: int
    fingerprint: str
    output_bytes: int = 0
    total_chunks: int = 0
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        """Return whether every chunk has been committed."""

        return self.total_chunks > 0 and self.last_index >= self.total_chunks - 1

    def advanced(self, *, last_index: int, output_bytes: int) -> ProgressState:
        """Return a copy moved forward to a new committed prefix."""

        return ProgressState(
            source_key=self.source_key,
            file_name=self.file_name,
            last_index=last_index,
            fingerprint=self.fingerprint,
            output_bytes=output_bytes,
            total_chunks=self.total_chunks,
            config=self.config,
        )

    def to_json_payload(self) -> dict[str, Any]:
        """Serialize to the on-disk JSON shape."""

        return {
            **self.config,
            "fileName": self.file_name,
            "lastIndex": self.last_index,
            "fingerprint": self.fingerprint,
            "outputBytes": self.output_bytes,
            "totalChunks": self.total_chunks,
            "sourceKey": self.source_key,
        }

    @classmethod
    def from_json_payload(cls, payload: dict[str, Any]) -> ProgressState:
        """Parse the on-disk JSON shape.

        Raises:
            ValueError: If required fields are missing or mistyped.
        """

        reserved = {"fileName", "lastIndex", "fingerprint", "outputBytes", "totalChunks", "sourceKey"}
        try:
            file_name = payload["fileName"]
            last_index = payload["lastIndex"]
            fingerprint = payload["fingerprint"]
            source_key = payload["sourceKey"]
        except KeyError as exc:
            raise ValueError(f"progress record is missing `{exc.args[0]}`") from exc
        output_bytes = payload.get("outputBytes", 0)
        total_chunks = payload.get("totalChunks", 0)
        if not isinstance(file_name, str) or not isinstance(fingerprint, str):
            raise ValueError("progress `fileName` and `fingerprint` must be strings")
        if not isinstance(source_key, str):
            raise ValueError("progress `sourceKey` must be a string")
        for name, value in (
            ("lastIndex", last_index),
            ("outputBytes", output_bytes),
            ("totalChunks", total_chunks),
        ):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"progress `{name}` must be an integer")
        if last_index < -1 or output_bytes < 0 or total_chunks < 0:
            raise ValueError("progress counters must not be negative")
        config = {key: value for key, value in payload.items() if key not in reserved}
        return cls(
            source_key=source_key,
            file_name=file_name,
            last_index=last_index,
            fingerprint=fingerprint,
            output_bytes=output_bytes,
            total_chunks=total_chunks,
            config=config,
        )


@dataclass(frozen=True, slots=True)
class GenerationParams:
    """Optional generation parameters forwarded to the backend when enabled.

    Attributes:
        temperature: Sampling temperature; also the base for retry escalation.
        top_p: Nucleus sampling mass.
        top_k: Top-k cutoff (not sent by the responses dialect).
        presence_penalty: Presence penalty.
        seed: Sampling seed.
        reasoning_effort: Reasoning effort level for reasoning models.
        chat_template_kwargs: Server-side chat template arguments (llama.cpp style).
        enable_thinking: Thinking toggle for providers that expose it as a flag.
    """

    temperature: ParamSetting[float] = field(default_factory=ParamSetting)
    top_p: ParamSetting[float] = field(default_factory=ParamSetting)
    top_k: ParamSetting[int] = field(default_factory=ParamSetting)
    presence_penalty: ParamSetting[float] = field(default_factory=ParamSetting)
    seed: ParamSetting[int] = field(default_factory=ParamSetting)
    reasoning_effort: ParamSetting[str] = field(default_factory=ParamSetting)
    chat_template_kwargs: ParamSetting[dict[str, Any]] = field(default_factory=ParamSetting)
    enable_thinking: ParamSetting[bool] = field(default_factory=ParamSetting)

    def enabled_values(self) -> dict[str, Any]:
        """Return enabled parameters keyed by wire name, excluding temperature."""

        values: dict[str, Any] = {}
        for name in (
            "top_p",
            "top_k",
            "presence_penalty",
            "seed",
            "reasoning_effort",
            "chat_template_kwargs",
            "enable_thinking",
        ):
            setting = getattr(self, name)
            if setting.enabled:
                values[name] = setting.value
        return values

    def as_json(self) -> dict[str, Any]:
        return {
            name: getattr(self, name).as_json()
            for name in (
                "temperature",
                "top_p",
                "top_k",
                "presence_penalty",
                "seed",
                "reasoning_effort",
                "chat_template_kwargs",
                "enable_thinking",
            )
        }


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """Dialect-neutral message handed to a backend strategy.

    Attributes:
        role: `system`, `user`, or `assistant`.
        text: Message text.
        images: Image data URIs attached to a user message.
        reasoning: Reasoning captured when this assistant turn was produced.
    """

    role: str
    text: str
    images: tuple[str, ...] = ()
    reasoning: ReasoningState | None = None
