"""Wire dialect strategies for streaming LLM endpoints.

Responsibilities:
- Build outbound request bodies for each supported dialect.
- Parse streamed events into dialect-neutral `StreamItem` sequences.
- Resolve the dialect from explicit configuration or the endpoint URL.

Key types:
- `Dialect`: closed set of supported wire formats.
- `BackendStrategy`: protocol implemented by `ChatDialect`,
  `ResponsesDialect`, and `LegacyDialect`.
- `StrategyContext`: per-attempt values a strategy needs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol, Sequence

from ..errors import ProviderError
from ..models.datatypes import (
    ChatMessage,
    GenerationParams,
    ReasoningState,
    StreamItem,
    StreamItemKind,
)
from .reasoning import ReasoningPreference, ReasoningTracker


class Dialect(str, Enum):
    """Supported wire dialects."""

    CHAT = "chat"
    RESPONSES = "responses"
    LEGACY = "legacy"


@dataclass(slots=True)
class StrategyContext:
    """Values a strategy needs for one attempt.

    Attributes:
        model: Model identifier sent with every request.
        params: Generation parameters; only enabled values are sent.
        temperature: Effective temperature for this attempt, `None` to omit.
        tracker: Reasoning tracker fed while parsing.
        preference: Reasoning form replayed when only one is accepted.
        continue_reasoning: Whether the session threads reasoning across turns.
        stream: Request a streamed response; `False` asks for one JSON body.
    """

    model: str
    params: GenerationParams = field(default_factory=GenerationParams)
    temperature: float | None = None
    tracker: ReasoningTracker = field(default_factory=ReasoningTracker)
    preference: ReasoningPreference = ReasoningPreference.ENCRYPTED
    continue_reasoning: bool = False
    stream: bool = True


class BackendStrategy(Protocol):
    """Capability set shared by all dialects."""

    name: Dialect
    terminal_event_types: frozenset[str]

    def build_payload(
        self, messages: Sequence[ChatMessage], context: StrategyContext
    ) -> dict[str, Any]:
        """Build the JSON request body for one attempt."""

    def parse_chunk(
        self, event: Mapping[str, Any], context: StrategyContext
    ) -> list[StreamItem]:
        """Parse one decoded stream event into normalized items."""


def _base_payload(context: StrategyContext) -> dict[str, Any]:
    payload: dict[str, Any] = {"model": context.model, "stream": context.stream}
    if context.temperature is not None:
        payload["temperature"] = context.temperature
    return payload


def _first_choice(event: Mapping[str, Any]) -> Mapping[str, Any] | None:
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, Mapping):
        raise ProviderError("Stream event `choices[0]` is malformed.", kind="malformed_stream")
    return first


def _text_field(container: object, key: str) -> str:
    if not isinstance(container, Mapping):
        return ""
    value = container.get(key)
    if isinstance(value, str):
        return value
    return ""


def _replayable_reasoning(
    reasoning: ReasoningState | None, preference: ReasoningPreference
) -> tuple[str | None, str | None]:
    """Pick `(encrypted, unencrypted)` to replay, honoring the caller's preference."""

    if reasoning is None:
        return None, None
    if preference is ReasoningPreference.ENCRYPTED and reasoning.encrypted:
        return reasoning.encrypted, None
    if reasoning.unencrypted:
        return None, reasoning.unencrypted
    if reasoning.encrypted:
        return reasoning.encrypted, None
    return None, None


class ChatDialect:
    """Role-tagged `messages` dialect (`/v1/chat/completions`)."""

    name = Dialect.CHAT
    terminal_event_types: frozenset[str] = frozenset()

    def build_payload(
        self, messages: Sequence[ChatMessage], context: StrategyContext
    ) -> dict[str, Any]:
        payload = _base_payload(context)
        wire_messages: list[dict[str, Any]] = []
        for message in messages:
            entry: dict[str, Any] = {
                "role": message.role,
                "content": self._content(message),
            }
            if message.role == "assistant" and context.continue_reasoning:
                _, plaintext = _replayable_reasoning(
                    message.reasoning, ReasoningPreference.UNENCRYPTED
                )
                if plaintext:
                    entry["reasoning_content"] = plaintext
            wire_messages.append(entry)
        payload["messages"] = wire_messages
        payload.update(context.params.enabled_values())
        return payload

    @staticmethod
    def _content(message: ChatMessage) -> str | list[dict[str, Any]]:
        if not message.images:
            return message.text
        parts: list[dict[str, Any]] = [{"type": "text", "text": message.text}]
        parts.extend(
            {"type": "image_url", "image_url": {"url": image}} for image in message.images
        )
        return parts

    def parse_chunk(
        self, event: Mapping[str, Any], context: StrategyContext
    ) -> list[StreamItem]:
        choice = _first_choice(event)
        if choice is None:
            return []

        items: list[StreamItem] = []
        delta = choice.get("delta")
        reasoning_delta = _text_field(delta, "reasoning_content")
        if reasoning_delta:
            context.tracker.append_unencrypted(reasoning_delta)
            items.append(StreamItem(reasoning_delta, StreamItemKind.CONDITIONAL))
        content_delta = _text_field(delta, "content")
        if content_delta:
            items.append(StreamItem(content_delta, StreamItemKind.DELTA))

        message = choice.get("message")
        reasoning_full = _text_field(message, "reasoning_content")
        if reasoning_full:
            context.tracker.append_unencrypted(reasoning_full)
            items.append(StreamItem(reasoning_full, StreamItemKind.CONDITIONAL))
        if isinstance(message, Mapping) and "content" in message:
            items.append(StreamItem(_text_field(message, "content"), StreamItemKind.OUTPUT))
        return items


class ResponsesDialect:
    """Structured `input` dialect with encrypted reasoning continuation (`/v1/responses`)."""

    name = Dialect.RESPONSES
    terminal_event_types = frozenset({"response.completed", "response.done"})
    _FAILURE_EVENT_TYPES = frozenset({"error", "response.failed", "response.incomplete"})
    _REASONING_DELTA_EVENT_TYPES = frozenset(
        {"response.reasoning_text.delta", "response.reasoning.delta"}
    )
    _UNSUPPORTED_PARAMS = frozenset({"top_k", "reasoning_effort"})

    def build_payload(
        self, messages: Sequence[ChatMessage], context: StrategyContext
    ) -> dict[str, Any]:
        payload = _base_payload(context)
        instructions = "\n\n".join(
            message.text for message in messages if message.role == "system" and message.text
        )
        if instructions:
            payload["instructions"] = instructions

        input_items: list[dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                continue
            if message.role == "assistant" and context.continue_reasoning:
                input_items.extend(self._reasoning_items(message.reasoning, context.preference))
            input_items.append(
                {
                    "type": "message",
                    "role": message.role,
                    "content": self._content_parts(message),
                }
            )
        payload["input"] = input_items

        for key, value in context.params.enabled_values().items():
            if key not in self._UNSUPPORTED_PARAMS:
                payload[key] = value
        if context.params.reasoning_effort.enabled:
            payload["reasoning"] = {
                "effort": context.params.reasoning_effort.value,
                "summary": "auto",
            }
        if context.continue_reasoning:
            payload["include"] = ["reasoning.encrypted_content"]
            payload["store"] = False
        return payload

    @staticmethod
    def _content_parts(message: ChatMessage) -> list[dict[str, Any]]:
        text_type = "output_text" if message.role == "assistant" else "input_text"
        parts: list[dict[str, Any]] = [{"type": text_type, "text": message.text}]
        parts.extend({"type": "input_image", "image_url": image} for image in message.images)
        return parts

    @staticmethod
    def _reasoning_items(
        reasoning: ReasoningState | None, preference: ReasoningPreference
    ) -> list[dict[str, Any]]:
        """Return the reasoning item plus passthrough items that preceded an assistant turn."""

        if reasoning is None:
            return []
        items: list[dict[str, Any]] = []
        encrypted, plaintext = _replayable_reasoning(reasoning, preference)
        summary = (
            [{"type": "summary_text", "text": reasoning.summary}] if reasoning.summary else []
        )
        if encrypted:
            items.append(
                {"type": "reasoning", "summary": summary, "encrypted_content": encrypted}
            )
        elif plaintext:
            items.append(
                {
                    "type": "reasoning",
                    "summary": summary,
                    "content": [{"type": "reasoning_text", "text": plaintext}],
                }
            )
        items.extend(dict(item) for item in reasoning.passthrough_items)
        return items

    def parse_chunk(
        self, event: Mapping[str, Any], context: StrategyContext
    ) -> list[StreamItem]:
        event_type = event.get("type")
        if event_type == "response.output_text.delta":
            delta = _text_field(event, "delta")
            return [StreamItem(delta, StreamItemKind.DELTA)] if delta else []
        if event_type in self._REASONING_DELTA_EVENT_TYPES:
            delta = _text_field(event, "delta")
            if not delta:
                return []
            context.tracker.append_unencrypted(delta)
            return [StreamItem(delta, StreamItemKind.CONDITIONAL)]
        if event_type == "response.output_item.done":
            item = event.get("item")
            if not isinstance(item, Mapping):
                raise ProviderError(
                    "Stream event `response.output_item.done` has no item.",
                    kind="malformed_stream",
                )
            revealed = context.tracker.process_output_item(item)
            return [StreamItem(revealed, StreamItemKind.CONDITIONAL)] if revealed else []
        if event_type in self.terminal_event_types:
            response = event.get("response")
            output = response.get("output") if isinstance(response, Mapping) else None
            return self._output_items(output)
        if event_type in self._FAILURE_EVENT_TYPES:
            raise ProviderError(
                f"Provider reported stream failure: {self._failure_message(event)}",
                kind="stream_error",
            )
        if event_type is None and isinstance(event.get("output"), list):
            for item in event["output"]:
                if isinstance(item, Mapping):
                    context.tracker.process_output_item(item)
            return self._output_items(event["output"])

        # Some gateways answer the responses route with chat-style chunks.
        choice = _first_choice(event)
        if choice is not None:
            content = _text_field(choice.get("delta"), "content")
            return [StreamItem(content, StreamItemKind.DELTA)] if content else []
        return []

    @staticmethod
    def _output_items(output: object) -> list[StreamItem]:
        if not isinstance(output, list):
            return []
        texts: list[str] = []
        for item in output:
            if isinstance(item, Mapping) and item.get("type") == "message":
                content = item.get("content")
                if isinstance(content, list):
                    texts.extend(
                        part["text"]
                        for part in content
                        if isinstance(part, Mapping)
                        and part.get("type") == "output_text"
                        and isinstance(part.get("text"), str)
                    )
        if not texts:
            return []
        return [StreamItem("".join(texts), StreamItemKind.OUTPUT)]

    @staticmethod
    def _failure_message(event: Mapping[str, Any]) -> str:
        for container in (event.get("error"), event.get("response"), event):
            if isinstance(container, Mapping):
                message = container.get("message")
                if isinstance(message, str) and message.strip():
                    return message.strip()
                nested = container.get("error")
                if isinstance(nested, Mapping) and isinstance(nested.get("message"), str):
                    return nested["message"]
        return str(event.get("type"))


class LegacyDialect:
    """Flat `prompt` dialect (`/v1/completions`)."""

    name = Dialect.LEGACY
    terminal_event_types: frozenset[str] = frozenset()

    def build_payload(
        self, messages: Sequence[ChatMessage], context: StrategyContext
    ) -> dict[str, Any]:
        payload = _base_payload(context)
        payload["prompt"] = "\n\n".join(message.text for message in messages if message.text)
        payload.update(context.params.enabled_values())
        return payload

    def parse_chunk(
        self, event: Mapping[str, Any], context: StrategyContext
    ) -> list[StreamItem]:
        choice = _first_choice(event)
        if choice is None:
            return []
        text = _text_field(choice, "text")
        return [StreamItem(text, StreamItemKind.DELTA)] if text else []


_STRATEGIES: dict[Dialect, BackendStrategy] = {
    Dialect.CHAT: ChatDialect(),
    Dialect.RESPONSES: ResponsesDialect(),
    Dialect.LEGACY: LegacyDialect(),
}


def strategy_for(dialect: Dialect) -> BackendStrategy:
    """Return the strategy registered for a dialect."""

    return _STRATEGIES[dialect]


def resolve_dialect(url: str, explicit: str | Dialect | None = None) -> Dialect:
    """Resolve the wire dialect from explicit config, falling back to the URL suffix.

    Raises:
        ValueError: If `explicit` names an unknown dialect.
    """

    if explicit is not None:
        if isinstance(explicit, Dialect):
            return explicit
        token = explicit.strip().lower()
        try:
            return Dialect(token)
        except ValueError as exc:
            supported = ", ".join(item.value for item in Dialect)
            raise ValueError(
                f"Unsupported `dialect` value `{explicit}`; supported: {supported}."
            ) from exc

    path = url.split("?", 1)[0].rstrip("/")
    if path.endswith("/responses"):
        return Dialect.RESPONSES
    if path.endswith("/completions") and not path.endswith("/chat/completions"):
        return Dialect.LEGACY
    return Dialect.CHAT
