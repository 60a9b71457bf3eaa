"""Unit tests for wire dialect payload building and stream parsing."""

from __future__ import annotations

import pytest

from chunkrelay.errors import ProviderError
from chunkrelay.llm.backends import (
    ChatDialect,
    Dialect,
    LegacyDialect,
    ResponsesDialect,
    StrategyContext,
    resolve_dialect,
)
from chunkrelay.llm.reasoning import ReasoningPreference
from chunkrelay.models.datatypes import (
    ChatMessage,
    GenerationParams,
    ParamSetting,
    ReasoningState,
    StreamItem,
    StreamItemKind,
)


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("http://localhost:8080/v1/chat/completions", Dialect.CHAT),
        ("https://api.example.test/v1/responses/", Dialect.RESPONSES),
        ("http://localhost:5000/v1/completions?debug=1", Dialect.LEGACY),
        ("http://localhost:5000/generate", Dialect.CHAT),
    ],
)
def test_resolve_dialect_infers_from_url_suffix(url: str, expected: Dialect) -> None:
    assert resolve_dialect(url) is expected


def test_resolve_dialect_prefers_explicit_value_and_rejects_unknown() -> None:
    assert resolve_dialect("http://x/v1/chat/completions", " Responses ") is Dialect.RESPONSES
    with pytest.raises(ValueError, match="supported: chat, responses, legacy"):
        resolve_dialect("http://x/v1/chat/completions", "grpc")


def _params() -> GenerationParams:
    return GenerationParams(
        temperature=ParamSetting.on(0.7),
        top_k=ParamSetting.on(40),
        seed=ParamSetting.on(11),
        reasoning_effort=ParamSetting.on("low"),
    )


def test_chat_payload_sends_only_enabled_params_and_attempt_temperature() -> None:
    """The attempt temperature wins over the configured one; disabled params are omitted."""

    context = StrategyContext(model="m", params=_params(), temperature=0.85)
    messages = [
        ChatMessage("system", "Be exact."),
        ChatMessage("user", "Hi.", images=("data:image/png;base64,AAAA",)),
    ]

    payload = ChatDialect().build_payload(messages, context)

    assert payload["model"] == "m"
    assert payload["stream"] is True
    assert payload["temperature"] == 0.85
    assert payload["top_k"] == 40
    assert payload["seed"] == 11
    assert payload["reasoning_effort"] == "low"
    assert "top_p" not in payload
    assert payload["messages"][0] == {"role": "system", "content": "Be exact."}
    assert payload["messages"][1]["content"] == [
        {"type": "text", "text": "Hi."},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
    ]


def test_chat_payload_omits_temperature_when_unset_and_honors_no_stream() -> None:
    payload = ChatDialect().build_payload(
        [ChatMessage("user", "Hi.")], StrategyContext(model="m", stream=False)
    )

    assert "temperature" not in payload
    assert payload["stream"] is False


def test_chat_payload_replays_plaintext_reasoning_in_session_mode() -> None:
    history = ChatMessage("assistant", "Bonjour.", reasoning=ReasoningState(unencrypted="think"))

    payload = ChatDialect().build_payload(
        [history, ChatMessage("user", "Next.")],
        StrategyContext(model="m", continue_reasoning=True),
    )

    assert payload["messages"][0] == {
        "role": "assistant",
        "content": "Bonjour.",
        "reasoning_content": "think",
    }


def test_chat_parse_separates_reasoning_content_and_final_message() -> None:
    """Reasoning deltas are conditional; a full `message` replaces accumulated text."""

    dialect = ChatDialect()
    context = StrategyContext(model="m")

    streamed = dialect.parse_chunk(
        {"choices": [{"delta": {"reasoning_content": "hmm", "content": "Hi"}}]}, context
    )
    final = dialect.parse_chunk({"choices": [{"message": {"content": "Hello"}}]}, context)

    assert streamed == [
        StreamItem("hmm", StreamItemKind.CONDITIONAL),
        StreamItem("Hi", StreamItemKind.DELTA),
    ]
    assert final == [StreamItem("Hello", StreamItemKind.OUTPUT)]
    assert context.tracker.unencrypted == "hmm"
    assert dialect.parse_chunk({"choices": []}, context) == []


def test_chat_parse_rejects_malformed_choice() -> None:
    with pytest.raises(ProviderError) as exc_info:
        ChatDialect().parse_chunk({"choices": ["oops"]}, StrategyContext(model="m"))

    assert exc_info.value.kind == "malformed_stream"


def test_responses_payload_moves_system_to_instructions_and_replays_reasoning() -> None:
    """Encrypted reasoning and passthrough items precede the assistant turn they produced."""

    reasoning = ReasoningState(
        encrypted="opaque-token",
        unencrypted="plain",
        summary="short",
        passthrough_items=({"type": "function_call", "call_id": "c1"},),
    )
    messages = [
        ChatMessage("system", "Translate."),
        ChatMessage("user", "One."),
        ChatMessage("assistant", "Un.", reasoning=reasoning),
        ChatMessage("user", "Two.", images=("data:image/png;base64,AAAA",)),
    ]
    context = StrategyContext(model="m", params=_params(), continue_reasoning=True)

    payload = ResponsesDialect().build_payload(messages, context)

    assert payload["instructions"] == "Translate."
    assert "top_k" not in payload
    assert "reasoning_effort" not in payload
    assert payload["reasoning"] == {"effort": "low", "summary": "auto"}
    assert payload["include"] == ["reasoning.encrypted_content"]
    assert payload["store"] is False
    assert [item["type"] for item in payload["input"]] == [
        "message",
        "reasoning",
        "function_call",
        "message",
        "message",
    ]
    assert payload["input"][1] == {
        "type": "reasoning",
        "summary": [{"type": "summary_text", "text": "short"}],
        "encrypted_content": "opaque-token",
    }
    assert payload["input"][3]["content"] == [{"type": "output_text", "text": "Un."}]
    assert payload["input"][4]["content"][1] == {
        "type": "input_image",
        "image_url": "data:image/png;base64,AAAA",
    }


def test_responses_payload_replays_plaintext_when_preferred() -> None:
    reasoning = ReasoningState(encrypted="opaque-token", unencrypted="plain")
    context = StrategyContext(
        model="m",
        continue_reasoning=True,
        preference=ReasoningPreference.UNENCRYPTED,
    )

    payload = ResponsesDialect().build_payload(
        [ChatMessage("assistant", "Un.", reasoning=reasoning)], context
    )

    assert payload["input"][0] == {
        "type": "reasoning",
        "summary": [],
        "content": [{"type": "reasoning_text", "text": "plain"}],
    }


def test_responses_parse_handles_deltas_reasoning_items_and_completion() -> None:
    dialect = ResponsesDialect()
    context = StrategyContext(model="m")

    assert dialect.parse_chunk(
        {"type": "response.output_text.delta", "delta": "Hel"}, context
    ) == [StreamItem("Hel", StreamItemKind.DELTA)]
    assert dialect.parse_chunk(
        {"type": "response.reasoning_text.delta", "delta": "step"}, context
    ) == [StreamItem("step", StreamItemKind.CONDITIONAL)]
    revealed = dialect.parse_chunk(
        {
            "type": "response.output_item.done",
            "item": {
                "type": "reasoning",
                "encrypted_content": "tok",
                "content": [{"type": "reasoning_text", "text": "step two"}],
            },
        },
        context,
    )
    completed = dialect.parse_chunk(
        {
            "type": "response.completed",
            "response": {
                "output": [
                    {"type": "message", "content": [{"type": "output_text", "text": "Hello"}]}
                ]
            },
        },
        context,
    )

    assert revealed == [StreamItem(" two", StreamItemKind.CONDITIONAL)]
    assert completed == [StreamItem("Hello", StreamItemKind.OUTPUT)]
    assert context.tracker.encrypted == "tok"
    assert "response.completed" in dialect.terminal_event_types


def test_responses_parse_raises_on_failure_events() -> None:
    with pytest.raises(ProviderError) as exc_info:
        ResponsesDialect().parse_chunk(
            {"type": "response.failed", "response": {"error": {"message": "overloaded"}}},
            StrategyContext(model="m"),
        )

    assert exc_info.value.kind == "stream_error"
    assert "overloaded" in exc_info.value.detail


def test_responses_parse_accepts_chat_style_chunks_from_gateways() -> None:
    items = ResponsesDialect().parse_chunk(
        {"choices": [{"delta": {"content": "Hi"}}]}, StrategyContext(model="m")
    )

    assert items == [StreamItem("Hi", StreamItemKind.DELTA)]


def test_legacy_payload_flattens_messages_into_prompt() -> None:
    payload = LegacyDialect().build_payload(
        [ChatMessage("system", "Be exact."), ChatMessage("user", "Hi.")],
        StrategyContext(model="m", temperature=0.2),
    )

    assert payload == {
        "model": "m",
        "stream": True,
        "temperature": 0.2,
        "prompt": "Be exact.\n\nHi.",
    }
    assert LegacyDialect().parse_chunk(
        {"choices": [{"text": "Hey"}]}, StrategyContext(model="m")
    ) == [StreamItem("Hey", StreamItemKind.DELTA)]
