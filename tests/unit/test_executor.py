"""Unit tests for per-chunk request execution, retries, and temperature escalation."""

from __future__ import annotations

import io
import itertools
import threading
import time

import pytest

from chunkrelay.engine.cancellation import CancellationController
from chunkrelay.errors import ChunkFailedError, JobCancelledError, ProviderError
from chunkrelay.llm.backends import ChatDialect, LegacyDialect, ResponsesDialect
from chunkrelay.llm.executor import (
    ExchangeSettings,
    ExecutorState,
    RequestExecutor,
    RetryPolicy,
)
from chunkrelay.llm.prompts import PromptComposer, PromptSet
from chunkrelay.llm.stream_client import STREAM_END
from chunkrelay.models.datatypes import ChunkJob, GenerationParams, ParamSetting, PromptSetting
from chunkrelay.telemetry.logger import RunLogger
from tests.fakes import HOLD, KEEPALIVE, ScriptedClient, chat_events

_PROMPTS = PromptSet(prepend=PromptSetting(True, "Fix: {{ .TextToInject }}", "user"))


def _settings(client: ScriptedClient, **overrides: object) -> ExchangeSettings:
    values: dict[str, object] = {
        "client": client,
        "strategy": ChatDialect(),
        "composer": PromptComposer(_PROMPTS),
        "model": "test-model",
        "retry": RetryPolicy(max_attempts=3, retry_delay_seconds=0.0),
    }
    values.update(overrides)
    return ExchangeSettings(**values)  # type: ignore[arg-type]


def test_retries_discard_partial_text_and_escalate_temperature() -> None:
    """Fail, fail, succeed: only the final attempt's text survives."""

    client = ScriptedClient(
        [
            [
                {"choices": [{"delta": {"content": "partial "}}]},
                ProviderError("Connection reset.", kind="transport"),
            ],
            ProviderError("Provider request failed (HTTP 500).", kind="http_error"),
            chat_events("Final", " text"),
        ]
    )
    deltas: list[tuple[int, str]] = []
    sink = io.StringIO()
    executor = RequestExecutor(
        _settings(client),
        CancellationController(),
        run_logger=RunLogger(sink=sink, level="DEBUG"),
        on_delta=lambda index, text: deltas.append((index, text)),
    )

    outcome = executor.execute(ChunkJob(index=4, text="teh text"))

    assert outcome.index == 4
    assert outcome.text == "Final text"
    assert outcome.attempts == 3
    assert executor.state is ExecutorState.SUCCEEDED
    assert executor.temperatures == [None, 0.15, 0.3]
    assert "temperature" not in client.payloads[0]
    assert [payload.get("temperature") for payload in client.payloads[1:]] == [0.15, 0.3]
    assert client.sent_user_texts == ["Fix: teh text"] * 3
    assert deltas == [(4, "partial "), (4, "Final"), (4, " text")]
    log_output = sink.getvalue()
    assert "stage=request event=retry attempt=1 chunk=4 error_kind=transport" in log_output
    assert "teh text" not in log_output


def test_configured_temperature_escalates_up_to_the_cap() -> None:
    client = ScriptedClient(
        [
            ProviderError("Slow down.", kind="rate_limited"),
            ProviderError("Slow down.", kind="rate_limited"),
            chat_events("ok"),
        ]
    )
    params = GenerationParams(temperature=ParamSetting.on(0.9))
    executor = RequestExecutor(_settings(client, params=params), CancellationController())

    executor.execute(ChunkJob(index=0, text="x"))

    assert executor.temperatures == [0.9, 1.0, 1.0]


def test_exhausted_attempts_raise_chunk_failed_with_last_error() -> None:
    """Whitespace-only output counts as a failed attempt."""

    client = ScriptedClient([chat_events("   "), chat_events("")])
    executor = RequestExecutor(
        _settings(client, retry=RetryPolicy(max_attempts=2, retry_delay_seconds=0.0)),
        CancellationController(),
    )

    with pytest.raises(ChunkFailedError) as exc_info:
        executor.execute(ChunkJob(index=7, text="x"))

    error = exc_info.value
    assert error.index == 7
    assert error.attempts == 2
    assert error.last_error.kind == "empty_output"
    assert error.kind == "chunk_failed"
    assert executor.state is ExecutorState.FAILED


def test_stream_without_completion_signal_is_retried() -> None:
    client = ScriptedClient([chat_events("cut", done=False), chat_events("whole")])
    executor = RequestExecutor(_settings(client), CancellationController())

    outcome = executor.execute(ChunkJob(index=0, text="x"))

    assert outcome.text == "whole"
    assert outcome.attempts == 2


def test_full_message_replaces_streamed_deltas() -> None:
    client = ScriptedClient(
        [
            [
                {"choices": [{"delta": {"content": "draft"}}]},
                {"choices": [{"message": {"content": "Final"}}]},
                STREAM_END,
            ]
        ]
    )
    executor = RequestExecutor(_settings(client), CancellationController())

    assert executor.execute(ChunkJob(index=0, text="x")).text == "Final"


@pytest.mark.parametrize(
    ("show_reasoning", "expected"), [(True, "why answer"), (False, "answer")]
)
def test_reasoning_text_is_included_only_when_requested(
    show_reasoning: bool, expected: str
) -> None:
    client = ScriptedClient([chat_events("answer", reasoning="why ")])
    executor = RequestExecutor(
        _settings(client, show_reasoning=show_reasoning), CancellationController()
    )

    outcome = executor.execute(ChunkJob(index=0, text="x"))

    assert outcome.text == expected
    assert outcome.reasoning_state.unencrypted == "why "


_RESPONSES_COMPLETED = {
    "type": "response.completed",
    "response": {
        "output": [{"type": "message", "content": [{"type": "output_text", "text": "answer"}]}]
    },
}


@pytest.mark.parametrize("show_reasoning", [True, False])
@pytest.mark.parametrize(
    ("strategy", "script"),
    [
        pytest.param(ChatDialect(), chat_events("answer", reasoning="why "), id="chat-stream"),
        pytest.param(
            ChatDialect(),
            [
                {"choices": [{"message": {"reasoning_content": "why ", "content": "answer"}}]},
                STREAM_END,
            ],
            id="chat-single-body",
        ),
        pytest.param(
            ResponsesDialect(),
            [
                {"type": "response.reasoning_text.delta", "delta": "why "},
                {"type": "response.output_text.delta", "delta": "answer"},
                _RESPONSES_COMPLETED,
            ],
            id="responses-stream",
        ),
        pytest.param(
            ResponsesDialect(),
            [{"type": "response.reasoning_text.delta", "delta": "why "}, _RESPONSES_COMPLETED],
            id="responses-completed-only",
        ),
    ],
)
def test_revealed_reasoning_is_rendered_the_same_for_every_dialect(
    strategy: object, script: list[object], show_reasoning: bool
) -> None:
    """A final full message replaces streamed answer text but keeps revealed reasoning."""

    executor = RequestExecutor(
        _settings(ScriptedClient([script]), strategy=strategy, show_reasoning=show_reasoning),
        CancellationController(),
    )

    outcome = executor.execute(ChunkJob(index=0, text="x"))

    assert outcome.text == ("why answer" if show_reasoning else "answer")


def test_legacy_dialect_output_ignores_reasoning_display() -> None:
    client = ScriptedClient([[{"choices": [{"text": "answer"}]}, STREAM_END]])
    executor = RequestExecutor(
        _settings(client, strategy=LegacyDialect(), show_reasoning=True),
        CancellationController(),
    )

    assert executor.execute(ChunkJob(index=0, text="x")).text == "answer"


def test_full_message_emits_only_text_not_already_streamed() -> None:
    client = ScriptedClient(
        [
            [
                {"choices": [{"delta": {"content": "Hel"}}]},
                {"choices": [{"message": {"content": "Hello"}}]},
                STREAM_END,
            ]
        ]
    )
    deltas: list[str] = []
    executor = RequestExecutor(
        _settings(client),
        CancellationController(),
        on_delta=lambda index, text: deltas.append(text),
    )

    assert executor.execute(ChunkJob(index=0, text="x")).text == "Hello"
    assert deltas == ["Hel", "lo"]


@pytest.mark.parametrize(
    "script",
    [
        pytest.param([KEEPALIVE] * 1000 + chat_events("late"), id="keepalives-before-data"),
        pytest.param([KEEPALIVE] * 1000, id="keepalives-only"),
    ],
)
def test_keepalive_lines_do_not_extend_the_attempt_budget(script: list[object]) -> None:
    """The deadline is checked on every received line, not only on data events."""

    clock_reads = itertools.count(0)
    client = ScriptedClient([script])
    executor = RequestExecutor(
        _settings(
            client,
            attempt_timeout_seconds=10.0,
            retry=RetryPolicy(max_attempts=1, retry_delay_seconds=0.0),
        ),
        CancellationController(),
        clock=lambda: float(next(clock_reads)),
    )

    with pytest.raises(ChunkFailedError) as exc_info:
        executor.execute(ChunkJob(index=0, text="x"))

    assert exc_info.value.last_error.kind == "timeout"
    assert next(clock_reads) <= 13


def test_attempt_exceeding_wall_clock_budget_fails_with_timeout() -> None:
    ticks = itertools.count(0, 7)
    client = ScriptedClient([chat_events("a", "b", "c")])
    executor = RequestExecutor(
        _settings(
            client,
            attempt_timeout_seconds=10.0,
            retry=RetryPolicy(max_attempts=1, retry_delay_seconds=0.0),
        ),
        CancellationController(),
        clock=lambda: float(next(ticks)),
    )

    with pytest.raises(ChunkFailedError) as exc_info:
        executor.execute(ChunkJob(index=0, text="x"))

    assert exc_info.value.last_error.kind == "timeout"


def test_retry_delay_honors_capped_retry_after() -> None:
    policy = RetryPolicy(retry_delay_seconds=1.0, max_retry_delay_seconds=60.0)

    assert policy.delay_for(ProviderError("x", kind="transport")) == 1.0
    assert policy.delay_for(ProviderError("x", retry_after_seconds=0.5)) == 1.0
    assert policy.delay_for(ProviderError("x", retry_after_seconds=12.0)) == 12.0
    assert policy.delay_for(ProviderError("x", retry_after_seconds=600.0)) == 60.0


def test_invalid_retry_policy_is_rejected() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        RetryPolicy(max_attempts=0).validate()


def test_forceful_cancel_before_start_sends_nothing() -> None:
    client = ScriptedClient([chat_events("never")])
    cancellation = CancellationController()
    cancellation.force()
    executor = RequestExecutor(_settings(client), cancellation)

    with pytest.raises(JobCancelledError):
        executor.execute(ChunkJob(index=0, text="x"))

    assert client.payloads == []


def test_forceful_cancel_closes_open_stream() -> None:
    """Escalating to forceful should abort a stream blocked mid-response."""

    client = ScriptedClient([[{"choices": [{"delta": {"content": "so far"}}]}, HOLD]])
    cancellation = CancellationController()
    executor = RequestExecutor(_settings(client), cancellation)
    errors: list[BaseException] = []

    def _run() -> None:
        try:
            executor.execute(ChunkJob(index=0, text="x"))
        except BaseException as exc:
            errors.append(exc)

    worker = threading.Thread(target=_run)
    worker.start()
    for _ in range(200):
        if client.streams:
            break
        time.sleep(0.01)
    cancellation.cancel()
    cancellation.cancel()
    worker.join(timeout=5.0)

    assert not worker.is_alive()
    assert len(errors) == 1 and isinstance(errors[0], JobCancelledError)
    assert client.streams[0].closed is True
    assert len(client.payloads) == 1
