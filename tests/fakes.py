"""Deterministic stand-ins for the streaming transport.

Scripts are plain lists: dict entries are decoded events, `STREAM_END` ends
the stream, exceptions are raised where they appear, callables run in place
(useful for gating), `HOLD` blocks until the stream is closed, and
`KEEPALIVE` stands for a comment line that carries no event.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Iterator

from chunkrelay.errors import ProviderError
from chunkrelay.llm.stream_client import STREAM_END

HOLD = object()
KEEPALIVE = object()

Script = list[Any]
Responder = Callable[[dict[str, Any]], "Script | BaseException"]


def chat_events(*deltas: str, reasoning: str | None = None, done: bool = True) -> Script:
    """Return chat-dialect delta events, optionally preceded by reasoning."""

    events: Script = []
    if reasoning is not None:
        events.append({"choices": [{"delta": {"reasoning_content": reasoning}}]})
    events.extend({"choices": [{"delta": {"content": delta}}]} for delta in deltas)
    if done:
        events.append(STREAM_END)
    return events


def last_user_text(payload: dict[str, Any]) -> str:
    """Return the text of the final user message in a chat payload."""

    user_messages = [message for message in payload["messages"] if message["role"] == "user"]
    content = user_messages[-1]["content"]
    if isinstance(content, list):
        return content[0]["text"]
    return content


class FakeEventStream:
    """In-memory replacement for `EventStream`."""

    def __init__(self, script: Script) -> None:
        self._script = list(script)
        self._closed = threading.Event()

    def __enter__(self) -> FakeEventStream:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        self._closed.set()

    def events(self, on_line: Callable[[], None] | None = None) -> Iterator[Any]:
        for entry in self._script:
            if on_line is not None:
                on_line()
            if entry is KEEPALIVE:
                continue
            if entry is HOLD:
                self._closed.wait(timeout=5.0)
                raise ProviderError("Connection closed while streaming.", kind="transport")
            if isinstance(entry, BaseException):
                raise entry
            if callable(entry):
                entry()
                continue
            yield entry


class ScriptedClient:
    """Fake `StreamingClient` that records payloads and replays scripts.

    Either pass `scripts` (consumed in call order) or a `responder` that maps
    each payload to a script, which keeps concurrent tests deterministic.
    """

    def __init__(
        self,
        scripts: list[Script | BaseException] | None = None,
        *,
        responder: Responder | None = None,
    ) -> None:
        self._scripts = list(scripts or [])
        self._responder = responder
        self._lock = threading.Lock()
        self.payloads: list[dict[str, Any]] = []
        self.streams: list[FakeEventStream] = []

    def open_stream(self, payload: dict[str, Any]) -> FakeEventStream:
        with self._lock:
            self.payloads.append(payload)
            if self._responder is not None:
                script = self._responder(payload)
            else:
                script = self._scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        stream = FakeEventStream(script)
        with self._lock:
            self.streams.append(stream)
        return stream

    @property
    def sent_user_texts(self) -> list[str]:
        with self._lock:
            return [last_user_text(payload) for payload in self.payloads]


def uppercase_echo(payload: dict[str, Any]) -> Script:
    """Answer each chunk with its user text in upper case."""

    return chat_events(last_user_text(payload).upper())
