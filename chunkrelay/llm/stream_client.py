"""Streaming HTTP transport for OpenAI-compatible endpoints.

Responsibilities:
- POST JSON payloads with `stream: true` and iterate server-sent events.
- Map HTTP and transport failures into `ProviderError` kinds.
- Redact credentials from any provider text surfaced in diagnostics.
"""

from __future__ import annotations

import json
import re
import socket
from typing import Any, Callable, Iterator

import requests

from .. import __version__
from ..errors import ProviderError


class StreamEnd:
    """Sentinel yielded once when the server sends `data: [DONE]`."""

    def __repr__(self) -> str:
        return "STREAM_END"


STREAM_END = StreamEnd()


class EventStream:
    """One open streaming response; iterate `events()` and close when done."""

    def __init__(self, response: requests.Response) -> None:
        self._response = response
        self._closed = False

    def __enter__(self) -> EventStream:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Close the underlying connection; safe to call from another thread."""

        if self._closed:
            return
        self._closed = True
        self._response.close()

    def events(
        self, on_line: Callable[[], None] | None = None
    ) -> Iterator[dict[str, Any] | StreamEnd]:
        """Yield decoded JSON events, then `STREAM_END` if the server signalled completion.

        A response served as plain `application/json` (stream flag ignored by
        the server) is yielded as a single event followed by `STREAM_END`.

        Args:
            on_line: Called for every raw line received, comments and blank
                keepalives included, before it is interpreted. Exceptions it
                raises end the iteration.
        """

        content_type = self._response.headers.get("Content-Type", "")
        if "application/json" in content_type:
            body = self._read_body()
            if on_line is not None:
                on_line()
            yield self._decode(body)
            yield STREAM_END
            return

        for data in self._iter_data_blocks(on_line):
            if data == "[DONE]":
                yield STREAM_END
                return
            yield self._decode(data)

    def _read_body(self) -> str:
        try:
            return self._response.content.decode("utf-8", errors="replace")
        except requests.RequestException as exc:
            raise StreamingClient.transport_error(exc) from exc

    def _iter_data_blocks(self, on_line: Callable[[], None] | None) -> Iterator[str]:
        """Group `data:` lines into SSE events separated by blank lines."""

        self._response.encoding = "utf-8"
        data_lines: list[str] = []
        try:
            for raw_line in self._response.iter_lines(decode_unicode=True):
                if on_line is not None:
                    on_line()
                line = raw_line.rstrip("\r") if raw_line else ""
                if not line:
                    if data_lines:
                        yield "\n".join(data_lines)
                        data_lines = []
                    continue
                if line.startswith(":"):
                    continue
                if line.startswith("data:"):
                    value = line[5:]
                    data_lines.append(value[1:] if value.startswith(" ") else value)
        except requests.RequestException as exc:
            raise StreamingClient.transport_error(exc) from exc
        if data_lines:
            yield "\n".join(data_lines)

    @staticmethod
    def _decode(data: str) -> dict[str, Any]:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            raise ProviderError(
                f"Stream event is not valid JSON: {StreamingClient.short_message(data)}",
                kind="malformed_stream",
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderError(
                "Stream event is not a JSON object.",
                kind="malformed_stream",
            )
        return payload


class StreamingClient:
    """Minimal requests-based client for streaming completions."""

    _MAX_PROVIDER_MESSAGE_CHARS = 180

    def __init__(
        self,
        *,
        url: str,
        api_key: str | None,
        timeout_seconds: float = 600.0,
        connect_timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize endpoint settings.

        Args:
            url: Full endpoint URL; the wire dialect is chosen separately.
            api_key: Optional bearer token; omitted from headers when blank.
            timeout_seconds: Read timeout between streamed bytes.
            connect_timeout_seconds: TCP connect timeout.
            session: Optional shared `requests.Session`.
        """

        self.url = url
        self.api_key = api_key.strip() if isinstance(api_key, str) else ""
        self.timeout_seconds = timeout_seconds
        self.connect_timeout_seconds = connect_timeout_seconds
        self._session = session if session is not None else requests.Session()

    def open_stream(self, payload: dict[str, Any]) -> EventStream:
        """POST a payload and return the open event stream.

        Raises:
            ProviderError: On transport failure or non-success HTTP status.
        """

        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "User-Agent": f"chunkrelay/{__version__}",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = self._session.post(
                self.url,
                headers=headers,
                json=payload,
                stream=True,
                timeout=(self.connect_timeout_seconds, self.timeout_seconds),
            )
        except requests.RequestException as exc:
            raise self.transport_error(exc) from exc

        if response.status_code >= 400:
            try:
                raise self._http_error(response)
            finally:
                response.close()
        return EventStream(response)

    @classmethod
    def transport_error(cls, exc: BaseException) -> ProviderError:
        """Convert a network-layer exception into a `ProviderError`."""

        kind = cls._classify_transport_failure(exc)
        if kind == "timeout":
            detail = "Request timed out."
        else:
            detail = f"Request transport error: {cls.short_message(cls.redact(str(exc)))}"
        return ProviderError(detail, kind=kind)

    @classmethod
    def redact(cls, text: str) -> str:
        """Redact API-key-like tokens from provider error content."""

        redacted = re.sub(r"\bsk-[A-Za-z0-9_-]{8,}\b", "[redacted-key]", text)
        redacted = re.sub(
            r"(?i)bearer\s+[A-Za-z0-9._-]{12,}",
            "Bearer [redacted-token]",
            redacted,
        )
        return redacted

    @classmethod
    def short_message(cls, text: str) -> str:
        """Normalize and cap user-facing provider message length."""

        compact = " ".join(text.split())
        if len(compact) <= cls._MAX_PROVIDER_MESSAGE_CHARS:
            return compact
        return f"{compact[: cls._MAX_PROVIDER_MESSAGE_CHARS - 1]}..."

    @classmethod
    def _extract_provider_message(cls, body: str) -> tuple[str, str | None]:
        """Extract a concise provider-facing message and optional provider error code."""

        if not body:
            return "", None

        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            return cls.short_message(cls.redact(body)), None

        provider_code: str | None = None
        message: str | None = None
        if isinstance(payload, dict):
            error_payload = payload.get("error")
            if isinstance(error_payload, dict):
                code_value = error_payload.get("code")
                if isinstance(code_value, str) and code_value.strip():
                    provider_code = code_value.strip()
                message_value = error_payload.get("message")
                if isinstance(message_value, str) and message_value.strip():
                    message = message_value.strip()
            elif isinstance(error_payload, str) and error_payload.strip():
                message = error_payload.strip()

        if message is None:
            message = body

        return cls.short_message(cls.redact(message)), provider_code

    @staticmethod
    def _classify_http_failure(
        status_code: int,
        provider_message: str,
        provider_code: str | None,
    ) -> str:
        """Classify HTTP errors into deterministic diagnostic kinds."""

        message_lower = provider_message.lower()
        normalized_code = provider_code.lower() if provider_code is not None else ""

        if status_code in {401, 403} or "api key" in message_lower:
            return "invalid_api_key"
        if normalized_code == "insufficient_quota" or (
            status_code == 429 and "quota" in message_lower
        ):
            return "insufficient_quota"
        if status_code == 429:
            return "rate_limited"
        if normalized_code == "model_not_found" or (
            "model" in message_lower
            and any(phrase in message_lower for phrase in ("not found", "does not exist", "invalid"))
        ):
            return "invalid_model"
        if status_code in {408, 504} or "timeout" in message_lower or "timed out" in message_lower:
            return "timeout"
        return "http_error"

    @staticmethod
    def _classify_transport_failure(reason: object) -> str:
        """Classify network-layer failures into deterministic diagnostic kinds."""

        if isinstance(reason, TimeoutError | socket.timeout | requests.Timeout):
            return "timeout"
        if isinstance(reason, requests.exceptions.ChunkedEncodingError):
            return "malformed_stream"
        return "transport"

    @staticmethod
    def _retry_after_seconds(response: requests.Response) -> float | None:
        raw = response.headers.get("Retry-After")
        if raw is None:
            return None
        try:
            seconds = float(raw.strip())
        except ValueError:
            return None
        return seconds if seconds >= 0 else None

    @classmethod
    def _http_error(cls, response: requests.Response) -> ProviderError:
        """Convert a non-success response into a normalized provider error."""

        status_code = response.status_code
        try:
            body = response.content.decode("utf-8", errors="replace").strip()
        except requests.RequestException:
            body = ""
        provider_message, provider_code = cls._extract_provider_message(body)
        kind = cls._classify_http_failure(status_code, provider_message, provider_code)

        headline = {
            "invalid_api_key": "Provider authentication failed",
            "insufficient_quota": "Provider quota is insufficient for this request",
            "rate_limited": "Provider rate limit reached",
            "invalid_model": "Provider rejected the selected model",
            "timeout": "Provider request timed out",
        }.get(kind, "Provider request failed")

        if provider_message:
            detail = f"{headline} (HTTP {status_code}): {provider_message}"
        else:
            detail = f"{headline} (HTTP {status_code})."

        return ProviderError(
            detail,
            kind=kind,
            status_code=status_code,
            provider_code=provider_code,
            retry_after_seconds=cls._retry_after_seconds(response),
        )
