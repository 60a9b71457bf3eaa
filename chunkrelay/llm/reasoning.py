"""Hidden reasoning state accumulation.

Responsibilities:
- Collect encrypted continuation tokens, plaintext reasoning, and summaries.
- Keep function-call items so a session can replay them on the next turn.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping

from ..models.datatypes import ReasoningState


class ReasoningPreference(str, Enum):
    """Which reasoning form to replay when a backend accepts exactly one."""

    ENCRYPTED = "encrypted"
    UNENCRYPTED = "unencrypted"


_PASSTHROUGH_ITEM_TYPES = frozenset({"function_call", "function_call_output"})


class ReasoningTracker:
    """Accumulate reasoning for one exchange.

    Encrypted tokens are opaque: they are stored and replayed, never parsed.
    Batch mode uses a fresh tracker per chunk; session mode threads the
    resulting `ReasoningState` into the next turn.
    """

    def __init__(self) -> None:
        self._encrypted: str | None = None
        self._unencrypted: str | None = None
        self._summary: str | None = None
        self._passthrough: list[dict[str, Any]] = []

    @property
    def encrypted(self) -> str | None:
        return self._encrypted

    @property
    def unencrypted(self) -> str | None:
        return self._unencrypted

    @property
    def summary(self) -> str | None:
        return self._summary

    @property
    def state(self) -> ReasoningState:
        """Return an immutable snapshot of everything tracked so far."""

        return ReasoningState(
            encrypted=self._encrypted,
            unencrypted=self._unencrypted,
            summary=self._summary,
            passthrough_items=tuple(dict(item) for item in self._passthrough),
        )

    def reset(self) -> None:
        """Forget all tracked state."""

        self._encrypted = None
        self._unencrypted = None
        self._summary = None
        self._passthrough = []

    def append_unencrypted(self, delta: str) -> None:
        """Append one streamed plaintext reasoning delta."""

        if not delta:
            return
        self._unencrypted = (self._unencrypted or "") + delta

    def process_output_item(self, item: Mapping[str, Any]) -> str:
        """Fold one completed output item into the tracker.

        Args:
            item: A `reasoning`, `function_call`, `function_call_output`, or
                `message` output item.

        Returns:
            Reasoning text not already seen through streamed deltas, or an
            empty string when the item reveals nothing new.
        """

        item_type = item.get("type")
        if item_type in _PASSTHROUGH_ITEM_TYPES:
            self._passthrough.append(dict(item))
            return ""
        if item_type != "reasoning":
            return ""

        encrypted = item.get("encrypted_content")
        if isinstance(encrypted, str) and encrypted:
            self._encrypted = encrypted

        summary = _join_typed_text(item.get("summary"), "summary_text")
        if summary:
            self._summary = summary

        full_text = _join_typed_text(item.get("content"), "reasoning_text")
        if not full_text:
            return ""
        seen = self._unencrypted or ""
        if full_text.startswith(seen):
            revealed = full_text[len(seen) :]
            self._unencrypted = full_text
            return revealed
        self._unencrypted = seen + full_text
        return full_text


def _join_typed_text(parts: object, part_type: str) -> str:
    """Concatenate `text` of list entries whose `type` equals `part_type`."""

    if not isinstance(parts, list):
        return ""
    texts = [
        part["text"]
        for part in parts
        if isinstance(part, Mapping)
        and part.get("type") == part_type
        and isinstance(part.get("text"), str)
    ]
    return "".join(texts)
