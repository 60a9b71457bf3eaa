"""Prompt templates and per-chunk message composition.

Responsibilities:
- Provide default translate and transform prompts.
- Fill `{{ .Name }}` placeholders and inject chunk text.
- Build the dialect-neutral message list for one chunk.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import re
from typing import Mapping, Sequence

from ..models.datatypes import ChatMessage, PromptSetting

_PLACEHOLDER = re.compile(r"\{\{\s*\.(\w+)\s*\}\}")
_TEXT_PLACEHOLDER = "TextToInject"


class TaskMode(str, Enum):
    """What the job asks the model to do with each chunk."""

    TRANSLATE = "translate"
    TRANSFORM = "transform"


DEFAULT_TRANSLATE_SYSTEM_PROMPT = (
    "You are a professional translator. Translate the user's text from "
    "{{ .LanguageSource }} into {{ .LanguageTarget }}. Preserve meaning, tone, "
    "formatting and paragraph structure. Return only the translation with no commentary."
)
DEFAULT_TRANSLATE_USER_PROMPT = (
    "{{ .ContextualInformation }}"
    "Translate the following text into {{ .LanguageTarget }}:\n\n{{ .TextToInject }}"
)
DEFAULT_TRANSFORM_USER_PROMPT = (
    "Fix grammar, spelling and punctuation in the following text without changing "
    "its meaning. Return only the corrected text.\n\n{{ .TextToInject }}"
)


@dataclass(frozen=True, slots=True)
class PromptSet:
    """Prompt slots for one job.

    Attributes:
        system: System instruction.
        prepend: User prompt placed before (or around) the chunk text.
        prefill: Assistant prefill the model continues from.
    """

    system: PromptSetting = field(default_factory=lambda: PromptSetting(role="system"))
    prepend: PromptSetting = field(default_factory=lambda: PromptSetting(role="user"))
    prefill: PromptSetting = field(default_factory=lambda: PromptSetting(role="assistant"))

    @property
    def has_any(self) -> bool:
        return any(
            setting.active_text is not None for setting in (self.system, self.prepend)
        )

    def as_json(self) -> dict[str, object]:
        return {
            "systemPrompt": self.system.as_json(),
            "prependPrompt": self.prepend.as_json(),
            "prefill": self.prefill.as_json(),
        }

    @classmethod
    def defaults_for(cls, mode: TaskMode) -> PromptSet:
        """Return the built-in prompts for a task mode."""

        if mode is TaskMode.TRANSLATE:
            return cls(
                system=PromptSetting(True, DEFAULT_TRANSLATE_SYSTEM_PROMPT, "system"),
                prepend=PromptSetting(True, DEFAULT_TRANSLATE_USER_PROMPT, "user"),
            )
        return cls(prepend=PromptSetting(True, DEFAULT_TRANSFORM_USER_PROMPT, "user"))


def render_template(template: str, variables: Mapping[str, str]) -> str:
    """Replace known `{{ .Name }}` placeholders; unknown ones are left untouched."""

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in variables:
            return variables[name]
        return match.group(0)

    return _PLACEHOLDER.sub(_substitute, template)


def has_placeholder(template: str, name: str) -> bool:
    return any(match.group(1) == name for match in _PLACEHOLDER.finditer(template))


class PromptComposer:
    """Build the message list sent for one chunk."""

    def __init__(
        self,
        prompts: PromptSet,
        *,
        mode: TaskMode = TaskMode.TRANSFORM,
        source_language: str = "",
        target_language: str = "",
        context_info: str | None = None,
        images: Sequence[str] = (),
    ) -> None:
        self.prompts = prompts
        self.mode = mode
        self.images = tuple(images)
        context_block = ""
        if context_info and context_info.strip():
            context_block = f"Context:\n{context_info.strip()}\n\n"
        self._variables = {
            "LanguageSource": source_language,
            "LanguageTarget": target_language,
            "ContextualInformation": context_block,
        }

    def user_text(self, chunk_text: str) -> str:
        """Return the user message text with the chunk injected."""

        template = self.prompts.prepend.active_text
        if template is None:
            return chunk_text
        variables = {**self._variables, _TEXT_PLACEHOLDER: chunk_text}
        if has_placeholder(template, _TEXT_PLACEHOLDER):
            return render_template(template, variables)
        return f"{render_template(template, variables)}\n\n{chunk_text}"

    def compose(
        self, chunk_text: str, history: Sequence[ChatMessage] = ()
    ) -> list[ChatMessage]:
        """Return system, history, user and prefill messages for one chunk."""

        messages: list[ChatMessage] = []
        system_text = self.prompts.system.active_text
        if system_text is not None:
            messages.append(
                ChatMessage(
                    role=self.prompts.system.role or "system",
                    text=render_template(system_text, self._variables).strip(),
                )
            )
        messages.extend(history)
        messages.append(
            ChatMessage(
                role=self.prompts.prepend.role or "user",
                text=self.user_text(chunk_text),
                images=self.images,
            )
        )
        prefill_text = self.prompts.prefill.active_text
        if prefill_text is not None:
            messages.append(ChatMessage(role="assistant", text=prefill_text))
        return messages
