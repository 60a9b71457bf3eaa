"""Unit tests for source normalization, segmentation, and prompt composition."""

from __future__ import annotations

import pytest

from chunkrelay.errors import ConfigurationError
from chunkrelay.llm.prompts import PromptComposer, PromptSet, TaskMode, render_template
from chunkrelay.models.datatypes import PromptSetting
from chunkrelay.text.normalizer import TextNormalizer
from chunkrelay.text.segmenter import Segmenter


def test_normalizer_unifies_line_endings_and_drops_unicode_separators() -> None:
    assert TextNormalizer().normalize("a\r\nb\rc\u2028d\u2029e") == "a\nb\ncde"


def test_segmenter_keeps_short_text_in_one_chunk() -> None:
    """Text under the limit should become exactly one chunk."""

    jobs = Segmenter().segment("A. B. C.", 100)

    assert [(job.index, job.text) for job in jobs] == [(0, "A. B. C.")]


def test_segmenter_splits_on_sentences_when_limit_is_tight() -> None:
    jobs = Segmenter().segment("A. B. C.", 2)

    assert [job.text for job in jobs] == ["A.", "B.", "C."]
    assert [job.index for job in jobs] == [0, 1, 2]


def test_segmenter_prefers_paragraph_boundaries() -> None:
    """Whole paragraphs should be packed together while they fit."""

    text = "First paragraph here.\n\nSecond one.\n\nThird paragraph is the longest of all."

    jobs = Segmenter().segment(text, 40)

    assert [job.text for job in jobs] == [
        "First paragraph here.\n\nSecond one.",
        "Third paragraph is the longest of all.",
    ]


def test_segmenter_never_splits_inside_a_word() -> None:
    """An oversized single word should become its own chunk."""

    jobs = Segmenter().segment("supercalifragilistic tiny words", 10)

    assert [job.text for job in jobs] == ["supercalifragilistic", "tiny words"]


def test_segmenter_does_not_break_on_abbreviations_or_decimals() -> None:
    text = "Dr. Smith paid 3.50 dollars. Then he left."

    jobs = Segmenter().segment(text, 30)

    assert [job.text for job in jobs] == ["Dr. Smith paid 3.50 dollars.", "Then he left."]


def test_segmenter_chunks_cover_every_word_in_order() -> None:
    """Concatenated chunks should preserve the source word sequence."""

    text = (
        "Alpha beta gamma. Delta epsilon!\nZeta eta theta? Iota kappa.\n\n"
        "Lambda mu nu xi omicron pi rho sigma tau upsilon phi chi psi omega."
    )

    jobs = Segmenter().segment(text, 18)

    assert all(len(job.text) <= 18 or " " not in job.text for job in jobs)
    assert " ".join(job.text for job in jobs).split() == text.split()


def test_segmenter_returns_nothing_for_blank_source() -> None:
    assert Segmenter().segment(" \n\r\n\t ", 50) == []


def test_segmenter_rejects_non_positive_size() -> None:
    with pytest.raises(ConfigurationError):
        Segmenter().segment("text", 0)


def test_render_template_leaves_unknown_placeholders() -> None:
    rendered = render_template(
        "{{ .LanguageTarget }} / {{.Unknown}}", {"LanguageTarget": "Czech"}
    )

    assert rendered == "Czech / {{.Unknown}}"


def test_composer_builds_translate_messages_with_context_and_prefill() -> None:
    """Translate defaults should name both languages and inject context and chunk text."""

    defaults = PromptSet.defaults_for(TaskMode.TRANSLATE)
    prompts = PromptSet(
        system=defaults.system,
        prepend=defaults.prepend,
        prefill=PromptSetting(True, "Translation:", "assistant"),
    )
    composer = PromptComposer(
        prompts,
        mode=TaskMode.TRANSLATE,
        source_language="English",
        target_language="French",
        context_info="  A fantasy novel.  ",
    )

    messages = composer.compose("Hello there.")

    assert [message.role for message in messages] == ["system", "user", "assistant"]
    assert "from English into French" in messages[0].text
    assert messages[1].text.startswith("Context:\nA fantasy novel.\n\n")
    assert messages[1].text.endswith("into French:\n\nHello there.")
    assert messages[2].text == "Translation:"


def test_composer_appends_chunk_when_template_lacks_placeholder() -> None:
    composer = PromptComposer(PromptSet(prepend=PromptSetting(True, "Summarize.", "user")))

    assert composer.user_text("Body text.") == "Summarize.\n\nBody text."


def test_composer_sends_bare_chunk_with_system_prompt_only() -> None:
    composer = PromptComposer(
        PromptSet(system=PromptSetting(True, "Rewrite as a pirate.", "system")),
        images=("data:image/png;base64,AAAA",),
    )

    messages = composer.compose("Ahoy.")

    assert [(message.role, message.text) for message in messages] == [
        ("system", "Rewrite as a pirate."),
        ("user", "Ahoy."),
    ]
    assert messages[1].images == ("data:image/png;base64,AAAA",)
