"""Boundary-aware source segmentation.

Responsibilities:
- Split normalized text into ordered, bounded `ChunkJob` records.
- Prefer paragraph boundaries, then sentence boundaries, then word boundaries.
- Never split inside a word; an oversized single word becomes its own chunk.
"""

from __future__ import annotations

import re

from ..errors import ConfigurationError
from ..models.datatypes import ChunkJob
from .normalizer import TextNormalizer

Span = tuple[int, int]


class Segmenter:
    """Create sentence-complete chunks from normalized source text."""

    _PARAGRAPH_BREAK = re.compile(r"\n[^\S\n]*\n\s*")
    _WORD = re.compile(r"\S+")
    _SENTENCE_TERMINATORS = ".!?"
    _TRAILING_SENTENCE_CLOSERS = "\"')]}»”’"
    _COMMON_ABBREVIATIONS = frozenset(
        {
            "mr.",
            "mrs.",
            "ms.",
            "dr.",
            "prof.",
            "sr.",
            "jr.",
            "st.",
            "etc.",
            "e.g.",
            "i.e.",
            "vs.",
            "no.",
            "fig.",
            "al.",
        }
    )
    _ACRONYM_PATTERN = re.compile(r"(?:[A-Za-z]\.){2,}$")

    def __init__(self, normalizer: TextNormalizer | None = None) -> None:
        self._normalizer = normalizer or TextNormalizer()

    def segment(self, text: str, max_chunk_size: int) -> list[ChunkJob]:
        """Split text into chunk jobs.

        Args:
            text: Raw or already-normalized source text.
            max_chunk_size: Maximum chunk length in characters.

        Returns:
            Chunk jobs with contiguous indices in source order. Empty when the
            source holds only whitespace.

        Raises:
            ConfigurationError: If `max_chunk_size` is not positive.
        """

        if max_chunk_size <= 0:
            raise ConfigurationError(
                stage="segment",
                detail=f"Chunk size must be a positive integer, got {max_chunk_size}.",
            )

        normalized = self._normalizer.normalize(text)
        atoms: list[Span] = []
        for paragraph in self._paragraph_spans(normalized):
            atoms.extend(self._split_to_fit(normalized, paragraph, max_chunk_size))

        jobs: list[ChunkJob] = []
        for start, end in self._pack(atoms, max_chunk_size):
            chunk_text = normalized[start:end].strip()
            if chunk_text:
                jobs.append(ChunkJob(index=len(jobs), text=chunk_text))
        return jobs

    def _split_to_fit(self, text: str, span: Span, max_chunk_size: int) -> list[Span]:
        """Break a paragraph span into sentence or word spans until each fits."""

        start, end = span
        if end - start <= max_chunk_size:
            return [span]

        pieces: list[Span] = []
        for sentence in self._sentence_spans(text, start, end):
            if sentence[1] - sentence[0] <= max_chunk_size:
                pieces.append(sentence)
                continue
            pieces.extend(
                (match.start(), match.end())
                for match in self._WORD.finditer(text, sentence[0], sentence[1])
            )
        return pieces

    @staticmethod
    def _pack(atoms: list[Span], max_chunk_size: int) -> list[Span]:
        """Greedily merge adjacent atoms while the merged span fits."""

        packed: list[Span] = []
        current: Span | None = None
        for atom in atoms:
            if current is None:
                current = atom
                continue
            if atom[1] - current[0] <= max_chunk_size:
                current = (current[0], atom[1])
                continue
            packed.append(current)
            current = atom
        if current is not None:
            packed.append(current)
        return packed

    def _paragraph_spans(self, text: str) -> list[Span]:
        """Return trimmed spans of text separated by blank lines."""

        spans: list[Span] = []
        cursor = 0
        for match in self._PARAGRAPH_BREAK.finditer(text):
            spans.extend(self._trimmed(text, cursor, match.start()))
            cursor = match.end()
        spans.extend(self._trimmed(text, cursor, len(text)))
        return spans

    def _sentence_spans(self, text: str, start: int, end: int) -> list[Span]:
        """Return trimmed sentence spans; single line breaks also end a sentence."""

        spans: list[Span] = []
        sentence_start = start
        index = start
        while index < end:
            character = text[index]
            if character == "\n":
                spans.extend(self._trimmed(text, sentence_start, index))
                sentence_start = index + 1
            elif character in self._SENTENCE_TERMINATORS and self._is_sentence_boundary(
                text, index, end
            ):
                tail = self._consume_trailing_closers(text, index + 1, end)
                if tail >= end or text[tail].isspace():
                    spans.extend(self._trimmed(text, sentence_start, tail))
                    sentence_start = tail
                    index = tail
                    continue
            index += 1
        spans.extend(self._trimmed(text, sentence_start, end))
        return spans

    def _is_sentence_boundary(self, text: str, punctuation_index: int, end: int) -> bool:
        """Return whether punctuation at index terminates a sentence."""

        if text[punctuation_index] != ".":
            return True
        if self._is_decimal_period(text, punctuation_index, end):
            return False
        if self._is_abbreviation_period(text, punctuation_index):
            return False
        return True

    @staticmethod
    def _is_decimal_period(text: str, punctuation_index: int, end: int) -> bool:
        if punctuation_index <= 0 or punctuation_index + 1 >= end:
            return False
        return text[punctuation_index - 1].isdigit() and text[punctuation_index + 1].isdigit()

    def _is_abbreviation_period(self, text: str, punctuation_index: int) -> bool:
        """Return whether a period belongs to a likely abbreviation token."""

        start = punctuation_index
        while start > 0 and (text[start - 1].isalpha() or text[start - 1] == "."):
            start -= 1
        token = text[start : punctuation_index + 1].lower()
        if token in self._COMMON_ABBREVIATIONS:
            return True

        acronym_start = max(0, punctuation_index - 8)
        acronym_window = text[acronym_start : punctuation_index + 1]
        return bool(self._ACRONYM_PATTERN.search(acronym_window))

    def _consume_trailing_closers(self, text: str, index: int, end: int) -> int:
        adjusted = index
        while adjusted < end and text[adjusted] in self._TRAILING_SENTENCE_CLOSERS:
            adjusted += 1
        return adjusted

    @staticmethod
    def _trimmed(text: str, start: int, end: int) -> list[Span]:
        """Return `[span]` with edge whitespace removed, or `[]` when blank."""

        while start < end and text[start].isspace():
            start += 1
        while end > start and text[end - 1].isspace():
            end -= 1
        if start >= end:
            return []
        return [(start, end)]
