"""Source text normalization.

Responsibilities:
- Apply canonical newline handling before hashing and segmentation.
- Keep normalization deterministic so resumed runs see identical chunk boundaries.
"""

from __future__ import annotations


_INVISIBLE_SEPARATORS = {0x2028: None, 0x2029: None}


class TextNormalizer:
    """Normalize raw text into the canonical internal representation."""

    def normalize(self, text: str) -> str:
        """Convert CRLF/CR line endings to LF and drop Unicode line/paragraph separators."""

        unified = text.replace("\r\n", "\n").replace("\r", "\n")
        return unified.translate(_INVISIBLE_SEPARATORS)
