"""Text preprocessing and segmentation components."""

from .normalizer import TextNormalizer
from .segmenter import Segmenter

__all__ = ["Segmenter", "TextNormalizer"]
