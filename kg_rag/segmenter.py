"""
Sentence segmentation for document ingestion.

Raw text is split on runs of sentence-terminating punctuation.  Segments that
are too short to carry a concept on their own are discarded.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from .config import IngestConfig


@dataclass
class Segment:
    """One retained sentence-like segment of a document."""

    index: int
    text: str
    title: str


class SentenceSegmenter:
    _TERMINATORS = re.compile(r"[.!?]+")

    def __init__(self, config: Optional[IngestConfig] = None):
        self._config = config or IngestConfig()

    def split(self, text: str) -> List[Segment]:
        """
        Split text into segments.

        Args:
            text: Raw document text.

        Returns:
            Segments in document order, each at least
            ``min_segment_length`` characters after stripping.
        """
        segments: List[Segment] = []
        for raw in self._TERMINATORS.split(text or ""):
            sentence = raw.strip()
            if len(sentence) < self._config.min_segment_length:
                continue
            segments.append(
                Segment(index=len(segments), text=sentence, title=self.make_title(sentence))
            )
        return segments

    def make_title(self, sentence: str) -> str:
        limit = self._config.title_length
        if len(sentence) <= limit:
            return sentence
        return sentence[:limit] + "..."
