"""Base chunker interface for unstructured document types."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod

from quarry.db.models import DocumentChunk

_WHITESPACE_RE = re.compile(r"\s+")


def clean_text(text: str) -> str:
    """Collapse every whitespace run to a single space and strip the ends."""
    return _WHITESPACE_RE.sub(" ", text.replace("\x00", " ")).strip()


def decode_bytes(data: bytes) -> str:
    """Best-effort UTF-8 decode; undecodable bytes become U+FFFD."""
    return data.decode("utf-8", errors="replace")


class BaseChunker(ABC):
    """Abstract base for all unstructured chunkers.

    Subclasses implement ``extract_text()``; the sliding window and chunk
    construction are shared. Sizes are in characters.
    """

    def __init__(self, chunk_size: int = 1_000, overlap: int = 200) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0 <= overlap < chunk_size:
            raise ValueError("overlap must be in [0, chunk_size)")
        self.chunk_size = chunk_size
        self.overlap = overlap

    @abstractmethod
    def extract_text(self, data: bytes) -> str:
        """Return the raw (uncleaned) text of *data*. Must not raise on bad input."""

    def chunk(self, document_id: str, text: str) -> list[DocumentChunk]:
        """Split cleaned *text* into sequentially indexed, unembedded chunks."""
        return [
            DocumentChunk(document_id=document_id, chunk_index=i, content=segment)
            for i, segment in enumerate(self._split_fixed_window(text))
        ]

    def _split_fixed_window(self, text: str) -> list[str]:
        """Split *text* into ``chunk_size`` windows advancing by ``chunk_size - overlap``.

        The last window ends at the end of the text; empty windows are omitted.
        """
        if not text.strip():
            return []

        step = self.chunk_size - self.overlap
        segments: list[str] = []
        pos = 0
        length = len(text)

        while pos < length:
            end = min(pos + self.chunk_size, length)
            segment = text[pos:end].strip()
            if segment:
                segments.append(segment)
            if end >= length:
                break
            pos += step

        return segments
