"""Plain text chunker — raw decode + fixed window with overlap."""

from __future__ import annotations

from quarry.ingest.base import BaseChunker, decode_bytes


class PlainTextChunker(BaseChunker):
    """Used for .txt and every type without a dedicated parser."""

    def extract_text(self, data: bytes) -> str:
        return decode_bytes(data)
