"""PDF chunker — page-based extraction via pypdf, raw-decode fallback."""

from __future__ import annotations

import io
import logging

import pypdf

from quarry.ingest.base import BaseChunker, decode_bytes

logger = logging.getLogger(__name__)


class PdfChunker(BaseChunker):
    """Split a PDF document into chunks using pypdf.

    Strategy:
    - Extract text page-by-page via ``pypdf.PdfReader`` over the raw bytes.
    - Pages that yield no text (scanned images, etc.) are skipped.
    - If the parser fails outright, decode the raw bytes instead so ingestion
      still produces something searchable.
    """

    def extract_text(self, data: bytes) -> str:
        try:
            return self._extract_pages(data)
        except Exception as exc:  # malformed PDFs raise far beyond PyPdfError
            logger.warning("PDF parse failed (%s); falling back to raw decoding", exc)
            return decode_bytes(data)

    @staticmethod
    def _extract_pages(data: bytes) -> str:
        reader = pypdf.PdfReader(io.BytesIO(data))
        parts: list[str] = []
        for page in reader.pages:
            page_text = page.extract_text() or ""
            stripped = page_text.strip()
            if stripped:
                parts.append(stripped)
        return "\n\n".join(parts)
