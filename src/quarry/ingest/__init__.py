"""Quarry ingest pipeline — chunkers and the ingestion orchestrator."""

from quarry.ingest.base import BaseChunker, clean_text
from quarry.ingest.pdf import PdfChunker
from quarry.ingest.pipeline import IngestionPipeline, IngestResult
from quarry.ingest.plaintext import PlainTextChunker

__all__ = [
    "BaseChunker",
    "IngestResult",
    "IngestionPipeline",
    "PdfChunker",
    "PlainTextChunker",
    "clean_text",
]
