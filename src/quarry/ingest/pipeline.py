"""Ingestion pipeline: classify, extract, chunk, embed, load, register.

Dispatch by file type:
  csv / xlsx / xls → tabular service load; schema/stats stored as the
                     document's dataframe handle
  pdf              → PdfChunker (pypdf, raw-decode fallback)
  anything else    → PlainTextChunker

Every file is also uploaded to the provider file store so the thread path
can attach it natively.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from quarry.db.models import DataFrameHandle, Document
from quarry.db.repository import Repository
from quarry.errors import NotFoundError, UpstreamUnavailable
from quarry.ingest.base import BaseChunker, clean_text
from quarry.ingest.pdf import PdfChunker
from quarry.ingest.plaintext import PlainTextChunker
from quarry.rag.llm_client import LLMClient
from quarry.rag.provider import ProviderClient
from quarry.storage import ObjectStore
from quarry.tabular.client import TabularClient

logger = logging.getLogger(__name__)

# Spreadsheet containers with no useful raw-text decoding.
_BINARY_SHEETS = frozenset({"xlsx", "xls"})


@dataclass
class IngestResult:
    """Outcome of ingesting one document.

    Attributes:
        route: ``"structured"`` when a dataframe handle was stored,
            ``"unstructured"`` otherwise.
    """

    success: bool
    document_id: str
    route: str
    chunk_count: int = 0
    char_count: int = 0
    row_count: int = 0
    columns: list[str] = field(default_factory=list)
    provider_file_id: str | None = None


class IngestionPipeline:
    """Turn a stored upload into chunks, a dataframe handle, and a provider file.

    Args:
        repo: Open Repository.
        store: Object store holding the raw upload.
        llm: Embedding client.
        tabular: Tabular execution service client.
        provider: Provider file store client.
        chunk_size: Window size in characters.
        overlap: Window overlap in characters.
    """

    def __init__(
        self,
        repo: Repository,
        store: ObjectStore,
        llm: LLMClient,
        tabular: TabularClient,
        provider: ProviderClient,
        *,
        chunk_size: int = 1_000,
        overlap: int = 200,
    ) -> None:
        self._repo = repo
        self._store = store
        self._llm = llm
        self._tabular = tabular
        self._provider = provider
        self._chunk_size = chunk_size
        self._overlap = overlap

    def ingest(self, document_id: str, storage_path: str) -> IngestResult:
        """Ingest the bytes at *storage_path* as *document_id*.

        Re-ingesting a document replaces its chunks, text and handle.

        Raises:
            NotFoundError: Unknown document or missing stored object.
            UpstreamUnavailable: Embedding failed for an unstructured file.
        """
        document = self._repo.get_document(document_id)
        if document is None:
            raise NotFoundError(f"Document '{document_id}' does not exist")

        data = self._store.download(storage_path)
        logger.info("Ingesting %s (%s, %d bytes)", document.filename, document.file_type, len(data))

        result = IngestResult(success=True, document_id=document_id, route="unstructured")

        handle = None
        if document.is_tabular:
            handle = self._load_dataframe(document, data)
        if handle is not None:
            self._repo.clear_text_index(document_id)
            result.route = "structured"
            result.row_count = handle.row_count
            result.columns = list(handle.columns)
        elif document.file_type not in _BINARY_SHEETS:
            result.char_count, result.chunk_count = self._index_text(document, data)

        result.provider_file_id = self._register_with_provider(document, data)
        return result

    def reload_dataframe(self, document: Document) -> DataFrameHandle | None:
        """Repopulate the service-side dataframe from the stored upload."""
        data = self._store.download(document.storage_path)
        return self._load_dataframe(document, data)

    # ------------------------------------------------------------------
    # Structured path
    # ------------------------------------------------------------------

    def _load_dataframe(self, document: Document, data: bytes) -> DataFrameHandle | None:
        try:
            handle = self._tabular.load(document.id, data, document.file_type)
        except UpstreamUnavailable as exc:
            logger.warning(
                "Dataframe load failed for %s; queries will use unstructured handling: %s",
                document.filename,
                exc,
            )
            self._repo.delete_dataframe_handle(document.id)
            return None
        self._repo.upsert_dataframe_handle(handle)
        logger.info(
            "Loaded dataframe for %s: %d rows, %d columns",
            document.filename,
            handle.row_count,
            len(handle.columns),
        )
        return handle

    # ------------------------------------------------------------------
    # Unstructured path
    # ------------------------------------------------------------------

    def _chunker_for(self, file_type: str) -> BaseChunker:
        if file_type == "pdf":
            return PdfChunker(chunk_size=self._chunk_size, overlap=self._overlap)
        return PlainTextChunker(chunk_size=self._chunk_size, overlap=self._overlap)

    def _index_text(self, document: Document, data: bytes) -> tuple[int, int]:
        """Extract, clean, chunk and embed. Returns (char_count, chunk_count)."""
        chunker = self._chunker_for(document.file_type)
        text = clean_text(chunker.extract_text(data))

        chunks = chunker.chunk(document.id, text)
        if chunks:
            vectors = self._llm.embed_many([c.content for c in chunks])
            for chunk, vector in zip(chunks, vectors):
                chunk.embedding = vector
        # Previous text and chunks stay in place until embedding succeeds.
        self._repo.replace_text_index(document.id, text, chunks)
        logger.info("Indexed %s: %d chars, %d chunks", document.filename, len(text), len(chunks))
        return len(text), len(chunks)

    # ------------------------------------------------------------------
    # Provider registration
    # ------------------------------------------------------------------

    def _register_with_provider(self, document: Document, data: bytes) -> str | None:
        try:
            file_id = self._provider.upload_file(document.filename, data)
        except UpstreamUnavailable as exc:
            logger.warning("Provider upload failed for %s: %s", document.filename, exc)
            return document.provider_file_id
        self._repo.set_provider_file_id(document.id, file_id)
        return file_id
