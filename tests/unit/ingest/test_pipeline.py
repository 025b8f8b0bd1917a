"""Tests for IngestionPipeline routing and persistence."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from quarry.db.models import DataFrameHandle
from quarry.errors import NotFoundError, UpstreamUnavailable
from quarry.ingest.pipeline import IngestionPipeline
from quarry.storage import ObjectStore


@pytest.fixture
def store(tmp_path):
    return ObjectStore(tmp_path / "objects", secret="k")


@pytest.fixture
def llm():
    client = MagicMock()
    client.embed_many.side_effect = lambda texts: [[1.0, 0.0, float(i)] for i, _ in enumerate(texts)]
    return client


@pytest.fixture
def tabular():
    client = MagicMock()
    client.load.side_effect = lambda document_id, data, file_type: DataFrameHandle(
        document_id=document_id, row_count=2, columns=["Region", "Total"]
    )
    return client


@pytest.fixture
def provider():
    client = MagicMock()
    client.upload_file.return_value = "file-abc"
    return client


@pytest.fixture
def pipeline(repo, store, llm, tabular, provider):
    return IngestionPipeline(repo, store, llm, tabular, provider, chunk_size=100, overlap=20)


@pytest.fixture
def stored(repo, store, add_project, add_document):
    """Factory: register a document and put its bytes in the store."""
    add_project("p1")

    def _stored(filename: str, data: bytes, document_id: str = "d1"):
        doc = add_document(document_id, filename=filename)
        store.put(doc.storage_path, data)
        return doc

    return _stored


def test_text_file_is_chunked_embedded_and_registered(pipeline, repo, stored, llm, tabular):
    doc = stored("notes.txt", b"word " * 100)

    result = pipeline.ingest(doc.id, doc.storage_path)

    assert result.success
    assert result.route == "unstructured"
    assert result.char_count == len(("word " * 100).strip())
    assert result.chunk_count == repo.count_chunks(doc.id) > 1
    assert result.provider_file_id == "file-abc"
    assert repo.get_document(doc.id).provider_file_id == "file-abc"
    assert repo.get_document_text(doc.id).startswith("word word")
    assert repo.list_chunks(doc.id)[0].embedding == [1.0, 0.0, 0.0]
    tabular.load.assert_not_called()


def test_reingest_replaces_chunks(pipeline, repo, store, stored):
    doc = stored("notes.txt", b"word " * 100)
    pipeline.ingest(doc.id, doc.storage_path)
    store.put(doc.storage_path, b"short now")

    result = pipeline.ingest(doc.id, doc.storage_path)

    assert result.chunk_count == 1
    assert [c.content for c in repo.list_chunks(doc.id)] == ["short now"]
    assert repo.get_document_text(doc.id) == "short now"


def test_csv_goes_to_tabular_service(pipeline, repo, stored, tabular, llm):
    doc = stored("sales.csv", b"Region,Total\nAtlanta,10\n")

    result = pipeline.ingest(doc.id, doc.storage_path)

    assert result.route == "structured"
    assert result.row_count == 2
    assert result.columns == ["Region", "Total"]
    assert repo.get_dataframe_handle(doc.id).columns == ["Region", "Total"]
    tabular.load.assert_called_once_with(doc.id, b"Region,Total\nAtlanta,10\n", "csv")
    llm.embed_many.assert_not_called()


def test_csv_load_failure_falls_back_to_text(pipeline, repo, stored, tabular, caplog):
    tabular.load.side_effect = UpstreamUnavailable("tabular service", "down")
    doc = stored("sales.csv", b"Region,Total\nAtlanta,10\n")

    result = pipeline.ingest(doc.id, doc.storage_path)

    assert result.success
    assert result.route == "unstructured"
    assert result.chunk_count == 1
    assert repo.get_dataframe_handle(doc.id) is None
    assert "Dataframe load failed" in caplog.text


def test_xlsx_load_failure_indexes_nothing(pipeline, repo, stored, tabular, llm):
    tabular.load.side_effect = UpstreamUnavailable("tabular service", "down")
    doc = stored("book.xlsx", b"PK\x03\x04binary")

    result = pipeline.ingest(doc.id, doc.storage_path)

    assert result.route == "unstructured"
    assert result.chunk_count == 0
    llm.embed_many.assert_not_called()


def test_provider_upload_failure_leaves_file_pending(pipeline, repo, stored, provider, caplog):
    provider.upload_file.side_effect = UpstreamUnavailable("LLM provider", "503")
    doc = stored("notes.txt", b"hello")

    result = pipeline.ingest(doc.id, doc.storage_path)

    assert result.success
    assert result.provider_file_id is None
    assert repo.get_document(doc.id).provider_file_id is None
    assert "Provider upload failed" in caplog.text


def test_unknown_document_raises(pipeline):
    with pytest.raises(NotFoundError):
        pipeline.ingest("missing", "alice/p1/missing/x.txt")


def test_reload_dataframe_reads_stored_bytes(pipeline, stored, tabular):
    doc = stored("sales.csv", b"a,b\n1,2\n")

    handle = pipeline.reload_dataframe(doc)

    assert handle.row_count == 2
    tabular.load.assert_called_once_with(doc.id, b"a,b\n1,2\n", "csv")


def test_embedding_failure_keeps_previous_index(pipeline, repo, store, stored, llm):
    doc = stored("notes.txt", b"first version")
    pipeline.ingest(doc.id, doc.storage_path)
    store.put(doc.storage_path, b"second version")
    llm.embed_many.side_effect = UpstreamUnavailable("embedding provider", "timeout")

    with pytest.raises(UpstreamUnavailable):
        pipeline.ingest(doc.id, doc.storage_path)

    assert repo.get_document_text(doc.id) == "first version"
    assert [c.content for c in repo.list_chunks(doc.id)] == ["first version"]


def test_tabular_load_after_failed_one_drops_text_index(pipeline, repo, stored, tabular):
    handle_for = tabular.load.side_effect
    tabular.load.side_effect = UpstreamUnavailable("tabular service", "down")
    doc = stored("sales.csv", b"Region,Total\nAtlanta,10\n")
    pipeline.ingest(doc.id, doc.storage_path)
    assert repo.count_chunks(doc.id) == 1

    tabular.load.side_effect = handle_for
    result = pipeline.ingest(doc.id, doc.storage_path)

    assert result.route == "structured"
    assert result.chunk_count == 0
    assert repo.count_chunks(doc.id) == 0
    assert repo.get_document_text(doc.id) is None
    assert repo.get_dataframe_handle(doc.id) is not None
