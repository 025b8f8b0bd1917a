"""Tests for the Repository pattern."""

from __future__ import annotations

import time

import pytest

from quarry.db.models import DataFrameHandle, DocumentChunk
from quarry.db.vectors import decode, encode


def _chunks(document_id: str, vectors: list[list[float]]) -> list[DocumentChunk]:
    return [
        DocumentChunk(document_id=document_id, chunk_index=i, content=f"chunk {i}", embedding=v)
        for i, v in enumerate(vectors)
    ]


# ------------------------------------------------------------------
# Vectors
# ------------------------------------------------------------------


def test_encode_decode_preserves_values():
    assert decode(encode([0.5, -1.0, 2.0])) == [0.5, -1.0, 2.0]


def test_encode_rejects_empty():
    with pytest.raises(ValueError):
        encode([])


# ------------------------------------------------------------------
# Projects
# ------------------------------------------------------------------


def test_get_project_filters_on_owner(repo, add_project):
    add_project("p1", user_id="alice")
    assert repo.get_project("p1", "alice") is not None
    assert repo.get_project("p1", "bob") is None
    assert repo.get_project("p1") is not None


def test_get_or_create_project_reuses_by_name(repo):
    first = repo.get_or_create_project("Sales", "alice")
    again = repo.get_or_create_project("Sales", "alice")
    other_user = repo.get_or_create_project("Sales", "bob")

    assert first.id == again.id
    assert other_user.id != first.id
    assert [p.name for p in repo.list_projects("alice")] == ["Sales"]


def test_claim_thread_id_first_writer_wins(repo, add_project):
    add_project("p1")

    assert repo.claim_thread_id("p1", "thread_a") == "thread_a"
    assert repo.claim_thread_id("p1", "thread_b") == "thread_a"
    assert repo.get_project("p1").thread_id == "thread_a"


def test_project_stats_counts_documents_and_chunks(repo, add_project, add_document):
    add_project("p1")
    add_document("d1")
    add_document("d2", filename="b.txt")
    repo.replace_chunks("d1", _chunks("d1", [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]))

    stats = repo.project_stats("p1", "alice")

    assert stats.document_count == 2
    assert stats.chunk_count == 2
    assert repo.project_stats("p1", "bob") is None


# ------------------------------------------------------------------
# Documents, text, chunks
# ------------------------------------------------------------------


def test_get_document_filters_on_owner(repo, add_project, add_document):
    add_project("p1")
    add_document("d1")
    assert repo.get_document("d1", "alice").filename == "report.txt"
    assert repo.get_document("d1", "mallory") is None


def test_set_provider_file_id(repo, add_project, add_document):
    add_project("p1")
    add_document("d1")
    repo.set_provider_file_id("d1", "file-123")
    assert repo.get_document("d1").provider_file_id == "file-123"


def test_document_text_upsert(repo, add_project, add_document):
    add_project("p1")
    add_document("d1")
    repo.set_document_text("d1", "first")
    repo.set_document_text("d1", "second")
    assert repo.get_document_text("d1") == "second"


def test_replace_chunks_replaces_previous_set(repo, add_project, add_document):
    add_project("p1")
    add_document("d1")
    repo.replace_chunks("d1", _chunks("d1", [[1.0, 0.0, 0.0]] * 3))
    ids = repo.replace_chunks("d1", _chunks("d1", [[0.0, 1.0, 0.0]]))

    stored = repo.list_chunks("d1")
    assert len(ids) == 1
    assert [c.id for c in stored] == ids
    assert stored[0].embedding == [0.0, 1.0, 0.0]
    assert repo.count_chunks("d1") == 1


def test_replace_text_index_rolls_back_together(repo, add_project, add_document):
    add_project("p1")
    add_document("d1")
    repo.replace_text_index("d1", "old text", _chunks("d1", [[1.0, 0.0, 0.0]]))
    broken = _chunks("d1", [[0.0, 1.0, 0.0], []])

    with pytest.raises(ValueError):
        repo.replace_text_index("d1", "new text", broken)

    assert repo.get_document_text("d1") == "old text"
    assert [c.embedding for c in repo.list_chunks("d1")] == [[1.0, 0.0, 0.0]]


def test_clear_text_index(repo, add_project, add_document):
    add_project("p1")
    add_document("d1")
    repo.replace_text_index("d1", "text", _chunks("d1", [[1.0, 0.0, 0.0]]))

    repo.clear_text_index("d1")

    assert repo.get_document_text("d1") is None
    assert repo.count_chunks("d1") == 0


def test_delete_document_cascades(repo, add_project, add_document):
    add_project("p1")
    add_document("d1")
    repo.set_document_text("d1", "text")
    repo.replace_chunks("d1", _chunks("d1", [[1.0, 0.0, 0.0]]))
    repo.upsert_dataframe_handle(DataFrameHandle(document_id="d1", row_count=1, columns=["a"]))

    repo.delete_document("d1")

    assert repo.count_chunks("d1") == 0
    assert repo.get_document_text("d1") is None
    assert repo.get_dataframe_handle("d1") is None


# ------------------------------------------------------------------
# Vector search
# ------------------------------------------------------------------


@pytest.fixture
def seeded(repo, add_project, add_document):
    add_project("p1", user_id="alice")
    add_project("p2", user_id="bob", name="Other")
    add_document("d1", project_id="p1", user_id="alice", filename="a.txt")
    add_document("d2", project_id="p2", user_id="bob", filename="b.txt")
    repo.replace_chunks(
        "d1",
        _chunks("d1", [[1.0, 0.0, 0.0], [1.0, 1.0, 0.0], [0.0, 1.0, 0.0], [-1.0, 0.0, 0.0]]),
    )
    repo.replace_chunks("d2", _chunks("d2", [[1.0, 0.0, 0.0]]))
    return repo


def test_search_only_returns_callers_chunks(seeded):
    rows = seeded.search_chunks([1.0, 0.0, 0.0], "alice", threshold=-2.0, limit=10)
    assert {r["document_id"] for r in rows} == {"d1"}


def test_search_orders_by_similarity_and_applies_threshold(seeded):
    rows = seeded.search_chunks([1.0, 0.0, 0.0], "alice", threshold=0.1, limit=10)

    assert [r["chunk_index"] for r in rows] == [0, 1]
    assert rows[0]["similarity"] == pytest.approx(1.0, abs=1e-5)
    assert rows[1]["similarity"] == pytest.approx(0.7071, abs=1e-3)
    assert rows[0]["filename"] == "a.txt"


def test_search_respects_limit(seeded):
    rows = seeded.search_chunks([1.0, 0.0, 0.0], "alice", threshold=-2.0, limit=2)
    assert len(rows) == 2


def test_search_scopes_to_project(seeded):
    assert seeded.search_chunks([1.0, 0.0, 0.0], "bob", threshold=0.1, limit=5, project_id="p1") == []
    assert len(seeded.search_chunks([1.0, 0.0, 0.0], "bob", threshold=0.1, limit=5, project_id="p2")) == 1


# ------------------------------------------------------------------
# Dataframe handles
# ------------------------------------------------------------------


def test_dataframe_handle_round_trip(repo, add_project, add_document):
    add_project("p1")
    add_document("d1", filename="sales.csv")
    handle = DataFrameHandle(
        document_id="d1",
        row_count=3,
        columns=["Region", "Total"],
        schema_stats={"Total": {"dtype": "float64", "null_count": 0}},
        sample_rows=[{"Region": "Atlanta", "Total": 10.5}],
    )
    repo.upsert_dataframe_handle(handle)
    handle.row_count = 4
    repo.upsert_dataframe_handle(handle)

    stored = repo.get_dataframe_handle("d1")
    assert stored.row_count == 4
    assert stored.columns == ["Region", "Total"]
    assert stored.schema_stats["Total"]["dtype"] == "float64"
    assert stored.sample_rows == [{"Region": "Atlanta", "Total": 10.5}]


# ------------------------------------------------------------------
# Conversations
# ------------------------------------------------------------------


def test_messages_keep_append_order(repo, add_project):
    add_project("p1")
    conv = repo.create_conversation("p1", "alice")
    repo.add_message(conv.id, "user", "q1")
    repo.add_message(conv.id, "assistant", "a1")
    repo.add_message(conv.id, "user", "q2")

    assert [m.content for m in repo.list_messages(conv.id)] == ["q1", "a1", "q2"]


def test_latest_conversation_is_most_recently_active(repo, add_project):
    add_project("p1")
    older = repo.create_conversation("p1", "alice")
    repo.create_conversation("p1", "alice")
    time.sleep(0.01)
    repo.add_message(older.id, "user", "bump")

    assert repo.latest_conversation("p1", "alice").id == older.id


def test_latest_conversation_separates_document_scope(repo, add_project, add_document):
    add_project("p1")
    add_document("d1")
    project_conv = repo.create_conversation("p1", "alice")
    doc_conv = repo.create_conversation("p1", "alice", document_id="d1")

    assert repo.latest_conversation("p1", "alice").id == project_conv.id
    assert repo.latest_conversation("p1", "alice", "d1").id == doc_conv.id
    assert repo.latest_conversation("p1", "bob") is None


def test_get_conversation_filters_on_owner(repo, add_project):
    add_project("p1")
    conv = repo.create_conversation("p1", "alice")
    assert repo.get_conversation(conv.id, "alice") is not None
    assert repo.get_conversation(conv.id, "bob") is None


# ------------------------------------------------------------------
# Thread attachments
# ------------------------------------------------------------------


def test_mark_attached_is_idempotent(repo):
    repo.mark_attached("t1", ["f1", "f2"])
    repo.mark_attached("t1", ["f2"])
    assert repo.attached_file_ids("t1") == {"f1", "f2"}
    assert repo.attached_file_ids("t2") == set()
