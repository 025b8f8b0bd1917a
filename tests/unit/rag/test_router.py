"""Tests for the deterministic retrieval router."""

from __future__ import annotations

import logging

import pytest

from quarry.db.models import DataFrameHandle
from quarry.rag.router import RetrievalRouter, Strategy


@pytest.fixture
def router(repo, add_project):
    add_project("p1")
    return RetrievalRouter(repo)


def test_dataframe_handle_routes_structured(router, repo, add_document):
    doc = add_document("d1", filename="sales.csv")
    repo.upsert_dataframe_handle(
        DataFrameHandle(document_id="d1", row_count=2, columns=["A"], sample_rows=[{"A": 1}])
    )
    repo.set_document_text("d1", "A 1")

    decision = router.route(doc)

    assert decision.strategy is Strategy.STRUCTURED
    assert decision.handle.columns == ["A"]


def test_short_text_routes_full_text(router, repo, add_document):
    doc = add_document("d1")
    repo.set_document_text("d1", "The contract renews on 1 March.")

    decision = router.route(doc)

    assert decision.strategy is Strategy.FULL_TEXT
    assert decision.full_text == "The contract renews on 1 March."
    assert decision.context_chars == len(decision.full_text)


def test_text_at_ceiling_routes_vector(repo, add_project, add_document):
    add_project("p1")
    doc = add_document("d1")
    repo.set_document_text("d1", "x" * 50)

    decision = RetrievalRouter(repo, full_text_ceiling=50).route(doc)

    assert decision.strategy is Strategy.VECTOR
    assert decision.document_id == "d1"


def test_no_text_routes_vector(router, add_document):
    assert router.route(add_document("d1")).strategy is Strategy.VECTOR


def test_project_scope_routes_vector(router):
    decision = router.route(None)
    assert decision.strategy is Strategy.VECTOR
    assert decision.document_id is None


def test_decision_logged_at_debug(router, repo, add_document, caplog):
    doc = add_document("d1")
    repo.set_document_text("d1", "short")
    with caplog.at_level(logging.DEBUG, logger="quarry"):
        router.route(doc)
    assert "full_text" in caplog.text
