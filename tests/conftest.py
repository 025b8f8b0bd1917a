"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from quarry.db.connection import Database
from quarry.db.models import Document, Project, file_type_for
from quarry.db.repository import Repository
from quarry.db.schema import initialize


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".quarry.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


@pytest.fixture
def add_project(repo):
    """Factory: insert a project owned by *user_id*."""

    def _add(project_id: str = "p1", user_id: str = "alice", name: str = "Sales") -> Project:
        project = Project(id=project_id, name=name, user_id=user_id)
        repo.add_project(project)
        return project

    return _add


@pytest.fixture
def add_document(repo):
    """Factory: insert a document into an existing project."""

    def _add(
        document_id: str = "d1",
        project_id: str = "p1",
        user_id: str = "alice",
        filename: str = "report.txt",
        provider_file_id: str | None = None,
    ) -> Document:
        document = Document(
            id=document_id,
            project_id=project_id,
            user_id=user_id,
            filename=filename,
            storage_path=f"{user_id}/{project_id}/{document_id}/{filename}",
            file_type=file_type_for(filename),
            provider_file_id=provider_file_id,
        )
        repo.add_document(document)
        return document

    return _add
