"""Domain models for the Quarry database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

TABULAR_TYPES: frozenset[str] = frozenset({"csv", "xlsx", "xls"})


def file_type_for(filename: str) -> str:
    """Lower-cased extension without the dot ("report.PDF" -> "pdf"); "txt" if none."""
    suffix = PurePosixPath(filename).suffix.lower().lstrip(".")
    return suffix or "txt"


@dataclass
class Project:
    id: str
    name: str
    user_id: str
    thread_id: str | None = None  # set once on first thread use, never reassigned
    created_at: str | None = None


@dataclass
class Document:
    id: str
    project_id: str
    user_id: str
    filename: str
    storage_path: str
    file_type: str
    provider_file_id: str | None = None
    created_at: str | None = None

    @property
    def is_tabular(self) -> bool:
        return self.file_type in TABULAR_TYPES


@dataclass
class DocumentChunk:
    document_id: str
    chunk_index: int
    content: str
    embedding: list[float] = field(default_factory=list)
    id: int | None = None  # set after insert; None for unsaved chunks
    created_at: str | None = None


@dataclass
class DataFrameHandle:
    """Local record of a dataset held by the tabular execution service.

    ``schema_stats`` maps column name → {"dtype", "null_count",
    "unique_count", "sample_values"}.
    """

    document_id: str
    row_count: int
    columns: list[str]
    schema_stats: dict[str, dict[str, Any]] = field(default_factory=dict)
    sample_rows: list[dict[str, Any]] = field(default_factory=list)
    loaded_at: str | None = None

    def to_row(self) -> tuple:
        return (
            self.document_id,
            self.row_count,
            json.dumps(self.columns),
            json.dumps(self.schema_stats, default=str),
            json.dumps(self.sample_rows, default=str),
        )


@dataclass
class Conversation:
    id: str
    project_id: str
    user_id: str
    document_id: str | None = None
    created_at: str | None = None


@dataclass
class ChatMessage:
    conversation_id: str
    role: str  # user | assistant
    content: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class ProjectStats:
    project_id: str
    project_name: str
    document_count: int
    chunk_count: int
    last_document_added: str | None = None
