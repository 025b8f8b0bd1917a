"""Repository pattern for all Quarry database operations.

Single interface for: projects, documents, extracted text, chunks + vector
search, dataframe handles, conversations, and thread attachments.

Every read that is reachable from a user request takes the requesting
principal's ``user_id`` and filters on it inside the SQL statement.
"""

from __future__ import annotations

import json
import sqlite3
import uuid

from quarry.db.models import (
    ChatMessage,
    Conversation,
    DataFrameHandle,
    Document,
    DocumentChunk,
    Project,
    ProjectStats,
)
from quarry.db.vectors import SIMILARITY_SQL, decode, encode


class Repository:
    """Data access layer for all Quarry database entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see quarry.db.schema.initialize).
        """
        self._conn = conn

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def add_project(self, project: Project) -> None:
        """Insert a new project record."""
        self._conn.execute(
            "INSERT INTO projects (id, name, user_id, thread_id) VALUES (?, ?, ?, ?)",
            (project.id, project.name, project.user_id, project.thread_id),
        )
        self._conn.commit()

    def get_project(self, project_id: str, user_id: str | None = None) -> Project | None:
        """Return a project by ID, or None if missing or owned by another user.

        Args:
            project_id: UUID of the project.
            user_id: Requesting principal. ``None`` skips the ownership filter
                (service-level callers only).
        """
        row = self._conn.execute(
            """
            SELECT id, name, user_id, thread_id, created_at FROM projects
            WHERE id = ? AND (? IS NULL OR user_id = ?)
            """,
            (project_id, user_id, user_id),
        ).fetchone()
        return _row_to_project(row) if row else None

    def get_or_create_project(self, name: str, user_id: str) -> Project:
        """Return the user's project called *name*, creating it if needed."""
        row = self._conn.execute(
            "SELECT id, name, user_id, thread_id, created_at FROM projects "
            "WHERE name = ? AND user_id = ? ORDER BY created_at LIMIT 1",
            (name, user_id),
        ).fetchone()
        if row:
            return _row_to_project(row)
        project = Project(id=str(uuid.uuid4()), name=name, user_id=user_id)
        self.add_project(project)
        return project

    def list_projects(self, user_id: str) -> list[Project]:
        rows = self._conn.execute(
            "SELECT id, name, user_id, thread_id, created_at FROM projects "
            "WHERE user_id = ? ORDER BY created_at",
            (user_id,),
        ).fetchall()
        return [_row_to_project(r) for r in rows]

    def claim_thread_id(self, project_id: str, thread_id: str) -> str:
        """Atomically set the project's thread id if it has none.

        The conditional UPDATE makes create-if-absent a single statement: when
        two requests race, exactly one write lands and both callers get the
        stored winner back.

        Returns:
            The thread id now stored on the project (*thread_id* if this call
            won, the previously stored id otherwise).
        """
        try:
            self._conn.execute(
                "UPDATE projects SET thread_id = ? WHERE id = ? AND thread_id IS NULL",
                (thread_id, project_id),
            )
            self._conn.commit()
        except sqlite3.IntegrityError:
            self._conn.rollback()
        row = self._conn.execute(
            "SELECT thread_id FROM projects WHERE id = ?", (project_id,)
        ).fetchone()
        return row["thread_id"] if row else thread_id

    def project_stats(self, project_id: str, user_id: str) -> ProjectStats | None:
        row = self._conn.execute(
            """
            SELECT project_id, project_name, document_count, chunk_count, last_document_added
            FROM project_stats WHERE project_id = ? AND user_id = ?
            """,
            (project_id, user_id),
        ).fetchone()
        if row is None:
            return None
        return ProjectStats(
            project_id=row["project_id"],
            project_name=row["project_name"],
            document_count=row["document_count"],
            chunk_count=row["chunk_count"],
            last_document_added=row["last_document_added"],
        )

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def add_document(self, document: Document) -> None:
        """Insert a new document record."""
        self._conn.execute(
            """
            INSERT INTO documents
                (id, project_id, user_id, filename, storage_path, file_type, provider_file_id)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                document.id,
                document.project_id,
                document.user_id,
                document.filename,
                document.storage_path,
                document.file_type,
                document.provider_file_id,
            ),
        )
        self._conn.commit()

    def get_document(self, document_id: str, user_id: str | None = None) -> Document | None:
        """Return a document by ID, or None if missing or owned by another user."""
        row = self._conn.execute(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents "
            "WHERE id = ? AND (? IS NULL OR user_id = ?)",
            (document_id, user_id, user_id),
        ).fetchone()
        return _row_to_document(row) if row else None

    def list_documents(self, project_id: str, user_id: str | None = None) -> list[Document]:
        """Return the project's documents, oldest first."""
        rows = self._conn.execute(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents "
            "WHERE project_id = ? AND (? IS NULL OR user_id = ?) ORDER BY created_at, rowid",
            (project_id, user_id, user_id),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def set_provider_file_id(self, document_id: str, provider_file_id: str) -> None:
        self._conn.execute(
            "UPDATE documents SET provider_file_id = ? WHERE id = ?",
            (provider_file_id, document_id),
        )
        self._conn.commit()

    def delete_document(self, document_id: str) -> None:
        """Delete a document; chunks, text, handle and its conversations cascade."""
        self._conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        self._conn.commit()

    # ------------------------------------------------------------------
    # Extracted text
    # ------------------------------------------------------------------

    def set_document_text(self, document_id: str, content: str) -> None:
        """Upsert the cleaned full text of *document_id*."""
        with self._conn:
            self._write_text(document_id, content)

    def _write_text(self, document_id: str, content: str) -> None:
        self._conn.execute(
            """
            INSERT INTO document_texts (document_id, content, char_count)
            VALUES (?, ?, ?)
            ON CONFLICT(document_id) DO UPDATE SET
                content = excluded.content,
                char_count = excluded.char_count
            """,
            (document_id, content, len(content)),
        )

    def get_document_text(self, document_id: str) -> str | None:
        row = self._conn.execute(
            "SELECT content FROM document_texts WHERE document_id = ?", (document_id,)
        ).fetchone()
        return row["content"] if row else None

    # ------------------------------------------------------------------
    # Chunks + vector search
    # ------------------------------------------------------------------

    def replace_chunks(self, document_id: str, chunks: list[DocumentChunk]) -> list[int]:
        """Replace every chunk of *document_id* with *chunks* in one transaction.

        Returns:
            New chunk ids, in input order.
        """
        with self._conn:
            return self._write_chunks(document_id, chunks)

    def replace_text_index(
        self, document_id: str, content: str, chunks: list[DocumentChunk]
    ) -> list[int]:
        """Store the full text and its chunks together, or neither."""
        with self._conn:
            self._write_text(document_id, content)
            return self._write_chunks(document_id, chunks)

    def clear_text_index(self, document_id: str) -> None:
        """Drop the extracted text and every chunk of *document_id*."""
        with self._conn:
            self._conn.execute(
                "DELETE FROM document_texts WHERE document_id = ?", (document_id,)
            )
            self._conn.execute(
                "DELETE FROM document_chunks WHERE document_id = ?", (document_id,)
            )

    def _write_chunks(self, document_id: str, chunks: list[DocumentChunk]) -> list[int]:
        ids: list[int] = []
        self._conn.execute("DELETE FROM document_chunks WHERE document_id = ?", (document_id,))
        for chunk in chunks:
            cur = self._conn.execute(
                """
                INSERT INTO document_chunks (document_id, chunk_index, content, embedding)
                VALUES (?, ?, ?, ?)
                """,
                (document_id, chunk.chunk_index, chunk.content, encode(chunk.embedding)),
            )
            chunk.id = cur.lastrowid
            ids.append(cur.lastrowid)
        return ids

    def list_chunks(self, document_id: str) -> list[DocumentChunk]:
        rows = self._conn.execute(
            """
            SELECT id, document_id, chunk_index, content, embedding, created_at
            FROM document_chunks WHERE document_id = ? ORDER BY chunk_index
            """,
            (document_id,),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def count_chunks(self, document_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM document_chunks WHERE document_id = ?", (document_id,)
        ).fetchone()[0]

    def search_chunks(
        self,
        embedding: list[float],
        user_id: str,
        *,
        threshold: float,
        limit: int,
        document_id: str | None = None,
        project_id: str | None = None,
    ) -> list[sqlite3.Row]:
        """Cosine-similarity search over the principal's own chunks.

        Rows carry ``id, document_id, chunk_index, content, filename,
        file_type, similarity``; similarity is strictly greater than
        *threshold*, ordered best-first, at most *limit* rows.
        """
        sql = f"""
            SELECT * FROM (
                SELECT
                    c.id, c.document_id, c.chunk_index, c.content,
                    d.filename, d.file_type,
                    {SIMILARITY_SQL} AS similarity
                FROM document_chunks c
                JOIN documents d ON d.id = c.document_id
                WHERE d.user_id = ?
                  AND (? IS NULL OR c.document_id = ?)
                  AND (? IS NULL OR d.project_id = ?)
            )
            WHERE similarity > ?
            ORDER BY similarity DESC, id ASC
            LIMIT ?
        """
        return self._conn.execute(
            sql,
            (
                encode(embedding),
                user_id,
                document_id,
                document_id,
                project_id,
                project_id,
                threshold,
                limit,
            ),
        ).fetchall()

    # ------------------------------------------------------------------
    # Dataframe handles
    # ------------------------------------------------------------------

    def upsert_dataframe_handle(self, handle: DataFrameHandle) -> None:
        self._conn.execute(
            """
            INSERT INTO dataframe_handles
                (document_id, row_count, columns, schema_stats, sample_rows)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(document_id) DO UPDATE SET
                row_count = excluded.row_count,
                columns = excluded.columns,
                schema_stats = excluded.schema_stats,
                sample_rows = excluded.sample_rows,
                loaded_at = datetime('now')
            """,
            handle.to_row(),
        )
        self._conn.commit()

    def get_dataframe_handle(self, document_id: str) -> DataFrameHandle | None:
        row = self._conn.execute(
            """
            SELECT document_id, row_count, columns, schema_stats, sample_rows, loaded_at
            FROM dataframe_handles WHERE document_id = ?
            """,
            (document_id,),
        ).fetchone()
        if row is None:
            return None
        return DataFrameHandle(
            document_id=row["document_id"],
            row_count=row["row_count"],
            columns=json.loads(row["columns"]),
            schema_stats=json.loads(row["schema_stats"]),
            sample_rows=json.loads(row["sample_rows"]),
            loaded_at=row["loaded_at"],
        )

    def delete_dataframe_handle(self, document_id: str) -> None:
        self._conn.execute(
            "DELETE FROM dataframe_handles WHERE document_id = ?", (document_id,)
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(
        self, project_id: str, user_id: str, document_id: str | None = None
    ) -> Conversation:
        conversation = Conversation(
            id=str(uuid.uuid4()),
            project_id=project_id,
            user_id=user_id,
            document_id=document_id,
        )
        self._conn.execute(
            "INSERT INTO conversations (id, project_id, document_id, user_id) VALUES (?, ?, ?, ?)",
            (conversation.id, project_id, document_id, user_id),
        )
        self._conn.commit()
        return conversation

    def get_conversation(self, conversation_id: str, user_id: str) -> Conversation | None:
        row = self._conn.execute(
            "SELECT id, project_id, document_id, user_id, created_at FROM conversations "
            "WHERE id = ? AND user_id = ?",
            (conversation_id, user_id),
        ).fetchone()
        return _row_to_conversation(row) if row else None

    def latest_conversation(
        self, project_id: str, user_id: str, document_id: str | None = None
    ) -> Conversation | None:
        """Return the most recently active conversation for the scope.

        Recency is the newest message timestamp, or the conversation's own
        creation time when it has no messages yet.
        """
        row = self._conn.execute(
            """
            SELECT c.id, c.project_id, c.document_id, c.user_id, c.created_at,
                   COALESCE(MAX(m.created_at), c.created_at) AS last_active
            FROM conversations c
            LEFT JOIN chat_messages m ON m.conversation_id = c.id
            WHERE c.project_id = ? AND c.user_id = ? AND c.document_id IS ?
            GROUP BY c.id
            ORDER BY last_active DESC, c.rowid DESC
            LIMIT 1
            """,
            (project_id, user_id, document_id),
        ).fetchone()
        return _row_to_conversation(row) if row else None

    def add_message(self, conversation_id: str, role: str, content: str) -> ChatMessage:
        """Append a message; messages are never updated or reordered."""
        cur = self._conn.execute(
            "INSERT INTO chat_messages (conversation_id, role, content) VALUES (?, ?, ?)",
            (conversation_id, role, content),
        )
        self._conn.commit()
        return ChatMessage(
            conversation_id=conversation_id, role=role, content=content, id=cur.lastrowid
        )

    def add_exchange(
        self, conversation_id: str, question: str, answer: str
    ) -> tuple[ChatMessage, ChatMessage]:
        """Append a user turn and its assistant reply in one transaction."""
        saved = []
        with self._conn:
            for role, content in (("user", question), ("assistant", answer)):
                cur = self._conn.execute(
                    "INSERT INTO chat_messages (conversation_id, role, content) VALUES (?, ?, ?)",
                    (conversation_id, role, content),
                )
                saved.append(
                    ChatMessage(
                        conversation_id=conversation_id,
                        role=role,
                        content=content,
                        id=cur.lastrowid,
                    )
                )
        return saved[0], saved[1]

    def list_messages(self, conversation_id: str) -> list[ChatMessage]:
        rows = self._conn.execute(
            "SELECT id, conversation_id, role, content, created_at FROM chat_messages "
            "WHERE conversation_id = ? ORDER BY created_at, id",
            (conversation_id,),
        ).fetchall()
        return [
            ChatMessage(
                id=r["id"],
                conversation_id=r["conversation_id"],
                role=r["role"],
                content=r["content"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Thread attachments
    # ------------------------------------------------------------------

    def attached_file_ids(self, thread_id: str) -> set[str]:
        rows = self._conn.execute(
            "SELECT provider_file_id FROM thread_attachments WHERE thread_id = ?",
            (thread_id,),
        ).fetchall()
        return {r["provider_file_id"] for r in rows}

    def mark_attached(self, thread_id: str, provider_file_ids: list[str]) -> None:
        self._conn.executemany(
            "INSERT OR IGNORE INTO thread_attachments (thread_id, provider_file_id) VALUES (?, ?)",
            [(thread_id, fid) for fid in provider_file_ids],
        )
        self._conn.commit()


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

_DOCUMENT_COLUMNS = (
    "id, project_id, user_id, filename, storage_path, file_type, provider_file_id, created_at"
)


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        user_id=row["user_id"],
        thread_id=row["thread_id"],
        created_at=row["created_at"],
    )


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        project_id=row["project_id"],
        user_id=row["user_id"],
        filename=row["filename"],
        storage_path=row["storage_path"],
        file_type=row["file_type"],
        provider_file_id=row["provider_file_id"],
        created_at=row["created_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> DocumentChunk:
    return DocumentChunk(
        id=row["id"],
        document_id=row["document_id"],
        chunk_index=row["chunk_index"],
        content=row["content"],
        embedding=decode(row["embedding"]),
        created_at=row["created_at"],
    )


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        project_id=row["project_id"],
        document_id=row["document_id"],
        user_id=row["user_id"],
        created_at=row["created_at"],
    )
