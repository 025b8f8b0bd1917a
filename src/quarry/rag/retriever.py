"""Principal-scoped dense retrieval over chunk embeddings.

Similarity is cosine similarity (``1 - cosine distance``) computed by
sqlite-vec inside the same statement that filters on the requesting user,
so isolation does not depend on any outer policy layer.
"""

from __future__ import annotations

from dataclasses import dataclass

from quarry.db.repository import Repository
from quarry.errors import AuthError, ValidationError
from quarry.rag.llm_client import LLMClient

DEFAULT_THRESHOLD = 0.1
DEFAULT_TOP_K = 5


@dataclass(frozen=True)
class SearchScope:
    """Who is asking, and optionally which document or project to search.

    Attributes:
        user_id: Requesting principal. Mandatory.
        document_id: Restrict to one document.
        project_id: Restrict to one project.
    """

    user_id: str
    document_id: str | None = None
    project_id: str | None = None


@dataclass
class ScoredChunk:
    """A retrieved chunk with its cosine similarity to the query."""

    chunk_id: int
    document_id: str
    chunk_index: int
    content: str
    filename: str
    similarity: float


class VectorRetriever:
    """Nearest-neighbour search with a similarity floor and result cap.

    Args:
        repo: Open Repository.
        llm: Client used to embed query text.
        threshold: Results must score strictly above this.
        top_k: Maximum number of results.
    """

    def __init__(
        self,
        repo: Repository,
        llm: LLMClient,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        top_k: int = DEFAULT_TOP_K,
    ) -> None:
        self._repo = repo
        self._llm = llm
        self.threshold = threshold
        self.top_k = top_k

    def retrieve(self, query: str, scope: SearchScope) -> list[ScoredChunk]:
        """Embed *query* and search within *scope*."""
        _check_scope(scope)
        return self.search(self._llm.embed(query), scope)

    def search(
        self,
        query_vector: list[float],
        scope: SearchScope,
        *,
        threshold: float | None = None,
        k: int | None = None,
    ) -> list[ScoredChunk]:
        """Return up to *k* chunks scoring above *threshold*, best-first.

        An empty list is a valid outcome.

        Raises:
            AuthError: If *scope* has no principal.
            ValidationError: If *k* < 1 or the query vector is empty.
        """
        _check_scope(scope)
        limit = self.top_k if k is None else k
        floor = self.threshold if threshold is None else threshold
        if limit < 1:
            raise ValidationError("k must be >= 1")
        if not query_vector:
            raise ValidationError("query vector must not be empty")

        rows = self._repo.search_chunks(
            query_vector,
            scope.user_id,
            threshold=floor,
            limit=limit,
            document_id=scope.document_id,
            project_id=scope.project_id,
        )
        return [
            ScoredChunk(
                chunk_id=row["id"],
                document_id=row["document_id"],
                chunk_index=row["chunk_index"],
                content=row["content"],
                filename=row["filename"],
                similarity=float(row["similarity"]),
            )
            for row in rows
        ]


def _check_scope(scope: SearchScope) -> None:
    if not scope.user_id:
        raise AuthError("Vector search requires an authenticated principal")
