"""Retrieval router — one answering strategy per query, chosen deterministically.

  1. document has a dataframe handle               → STRUCTURED
  2. full extracted text present and < ceiling     → FULL_TEXT
  3. otherwise (and for project-wide questions)    → VECTOR
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from quarry.db.models import DataFrameHandle, Document
from quarry.db.repository import Repository

logger = logging.getLogger(__name__)

FULL_TEXT_CEILING = 200_000


class Strategy(str, Enum):
    STRUCTURED = "structured"
    FULL_TEXT = "full_text"
    VECTOR = "vector"


@dataclass
class RouteDecision:
    """The chosen strategy plus whatever context the router already loaded.

    ``context_chars`` is kept for diagnostics only.
    """

    strategy: Strategy
    document_id: str | None = None
    handle: DataFrameHandle | None = None
    full_text: str | None = None
    context_chars: int = 0


class RetrievalRouter:
    def __init__(self, repo: Repository, *, full_text_ceiling: int = FULL_TEXT_CEILING) -> None:
        self._repo = repo
        self.full_text_ceiling = full_text_ceiling

    def route(self, document: Document | None) -> RouteDecision:
        """Pick the strategy for a question about *document* (None = whole project)."""
        if document is None:
            decision = RouteDecision(strategy=Strategy.VECTOR)
            logger.debug("Route: project-wide → %s", decision.strategy.value)
            return decision

        handle = self._repo.get_dataframe_handle(document.id)
        if handle is not None:
            decision = RouteDecision(
                strategy=Strategy.STRUCTURED,
                document_id=document.id,
                handle=handle,
                context_chars=sum(len(str(r)) for r in handle.sample_rows),
            )
        else:
            text = self._repo.get_document_text(document.id)
            if text and len(text) < self.full_text_ceiling:
                decision = RouteDecision(
                    strategy=Strategy.FULL_TEXT,
                    document_id=document.id,
                    full_text=text,
                    context_chars=len(text),
                )
            else:
                decision = RouteDecision(strategy=Strategy.VECTOR, document_id=document.id)

        logger.debug(
            "Route: %s → %s (%d context chars)",
            document.filename,
            decision.strategy.value,
            decision.context_chars,
        )
        return decision
