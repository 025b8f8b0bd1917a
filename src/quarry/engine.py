"""Engine facade: the two operations callers use, ``ask`` and ``ingest``.

Every client (LLM, tabular service, provider, object store) is built once by
:meth:`Engine.from_config` and injected into the components that need it.

Scope rules for ``ask``:
  document_id → RetrievalRouter (structured / full text / vector)
  project_id  → ThreadManager when an assistant id is configured,
                otherwise vector search over the whole project
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

from quarry.config import QuarryConfig
from quarry.db.connection import Database
from quarry.db.models import DataFrameHandle, Document, Project, file_type_for
from quarry.db.repository import Repository
from quarry.db.schema import initialize
from quarry.errors import AuthError, NotFoundError, ValidationError
from quarry.ingest.pipeline import IngestionPipeline, IngestResult
from quarry.rag import prompts
from quarry.rag.llm_client import LLMClient
from quarry.rag.provider import ProviderClient
from quarry.rag.retriever import ScoredChunk, SearchScope, VectorRetriever
from quarry.rag.router import RetrievalRouter, Strategy
from quarry.rag.structured import StructuredQueryEngine
from quarry.rag.threads import ThreadLocks, ThreadManager
from quarry.storage import ObjectStore
from quarry.tabular.client import TabularClient

logger = logging.getLogger(__name__)


@dataclass
class AskRequest:
    """One question. Exactly one of ``document_id`` / ``project_id`` is set."""

    message: str
    user_id: str | None
    document_id: str | None = None
    project_id: str | None = None
    conversation_id: str | None = None


@dataclass
class Citation:
    document_id: str
    filename: str
    chunk_index: int | None = None
    similarity: float | None = None


@dataclass
class AskResponse:
    """Answer text plus citations. ``metadata`` is diagnostic and never rendered."""

    answer: str
    citations: list[Citation] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


class Engine:
    def __init__(
        self,
        repo: Repository,
        llm: LLMClient,
        store: ObjectStore,
        tabular: TabularClient,
        provider: ProviderClient,
        config: QuarryConfig | None = None,
        *,
        conn: sqlite3.Connection | None = None,
        locks: ThreadLocks | None = None,
    ) -> None:
        self.config = config or QuarryConfig()
        self.repo = repo
        self._llm = llm
        self._store = store
        self._tabular = tabular
        self._provider = provider
        self._conn = conn

        self.pipeline = IngestionPipeline(
            repo,
            store,
            llm,
            tabular,
            provider,
            chunk_size=self.config.chunking.chunk_size,
            overlap=self.config.chunking.overlap,
        )
        self.router = RetrievalRouter(
            repo, full_text_ceiling=self.config.retrieval.full_text_ceiling
        )
        self.retriever = VectorRetriever(
            repo,
            llm,
            threshold=self.config.retrieval.threshold,
            top_k=self.config.retrieval.top_k,
        )
        self.structured = StructuredQueryEngine(llm, tabular, reload=self._reload_dataframe)

        assistant = self.config.assistant
        self.threads: ThreadManager | None = None
        if assistant.id:
            self.threads = ThreadManager(
                repo,
                provider,
                assistant.id,
                poll_interval=assistant.poll_interval,
                poll_max_interval=assistant.poll_max_interval,
                run_timeout=assistant.run_timeout,
                locks=locks,
            )

    @classmethod
    def from_config(cls, config: QuarryConfig, project_dir: Path | None = None) -> Engine:
        """Open the database and build every client from *config*.

        Relative storage paths resolve against *project_dir* (default: CWD).
        """
        base = project_dir if project_dir is not None else Path.cwd()
        db_path = _resolve(base, config.storage.db)
        conn = Database(db_path).connect()
        initialize(conn)

        llm = LLMClient(
            generation_model=config.generation.model,
            embedding_model=config.embedding.model,
            temperature=config.generation.temperature,
            seed=config.generation.seed,
            embedding_batch_size=config.embedding.batch_size,
        )
        return cls(
            Repository(conn),
            llm,
            ObjectStore(_resolve(base, config.storage.root)),
            TabularClient(config.tabular.url, timeout=config.tabular.timeout),
            ProviderClient(),
            config,
            conn=conn,
        )

    def close(self) -> None:
        self._tabular.close()
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def add_document(self, project: Project, filename: str, data: bytes) -> Document:
        """Store *data* and register it as a new document of *project*."""
        document_id = str(uuid.uuid4())
        key = f"{project.user_id}/{project.id}/{document_id}/{Path(filename).name}"
        self._store.put(key, data)
        document = Document(
            id=document_id,
            project_id=project.id,
            user_id=project.user_id,
            filename=Path(filename).name,
            storage_path=key,
            file_type=file_type_for(filename),
        )
        self.repo.add_document(document)
        return document

    def ingest(self, document_id: str, storage_path: str) -> IngestResult:
        return self.pipeline.ingest(document_id, storage_path)

    def document_link(self, document_id: str, user_id: str) -> str:
        """Signed read URL for a document *user_id* owns, valid for ``storage.url_ttl``."""
        document = self.repo.get_document(document_id, user_id)
        if document is None:
            raise NotFoundError(f"Document '{document_id}' not found")
        return self._store.signed_url(document.storage_path, self.config.storage.url_ttl)

    def open_link(self, url: str, user_id: str) -> tuple[str, bytes]:
        """Verify a signed URL and return the linked file's name and bytes.

        Raises:
            ValidationError: Malformed, tampered or expired URL.
            NotFoundError: The object belongs to another user or is gone.
        """
        key = self._store.verify_url(url)
        if key.split("/", 1)[0] != user_id:
            raise NotFoundError("Linked document not found")
        return PurePosixPath(key).name, self._store.download(key)

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    def ask(self, request: AskRequest) -> AskResponse:
        """Answer one question and append both turns to the scope's conversation.

        Raises:
            ValidationError: Empty message, or not exactly one scope.
            AuthError: No principal on the request.
            NotFoundError: Unknown or foreign document, project or conversation.
            RunFailed: The assistant run did not complete (project scope).
            UpstreamUnavailable: A provider call on the answer path failed.
        """
        message = (request.message or "").strip()
        if not message:
            raise ValidationError("Message must not be empty")
        if not request.document_id and not request.project_id:
            raise ValidationError("Either document_id or project_id is required")
        if request.document_id and request.project_id:
            raise ValidationError("Give document_id or project_id, not both")
        if not request.user_id:
            raise AuthError("Request has no authenticated user")
        user_id = request.user_id

        document: Document | None = None
        if request.document_id:
            document = self.repo.get_document(request.document_id, user_id)
            if document is None:
                raise NotFoundError(f"Document '{request.document_id}' not found")
            project = self.repo.get_project(document.project_id, user_id)
        else:
            project = self.repo.get_project(request.project_id, user_id)
        if project is None:
            missing = document.project_id if document else request.project_id
            raise NotFoundError(f"Project '{missing}' not found")

        conversation_id = self._conversation_for(request, project, document)

        if document is not None:
            response = self._ask_document(message, user_id, document)
        else:
            response = self._ask_project(message, user_id, project)

        # Failed answers leave the conversation untouched.
        self.repo.add_exchange(conversation_id, message, response.answer)
        response.metadata["conversation_id"] = conversation_id
        return response

    def _ask_document(self, message: str, user_id: str, document: Document) -> AskResponse:
        decision = self.router.route(document)
        metadata: dict[str, Any] = {
            "strategy": decision.strategy.value,
            "context_chars": decision.context_chars,
        }
        cite = [Citation(document_id=document.id, filename=document.filename)]

        if decision.strategy is Strategy.STRUCTURED:
            outcome = self.structured.answer(message, decision.handle)
            metadata.update(
                states=[s.value for s in outcome.states],
                confidence=outcome.confidence,
                fallback_reason=outcome.fallback_reason,
            )
            return AskResponse(answer=outcome.answer, citations=cite, metadata=metadata)

        if decision.strategy is Strategy.FULL_TEXT:
            answer = self._llm.complete(
                prompts.build_synthesis_messages(message, [(document.filename, decision.full_text)])
            )
            return AskResponse(answer=answer, citations=cite, metadata=metadata)

        if self.repo.count_chunks(document.id) == 0:
            logger.debug("No chunks indexed for %s", document.filename)
            return AskResponse(answer=prompts.NO_INFO_ANSWER, metadata=metadata)
        scope = SearchScope(user_id=user_id, document_id=document.id)
        return self._answer_from_chunks(message, scope, metadata)

    def _ask_project(self, message: str, user_id: str, project: Project) -> AskResponse:
        if self.threads is not None:
            documents = self.repo.list_documents(project.id, user_id)
            reply = self.threads.ask(project, message, documents)
            return AskResponse(
                answer=reply.answer,
                citations=[Citation(document_id=d.id, filename=d.filename) for d in documents],
                metadata={"strategy": "thread", "thread_id": reply.thread_id, "run_id": reply.run_id},
            )

        metadata: dict[str, Any] = {"strategy": Strategy.VECTOR.value}
        scope = SearchScope(user_id=user_id, project_id=project.id)
        return self._answer_from_chunks(message, scope, metadata)

    def _answer_from_chunks(
        self, message: str, scope: SearchScope, metadata: dict[str, Any]
    ) -> AskResponse:
        chunks = self.retriever.retrieve(message, scope)
        metadata["chunks"] = len(chunks)
        if not chunks:
            return AskResponse(answer=prompts.NO_INFO_ANSWER, metadata=metadata)

        metadata["context_chars"] = sum(len(c.content) for c in chunks)
        answer = self._llm.complete(
            prompts.build_synthesis_messages(message, [_context_block(c) for c in chunks])
        )
        return AskResponse(
            answer=answer,
            citations=[
                Citation(
                    document_id=c.document_id,
                    filename=c.filename,
                    chunk_index=c.chunk_index,
                    similarity=c.similarity,
                )
                for c in chunks
            ],
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _conversation_for(
        self, request: AskRequest, project: Project, document: Document | None
    ) -> str:
        document_id = document.id if document else None
        if request.conversation_id:
            conversation = self.repo.get_conversation(request.conversation_id, project.user_id)
            if conversation is None or conversation.project_id != project.id:
                raise NotFoundError(f"Conversation '{request.conversation_id}' not found")
            return conversation.id
        conversation = self.repo.latest_conversation(project.id, project.user_id, document_id)
        if conversation is None:
            conversation = self.repo.create_conversation(project.id, project.user_id, document_id)
        return conversation.id

    def _reload_dataframe(self, document_id: str) -> DataFrameHandle | None:
        document = self.repo.get_document(document_id)
        if document is None:
            return None
        try:
            return self.pipeline.reload_dataframe(document)
        except NotFoundError as exc:
            logger.warning("Cannot reload dataframe for %s: %s", document.filename, exc)
            return None


def _context_block(chunk: ScoredChunk) -> tuple[str, str]:
    return f"{chunk.filename} #{chunk.chunk_index}", chunk.content


def _resolve(base: Path, value: str) -> Path | str:
    if value == ":memory:":
        return value
    path = Path(value).expanduser()
    return path if path.is_absolute() else base / path
