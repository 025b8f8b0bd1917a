"""Project-scoped conversation threads on the provider's assistant API.

One thread per project, created lazily and stored with a single conditional
UPDATE so concurrent first requests converge on the same id. All appends and
runs on a thread go through a per-thread lock: the provider rejects a new
message while a run is active.
"""

from __future__ import annotations

import logging
import re
import threading
import time
import weakref
from dataclasses import dataclass
from typing import Any, Callable

from quarry.db.models import Document, Project
from quarry.db.repository import Repository
from quarry.errors import PollTimeout, RunFailed
from quarry.rag import prompts
from quarry.rag.polling import poll_until
from quarry.rag.provider import ProviderClient

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset(
    {"completed", "failed", "cancelled", "expired", "incomplete", "requires_action"}
)
EMPTY_RESPONSE = "No response generated."

# Provider-inserted source markers such as 【4:0†sales.csv】
_CITATION_RE = re.compile(r"【[^】]*†[^】]*】")

_CODE_TOOL = {"type": "code_interpreter"}
_SEARCH_TOOL = {"type": "file_search"}


class ThreadLocks:
    """Registry of one mutex per key, created on first use.

    Entries are weak: a key's lock is dropped once no caller holds it, so the
    registry only ever contains locks that are in use.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = (
            weakref.WeakValueDictionary()
        )

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class ThreadAnswer:
    answer: str
    thread_id: str
    run_id: str
    status: str


def tools_for(documents: list[Document]) -> list[dict]:
    """code_interpreter iff a tabular file is present, file_search iff another is."""
    tools = []
    if any(d.is_tabular for d in documents):
        tools.append(dict(_CODE_TOOL))
    if any(not d.is_tabular for d in documents):
        tools.append(dict(_SEARCH_TOOL))
    return tools


def strip_citations(text: str) -> str:
    return _CITATION_RE.sub("", text).strip()


def message_text(message: Any) -> str:
    """Concatenate the text segments of a provider message."""
    parts = []
    for block in message.content or []:
        if getattr(block, "type", None) == "text":
            parts.append(block.text.value)
    return "\n".join(parts)


class ThreadManager:
    """Answer project-wide questions through the configured assistant.

    Args:
        repo: Open Repository (thread ids and attachment records).
        provider: Provider thread API client.
        assistant_id: Assistant every run is started against.
        poll_interval: Initial delay between run status checks (seconds).
        poll_max_interval: Cap for the growing delay.
        run_timeout: Overall bound on one run.
        locks: Shared lock registry; a private one is used when omitted.
    """

    def __init__(
        self,
        repo: Repository,
        provider: ProviderClient,
        assistant_id: str,
        *,
        poll_interval: float = 1.0,
        poll_max_interval: float = 5.0,
        run_timeout: float = 120.0,
        locks: ThreadLocks | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repo = repo
        self._provider = provider
        self.assistant_id = assistant_id
        self.poll_interval = poll_interval
        self.poll_max_interval = poll_max_interval
        self.run_timeout = run_timeout
        self._locks = locks if locks is not None else ThreadLocks()
        self._sleep = sleep
        self._clock = clock

    def ensure_thread(self, project: Project) -> str:
        """Return the project's thread id, creating and storing it on first use."""
        if project.thread_id:
            return project.thread_id

        with self._locks.get(f"project:{project.id}"):
            stored = self._repo.get_project(project.id)
            if stored is not None and stored.thread_id:
                project.thread_id = stored.thread_id
                return stored.thread_id

            created = self._provider.create_thread(metadata={"project_id": project.id})
            winner = self._repo.claim_thread_id(project.id, created)
            if winner != created:
                logger.info(
                    "Project %s already had thread %s; thread %s left unused",
                    project.id,
                    winner,
                    created,
                )
            else:
                logger.debug("Created thread %s for project %s", created, project.id)
            project.thread_id = winner
            return winner

    def ask(self, project: Project, message: str, documents: list[Document]) -> ThreadAnswer:
        """Append *message* to the project thread, run the assistant, return its reply.

        Raises:
            RunFailed: The run ended in any state other than ``completed``,
                or did not finish within ``run_timeout``.
            UpstreamUnavailable: A provider call failed.
        """
        thread_id = self.ensure_thread(project)

        with self._locks.get(thread_id):
            attachments, new_ids = self._pending_attachments(thread_id, documents)
            self._provider.add_message(thread_id, message, attachments or None)
            if new_ids:
                self._repo.mark_attached(thread_id, new_ids)

            run = self._provider.create_run(
                thread_id,
                assistant_id=self.assistant_id,
                additional_instructions=prompts.build_run_instructions(documents),
                tools=tools_for(documents),
            )
            run = self._wait(thread_id, run)

            if run.status != "completed":
                raise RunFailed(run.status, _error_detail(run))

            answer = self._reply_for(thread_id, run.id)

        return ThreadAnswer(answer=answer, thread_id=thread_id, run_id=run.id, status=run.status)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _pending_attachments(
        self, thread_id: str, documents: list[Document]
    ) -> tuple[list[dict], list[str]]:
        already = self._repo.attached_file_ids(thread_id)
        attachments: list[dict] = []
        new_ids: list[str] = []
        for doc in documents:
            fid = doc.provider_file_id
            if not fid or fid in already or fid in new_ids:
                continue
            tool = _CODE_TOOL if doc.is_tabular else _SEARCH_TOOL
            attachments.append({"file_id": fid, "tools": [dict(tool)]})
            new_ids.append(fid)
        return attachments, new_ids

    def _wait(self, thread_id: str, run: Any) -> Any:
        if run.status in TERMINAL_STATUSES:
            return run
        try:
            return poll_until(
                lambda: self._provider.retrieve_run(thread_id, run.id),
                lambda r: r.status in TERMINAL_STATUSES,
                timeout=self.run_timeout,
                interval=self.poll_interval,
                max_interval=self.poll_max_interval,
                sleep=self._sleep,
                clock=self._clock,
            )
        except PollTimeout as exc:
            last = exc.last if exc.last is not None else run
            logger.warning(
                "Run %s on thread %s still '%s' after %.0fs",
                run.id,
                thread_id,
                last.status,
                self.run_timeout,
            )
            raise RunFailed("timed_out", f"last status '{last.status}'") from exc

    def _reply_for(self, thread_id: str, run_id: str) -> str:
        for message in self._provider.list_messages(thread_id, run_id=run_id):
            if message.role == "assistant" and getattr(message, "run_id", run_id) == run_id:
                return strip_citations(message_text(message)) or EMPTY_RESPONSE
        return EMPTY_RESPONSE


def _error_detail(run: Any) -> Any:
    error = getattr(run, "last_error", None)
    if error is None:
        return None
    message = getattr(error, "message", None)
    code = getattr(error, "code", None)
    if message or code:
        return f"{code}: {message}" if code else message
    return error


def create_assistant(provider: ProviderClient, model: str) -> str:
    """Provision the data-analyst assistant. Returns its id."""
    assistant_id = provider.create_assistant(
        name=prompts.ASSISTANT_NAME,
        instructions=prompts.ASSISTANT_INSTRUCTIONS,
        model=model,
        tools=[dict(_CODE_TOOL), dict(_SEARCH_TOOL)],
    )
    logger.info("Created assistant %s (%s)", assistant_id, model)
    return assistant_id
