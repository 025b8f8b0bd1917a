"""OpenAI SDK wrapper for the provider-hosted surface: files, assistants, threads, runs.

LiteLLM covers completions and embeddings; the assistant thread primitives
(and retrieving a run's status for polling) come straight from the OpenAI SDK.
Every SDK failure is re-raised as :class:`~quarry.errors.UpstreamUnavailable`.
"""

from __future__ import annotations

from typing import Any

import openai

from quarry.errors import UpstreamUnavailable

_SERVICE = "LLM provider"


class ProviderClient:
    """Process-wide handle on the provider's file store and thread API.

    Args:
        client: An ``openai.OpenAI`` instance; built from the environment
            (``OPENAI_API_KEY``) when omitted.
    """

    def __init__(self, client: openai.OpenAI | None = None) -> None:
        self._client = client or openai.OpenAI()

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def upload_file(self, filename: str, data: bytes) -> str:
        """Store *data* in the provider file store. Returns the durable file id."""
        try:
            uploaded = self._client.files.create(file=(filename, data), purpose="assistants")
        except openai.OpenAIError as exc:
            raise UpstreamUnavailable(_SERVICE, f"file upload failed: {exc}") from exc
        return uploaded.id

    # ------------------------------------------------------------------
    # Assistants
    # ------------------------------------------------------------------

    def create_assistant(
        self, *, name: str, instructions: str, model: str, tools: list[dict]
    ) -> str:
        try:
            assistant = self._client.beta.assistants.create(
                name=name, instructions=instructions, model=model, tools=tools
            )
        except openai.OpenAIError as exc:
            raise UpstreamUnavailable(_SERVICE, f"assistant creation failed: {exc}") from exc
        return assistant.id

    # ------------------------------------------------------------------
    # Threads, messages, runs
    # ------------------------------------------------------------------

    def create_thread(self, metadata: dict[str, str]) -> str:
        try:
            thread = self._client.beta.threads.create(metadata=metadata)
        except openai.OpenAIError as exc:
            raise UpstreamUnavailable(_SERVICE, f"thread creation failed: {exc}") from exc
        return thread.id

    def add_message(
        self, thread_id: str, content: str, attachments: list[dict] | None = None
    ) -> str:
        kwargs: dict[str, Any] = {"role": "user", "content": content}
        if attachments:
            kwargs["attachments"] = attachments
        try:
            message = self._client.beta.threads.messages.create(thread_id, **kwargs)
        except openai.OpenAIError as exc:
            raise UpstreamUnavailable(_SERVICE, f"message append failed: {exc}") from exc
        return message.id

    def create_run(
        self,
        thread_id: str,
        *,
        assistant_id: str,
        additional_instructions: str,
        tools: list[dict],
    ) -> Any:
        kwargs: dict[str, Any] = {
            "assistant_id": assistant_id,
            "additional_instructions": additional_instructions,
        }
        if tools:
            kwargs["tools"] = tools
        try:
            return self._client.beta.threads.runs.create(thread_id, **kwargs)
        except openai.OpenAIError as exc:
            raise UpstreamUnavailable(_SERVICE, f"run start failed: {exc}") from exc

    def retrieve_run(self, thread_id: str, run_id: str) -> Any:
        try:
            return self._client.beta.threads.runs.retrieve(run_id, thread_id=thread_id)
        except openai.OpenAIError as exc:
            raise UpstreamUnavailable(_SERVICE, f"run status check failed: {exc}") from exc

    def list_messages(self, thread_id: str, *, run_id: str | None = None, limit: int = 20) -> list[Any]:
        """Return thread messages newest first (optionally only those of *run_id*)."""
        kwargs: dict[str, Any] = {"order": "desc", "limit": limit}
        if run_id:
            kwargs["run_id"] = run_id
        try:
            page = self._client.beta.threads.messages.list(thread_id, **kwargs)
        except openai.OpenAIError as exc:
            raise UpstreamUnavailable(_SERVICE, f"message listing failed: {exc}") from exc
        return list(page.data)
