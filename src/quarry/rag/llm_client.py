"""LiteLLM client wrapper with retry, API key validation, and seeded completions.

All chat completions and embeddings route through :class:`LLMClient`.
LiteLLM's built-in retry is used (num_retries=3, exponential backoff).
Provider failures are re-raised as :class:`~quarry.errors.UpstreamUnavailable`
so callers can decide between falling back and surfacing the error.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

import litellm
import openai

from quarry.errors import UpstreamUnavailable

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


def provider_of(model: str) -> str:
    """Return the provider prefix of a LiteLLM model string ('openai' if none)."""
    return model.split("/")[0].lower() if "/" in model else "openai"


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = provider_of(model)
    env_var = _PROVIDER_ENV.get(provider, f"{provider.upper()}_API_KEY")

    if env_var is None:
        return  # No key required (e.g. ollama)

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


@dataclass
class LLMClient:
    """Process-wide handle on the completion and embedding models.

    Constructed once (see ``Engine.from_config``) and passed to every
    component that talks to the model provider.

    Attributes:
        generation_model: LiteLLM model string for chat completions.
        embedding_model: LiteLLM model string for embeddings.
        temperature: Default sampling temperature.
        seed: Default seed for reproducible sampling (best-effort).
        num_retries: Retries on transient errors (exponential backoff).
    """

    generation_model: str = "openai/gpt-4o"
    embedding_model: str = "openai/text-embedding-3-small"
    temperature: float = 0.0
    seed: int | None = 42
    num_retries: int = 3
    embedding_batch_size: int = 64

    def complete(
        self,
        messages: list[dict],
        *,
        max_tokens: int = 2048,
        temperature: float | None = None,
        seed: int | None = None,
    ) -> str:
        """Call litellm.completion() and return the first choice's text.

        Raises:
            UpstreamUnavailable: On persistent API failure after retries.
        """
        kwargs: dict = {
            "model": self.generation_model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
            "num_retries": self.num_retries,
        }
        effective_seed = self.seed if seed is None else seed
        if effective_seed is not None:
            kwargs["seed"] = effective_seed
        try:
            response = litellm.completion(**kwargs)
        except openai.OpenAIError as exc:
            raise UpstreamUnavailable("completion", str(exc)) from exc
        return response.choices[0].message.content or ""

    def embed(self, text: str) -> list[float]:
        """Embed a single string. Returns the embedding vector."""
        return self.embed_many([text])[0]

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts* in batches, preserving order.

        Raises:
            UpstreamUnavailable: On persistent API failure after retries.
        """
        vectors: list[list[float]] = []
        size = max(1, self.embedding_batch_size)
        for start in range(0, len(texts), size):
            batch = texts[start : start + size]
            try:
                response = litellm.embedding(
                    model=self.embedding_model,
                    input=batch,
                    num_retries=self.num_retries,
                )
            except openai.OpenAIError as exc:
                raise UpstreamUnavailable("embedding", str(exc)) from exc
            vectors.extend(item["embedding"] for item in response.data)
        return vectors
