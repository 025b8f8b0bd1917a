"""Tests for the LiteLLM client wrapper."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import openai
import pytest

from quarry.errors import UpstreamUnavailable
from quarry.rag.llm_client import LLMClient, provider_of, validate_api_key


# ------------------------------------------------------------------
# validate_api_key
# ------------------------------------------------------------------


def test_validate_api_key_raises_if_missing(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(EnvironmentError, match="OPENAI_API_KEY"):
        validate_api_key("openai/gpt-4o")


def test_validate_api_key_passes_if_set(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-key")
    validate_api_key("openai/gpt-4o")  # should not raise


def test_validate_api_key_ollama_no_key_required():
    validate_api_key("ollama/llama2")


@pytest.mark.parametrize(
    "model,provider",
    [("openai/gpt-4o", "openai"), ("gpt-4o", "openai"), ("Anthropic/claude", "anthropic")],
)
def test_provider_of(model, provider):
    assert provider_of(model) == provider


# ------------------------------------------------------------------
# complete()
# ------------------------------------------------------------------


def test_complete_returns_content():
    mock_response = MagicMock()
    mock_response.choices[0].message.content = "Hello, world!"

    with patch("quarry.rag.llm_client.litellm.completion", return_value=mock_response):
        result = LLMClient().complete([{"role": "user", "content": "Hi"}])

    assert result == "Hello, world!"


def test_complete_returns_empty_string_on_none_content():
    mock_response = MagicMock()
    mock_response.choices[0].message.content = None

    with patch("quarry.rag.llm_client.litellm.completion", return_value=mock_response):
        assert LLMClient().complete([{"role": "user", "content": "Hi"}]) == ""


def test_complete_sends_temperature_and_seed():
    mock_response = MagicMock()
    mock_response.choices[0].message.content = "ok"
    client = LLMClient(generation_model="openai/gpt-4o-mini", temperature=0.0, seed=7)

    with patch("quarry.rag.llm_client.litellm.completion", return_value=mock_response) as mock_c:
        client.complete([{"role": "user", "content": "test"}], max_tokens=512)

    kwargs = mock_c.call_args.kwargs
    assert kwargs["model"] == "openai/gpt-4o-mini"
    assert kwargs["max_tokens"] == 512
    assert kwargs["temperature"] == 0.0
    assert kwargs["seed"] == 7
    assert kwargs["num_retries"] == 3


def test_complete_omits_seed_when_disabled():
    mock_response = MagicMock()
    mock_response.choices[0].message.content = "ok"

    with patch("quarry.rag.llm_client.litellm.completion", return_value=mock_response) as mock_c:
        LLMClient(seed=None).complete([{"role": "user", "content": "test"}])

    assert "seed" not in mock_c.call_args.kwargs


def test_complete_wraps_provider_errors():
    with patch(
        "quarry.rag.llm_client.litellm.completion", side_effect=openai.OpenAIError("boom")
    ):
        with pytest.raises(UpstreamUnavailable, match="boom"):
            LLMClient().complete([{"role": "user", "content": "Hi"}])


# ------------------------------------------------------------------
# embed() / embed_many()
# ------------------------------------------------------------------


def test_embed_returns_vector():
    mock_response = MagicMock()
    mock_response.data = [{"embedding": [0.1, 0.2, 0.3]}]

    with patch("quarry.rag.llm_client.litellm.embedding", return_value=mock_response) as mock_e:
        result = LLMClient().embed("hello")

    assert result == [0.1, 0.2, 0.3]
    assert mock_e.call_args.kwargs["input"] == ["hello"]


def test_embed_many_batches_and_keeps_order():
    def _fake(model, input, num_retries):
        response = MagicMock()
        response.data = [{"embedding": [float(len(t))]} for t in input]
        return response

    client = LLMClient(embedding_batch_size=2)
    with patch("quarry.rag.llm_client.litellm.embedding", side_effect=_fake) as mock_e:
        vectors = client.embed_many(["a", "bb", "ccc", "dddd", "eeeee"])

    assert vectors == [[1.0], [2.0], [3.0], [4.0], [5.0]]
    assert mock_e.call_count == 3


def test_embed_wraps_provider_errors():
    with patch(
        "quarry.rag.llm_client.litellm.embedding", side_effect=openai.OpenAIError("quota")
    ):
        with pytest.raises(UpstreamUnavailable):
            LLMClient().embed("hello")
