"""Tests for the LLM provider factory."""

from unittest.mock import MagicMock, patch

import pytest

from llm import LLMError, create_embedding_provider, create_llm_provider


class TestCreateProvider:
    def test_explicit_openai_with_client(self):
        mock_client = MagicMock()
        provider = create_llm_provider(provider="openai", client=mock_client)
        assert provider.provider_name == "openai"
        assert provider.client is mock_client

    def test_auto_resolves_to_openai(self):
        provider = create_llm_provider(provider="auto", client=MagicMock())
        assert provider.provider_name == "openai"

    def test_unknown_provider_raises(self):
        with pytest.raises(LLMError, match="Unknown provider"):
            create_llm_provider(provider="llama", client=MagicMock())

    def test_missing_key_raises(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(LLMError, match="OPENAI_API_KEY"):
            create_llm_provider()

    def test_env_key_used(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        with patch("openai.OpenAI") as mock_openai:
            provider = create_llm_provider()
        mock_openai.assert_called_once_with(api_key="sk-test")
        assert provider.provider_name == "openai"

    def test_custom_model(self):
        provider = create_llm_provider(provider="openai", client=MagicMock(), model="gpt-4o")
        assert provider.model == "gpt-4o"


class TestCreateEmbeddingProvider:
    def test_with_client(self):
        mock_client = MagicMock()
        provider = create_embedding_provider(client=mock_client, model="text-embedding-3-large")
        assert provider.client is mock_client
        assert provider.model == "text-embedding-3-large"

    def test_explicit_key_skips_env(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with patch("openai.OpenAI") as mock_openai:
            create_embedding_provider(api_key="sk-explicit")
        mock_openai.assert_called_once_with(api_key="sk-explicit")
