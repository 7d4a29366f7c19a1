"""Tests for LLM factory and auto-detection."""

from unittest.mock import MagicMock, patch

import pytest

from llm import LLMError, create_cheap_provider, create_embedding_provider, create_llm_provider
from llm.factory import _auto_detect_provider


@pytest.fixture
def no_keys(monkeypatch):
    for var in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GOOGLE_API_KEY"):
        monkeypatch.delenv(var, raising=False)


class TestAutoDetection:
    def test_detects_anthropic_key(self, monkeypatch, no_keys):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        assert _auto_detect_provider() == "claude"

    def test_detects_openai_key(self, monkeypatch, no_keys):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert _auto_detect_provider() == "openai"

    def test_detects_google_key(self, monkeypatch, no_keys):
        monkeypatch.setenv("GOOGLE_API_KEY", "AIza-test")
        assert _auto_detect_provider() == "gemini"

    def test_prefers_anthropic_when_multiple(self, monkeypatch, no_keys):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert _auto_detect_provider() == "claude"

    def test_explicit_key_prefix_wins(self, monkeypatch, no_keys):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        assert _auto_detect_provider(api_key="sk-proj-abc") == "openai"
        assert _auto_detect_provider(api_key="AIzaSy-abc") == "gemini"

    def test_order_restricts_candidates(self, monkeypatch, no_keys):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        monkeypatch.setenv("GOOGLE_API_KEY", "AIza-test")
        assert _auto_detect_provider(order=["openai", "gemini"]) == "gemini"

    def test_no_keys_raises(self, no_keys):
        with pytest.raises(LLMError, match="No LLM API key found"):
            _auto_detect_provider()


class TestCreateProvider:
    def test_explicit_claude_with_client(self):
        mock_client = MagicMock()
        provider = create_llm_provider(provider="claude", client=mock_client)
        assert provider.provider_name == "claude"
        assert provider.client is mock_client

    def test_explicit_openai_with_client(self):
        mock_client = MagicMock()
        provider = create_llm_provider(provider="openai", client=mock_client)
        assert provider.provider_name == "openai"
        assert provider.client is mock_client

    def test_explicit_gemini_with_client(self):
        mock_client = MagicMock()
        provider = create_llm_provider(provider="gemini", client=mock_client)
        assert provider.provider_name == "gemini"
        assert provider.client is mock_client

    def test_unknown_provider_raises(self):
        with pytest.raises(LLMError, match="Unknown provider"):
            create_llm_provider(provider="llama", client=MagicMock())

    def test_auto_with_anthropic_key(self, monkeypatch, no_keys):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        with patch("anthropic.Anthropic"):
            provider = create_llm_provider()
            assert provider.provider_name == "claude"

    def test_custom_model(self):
        provider = create_llm_provider(provider="claude", client=MagicMock(), model="claude-opus-4-1")
        assert provider.model == "claude-opus-4-1"

    def test_cheap_models(self):
        mock_client = MagicMock()
        assert create_cheap_provider(provider="claude", client=mock_client).model == "claude-haiku-4-5"
        assert create_cheap_provider(provider="openai", client=mock_client).model == "gpt-4o-mini"
        assert create_cheap_provider(provider="gemini", client=mock_client).model_name == "gemini-2.0-flash"


class TestCreateEmbeddingProvider:
    def test_openai(self):
        provider = create_embedding_provider(provider="openai", client=MagicMock())
        assert provider.supports_embeddings
        assert provider.default_embedding_model == "text-embedding-3-small"

    def test_gemini(self):
        provider = create_embedding_provider(provider="gemini", client=MagicMock())
        assert provider.supports_embeddings

    def test_claude_rejected(self):
        with pytest.raises(LLMError, match="has no embeddings"):
            create_embedding_provider(provider="claude", client=MagicMock())

    def test_auto_skips_claude(self, monkeypatch, no_keys):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        with pytest.raises(LLMError, match="OPENAI_API_KEY"):
            create_embedding_provider()

    def test_auto_picks_openai(self, monkeypatch, no_keys):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        with patch("openai.OpenAI"):
            provider = create_embedding_provider()
        assert provider.provider_name == "openai"
