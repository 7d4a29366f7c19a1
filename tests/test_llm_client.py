"""Tests for the async MemoryLLM collaborator."""

import json

import pytest

from cli.config_models import EmbeddingConfig, EngineConfig, LLMConfig, RetryConfig
from llm.base import LLMError, LLMProvider, LLMRateLimitError
from llm.client import MemoryLLM
from memory.errors import EmbeddingUnavailable, ExtractionFailed
from memory.models import TraceContext


class StubProvider(LLMProvider):
    provider_name = "stub"
    default_embedding_model = "stub-embed"

    def __init__(self, response="[]", vectors=None):
        self.response = response
        self.vectors = list(vectors or [])
        self.embed_models: list[str | None] = []
        self.max_tokens_seen: list[int] = []

    def generate(self, messages, system=None, max_tokens=2000):
        self.max_tokens_seen.append(max_tokens)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    def embed(self, text, model=None):
        self.embed_models.append(model)
        outcome = self.vectors.pop(0) if self.vectors else [1.0, 0.0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome, model


class GenerateOnly(LLMProvider):
    provider_name = "generate-only"

    def generate(self, messages, system=None, max_tokens=2000):
        return "[]"


def _config(**embedding):
    return EngineConfig(
        embedding=EmbeddingConfig(**embedding),
        retry=RetryConfig(max_attempts=3, min_wait=0, llm_max_wait=0),
    )


class TestEmbeddingReadiness:
    def test_ready_with_embedder(self):
        llm = MemoryLLM(_config(), provider=StubProvider(), embedder=StubProvider())
        assert llm.is_embedding_ready()

    def test_disabled(self):
        llm = MemoryLLM(_config(enabled=False), embedder=StubProvider())
        assert not llm.is_embedding_ready()

    def test_embedder_without_support(self):
        llm = MemoryLLM(_config(), embedder=GenerateOnly())
        assert not llm.is_embedding_ready()

    def test_no_keys_means_not_ready(self, monkeypatch):
        for var in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GOOGLE_API_KEY"):
            monkeypatch.delenv(var, raising=False)
        llm = MemoryLLM(_config())
        assert not llm.is_embedding_ready()
        assert llm.resolve_embedding_model() == "text-embedding-3-small"

    def test_model_resolution(self):
        llm = MemoryLLM(_config(), embedder=StubProvider())
        assert llm.resolve_embedding_model() == "stub-embed"
        assert llm.resolve_embedding_model(_config(model="custom-embed")) == "custom-embed"


class TestExtract:
    @pytest.mark.asyncio
    async def test_extracts(self):
        response = json.dumps([{"fact": "Loves pizza.", "type": "preference", "confidence": 0.8}])
        llm = MemoryLLM(_config(), provider=StubProvider(response=response))
        facts = await llm.extract_memory_facts(None, "alice", "I love pizza", 4)
        assert [f.fact for f in facts] == ["Loves pizza."]

    @pytest.mark.asyncio
    async def test_uses_settings_max_tokens(self):
        provider = StubProvider()
        llm = MemoryLLM(_config(), provider=provider)
        await llm.extract_memory_facts(None, "alice", "I love pizza", 4)
        job_settings = EngineConfig(llm=LLMConfig(max_tokens=300))
        trace = TraceContext(guild_id="g1", source="memory_ingest")
        await llm.extract_memory_facts(job_settings, "alice", "I love pizza", 4, trace)
        assert provider.max_tokens_seen == [800, 300]

    @pytest.mark.asyncio
    async def test_wraps_errors(self):
        llm = MemoryLLM(_config(), provider=StubProvider(response=LLMError("quota")))
        with pytest.raises(ExtractionFailed, match="quota"):
            await llm.extract_memory_facts(None, "alice", "I love pizza", 4)


class TestEmbed:
    @pytest.mark.asyncio
    async def test_embeds_with_resolved_model(self):
        embedder = StubProvider(vectors=[[0.3, 0.4]])
        llm = MemoryLLM(_config(model="custom-embed"), embedder=embedder)
        result = await llm.embed_text(None, "pizza")
        assert result.embedding == [0.3, 0.4]
        assert result.model == "custom-embed"
        assert embedder.embed_models == ["custom-embed"]

    @pytest.mark.asyncio
    async def test_retries_rate_limits(self):
        embedder = StubProvider(vectors=[LLMRateLimitError("slow down"), [0.6, 0.8]])
        llm = MemoryLLM(_config(), embedder=embedder)
        result = await llm.embed_text(None, "pizza")
        assert result.embedding == [0.6, 0.8]
        assert len(embedder.embed_models) == 2

    @pytest.mark.asyncio
    async def test_retry_attempts_from_config(self):
        embedder = StubProvider(vectors=[LLMRateLimitError("slow"), LLMRateLimitError("slow"), [0.6, 0.8]])
        config = EngineConfig(retry=RetryConfig(max_attempts=2, min_wait=0, llm_max_wait=0))
        llm = MemoryLLM(config, embedder=embedder)
        with pytest.raises(EmbeddingUnavailable, match="slow"):
            await llm.embed_text(None, "pizza")
        assert len(embedder.embed_models) == 2

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        embedder = StubProvider(vectors=[LLMError("bad request"), [0.6, 0.8]])
        llm = MemoryLLM(_config(), embedder=embedder)
        with pytest.raises(EmbeddingUnavailable, match="bad request"):
            await llm.embed_text(None, "pizza")
        assert len(embedder.embed_models) == 1

    @pytest.mark.asyncio
    async def test_unavailable(self):
        llm = MemoryLLM(_config(enabled=False), embedder=StubProvider())
        with pytest.raises(EmbeddingUnavailable):
            await llm.embed_text(None, "pizza")
