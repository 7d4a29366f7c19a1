"""Async LLM collaborator used by the memory engine.

Wraps the synchronous providers: one for fact extraction (cheap tier) and
one for embeddings. Vendor SDK calls run in worker threads.
"""

import asyncio

import structlog

from cli.config_models import EngineConfig
from cli.retry import retry_from_config
from memory.errors import EmbeddingUnavailable, ExtractionFailed
from memory.models import EmbeddingResult, ExtractedFact, TraceContext

from .base import LLMError, LLMProvider, LLMRateLimitError
from .extractor import FactExtractor

logger = structlog.get_logger()

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"


class MemoryLLM:
    """Fact extraction and embedding calls for one engine instance.

    Args:
        config: Engine config; its ``llm``/``embedding``/``retry`` sections apply.
        provider: Pre-built generation provider (tests/DI).
        embedder: Pre-built embedding provider (tests/DI).
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        provider: LLMProvider | None = None,
        embedder: LLMProvider | None = None,
    ):
        self.config = config or EngineConfig()
        self._provider = provider
        self._embedder = embedder
        self._embedder_failed = False
        self._extractor: FactExtractor | None = None

        self._embed_with_retry = retry_from_config(
            self.config.to_dict(), exceptions=(LLMRateLimitError,)
        )(self._embed_sync)

    def _get_extractor(self) -> FactExtractor:
        if self._extractor is None:
            provider = self._provider
            if provider is None:
                from .factory import create_cheap_provider

                llm_cfg = self.config.llm
                provider = create_cheap_provider(
                    provider=llm_cfg.provider, api_key=llm_cfg.api_key, model=llm_cfg.model
                )
            self._extractor = FactExtractor(provider, max_tokens=self.config.llm.max_tokens)
        return self._extractor

    def _get_embedder(self) -> LLMProvider | None:
        if self._embedder is not None or self._embedder_failed:
            return self._embedder
        from .factory import create_embedding_provider

        emb_cfg = self.config.embedding
        try:
            self._embedder = create_embedding_provider(
                provider=emb_cfg.provider, api_key=emb_cfg.api_key
            )
        except LLMError as e:
            logger.info("memory.embeddings_unavailable", reason=str(e))
            self._embedder_failed = True
        return self._embedder

    def is_embedding_ready(self) -> bool:
        if not self.config.embedding.enabled:
            return False
        embedder = self._get_embedder()
        return embedder is not None and embedder.supports_embeddings

    def resolve_embedding_model(self, settings: EngineConfig | None = None) -> str:
        configured = (settings or self.config).embedding.model
        if configured:
            return configured
        embedder = self._get_embedder() if self.config.embedding.enabled else None
        return (embedder.default_embedding_model if embedder else None) or DEFAULT_EMBEDDING_MODEL

    async def extract_memory_facts(
        self,
        settings: EngineConfig | None,
        author_name: str,
        message_content: str,
        max_facts: int = 4,
        trace: TraceContext | None = None,
    ) -> list[ExtractedFact]:
        max_tokens = (settings or self.config).llm.max_tokens
        try:
            extractor = self._get_extractor()
            facts = await asyncio.to_thread(
                extractor.extract, author_name, message_content, max_facts, max_tokens
            )
        except Exception as e:
            raise ExtractionFailed(str(e)) from e
        logger.debug(
            "memory.facts_extracted",
            count=len(facts),
            **(trace.as_log_context() if trace else {}),
        )
        return facts

    async def embed_text(
        self,
        settings: EngineConfig | None,
        text: str,
        trace: TraceContext | None = None,
    ) -> EmbeddingResult:
        if not self.is_embedding_ready():
            raise EmbeddingUnavailable("no embedding provider configured")
        model = self.resolve_embedding_model(settings)
        try:
            vector, used_model = await asyncio.to_thread(self._embed_with_retry, text, model)
        except Exception as e:
            raise EmbeddingUnavailable(str(e)) from e
        return EmbeddingResult(embedding=vector, model=used_model or model)

    def _embed_sync(self, text: str, model: str) -> tuple[list[float], str]:
        return self._get_embedder().embed(text, model=model)
