"""Short-lived cache for query embeddings with in-flight request coalescing."""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

import structlog

from .grounding import normalize_query_text
from .models import EmbeddingResult, TraceContext

logger = structlog.get_logger()

MIN_QUERY_CHARS = 3


@dataclass
class _CacheEntry:
    embedding: list[float]
    model: str
    expires_at: float


class QueryEmbeddingCache:
    """TTL + size bounded map of ``(model, query) -> embedding``.

    Concurrent misses for the same key share one embedding call. Any failure
    yields ``None``; the caller then ranks without a semantic signal.
    """

    def __init__(
        self,
        llm,
        ttl_seconds: float = 60.0,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
        metrics=None,
    ):
        self.llm = llm
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._metrics = metrics
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._in_flight: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def make_key(self, model: str, normalized_query: str) -> str:
        model_key = str(model or "").strip().lower() or "default"
        return f"{model_key}\n{normalized_query}"

    async def get_or_compute(
        self, query_text: str, settings=None, trace: TraceContext | None = None
    ) -> EmbeddingResult | None:
        normalized = normalize_query_text(query_text)
        if len(normalized) < MIN_QUERY_CHARS:
            return None

        if not self.llm.is_embedding_ready():
            return None
        try:
            model = self.llm.resolve_embedding_model(settings)
        except Exception as e:
            logger.warning("memory.embedding_model_unresolved", error=str(e))
            return None
        key = self.make_key(model, normalized)

        cached = self._lookup(key)
        if cached is not None:
            self._count("embedding_cache.hit")
            return cached.copy()
        self._count("embedding_cache.miss")

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._compute(key, normalized, settings, trace))
            self._in_flight[key] = task
            task.add_done_callback(lambda done, k=key: self._release(k, done))

        result = await asyncio.shield(task)
        return result.copy() if result is not None else None

    def clear(self):
        self._entries.clear()

    def _lookup(self, key: str) -> EmbeddingResult | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return EmbeddingResult(embedding=entry.embedding, model=entry.model)

    async def _compute(self, key, normalized, settings, trace) -> EmbeddingResult | None:
        trace = (trace or TraceContext()).with_source("memory_query")
        try:
            result = await self.llm.embed_text(settings, normalized, trace)
        except Exception as e:
            logger.warning("memory.query_embedding_failed", error=str(e), **trace.as_log_context())
            return None

        if result is None or not result.embedding or not str(result.model or "").strip():
            return None
        self._store(key, result)
        return result

    def _store(self, key: str, result: EmbeddingResult):
        now = self._clock()
        self._entries.pop(key, None)
        self._entries[key] = _CacheEntry(
            embedding=list(result.embedding),
            model=result.model,
            expires_at=now + self.ttl_seconds,
        )
        self._prune(now)

    def _prune(self, now: float):
        for stale in [k for k, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[stale]
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def _release(self, key: str, task: asyncio.Task):
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    def _count(self, name: str):
        if self._metrics is not None:
            self._metrics.counter(name)
