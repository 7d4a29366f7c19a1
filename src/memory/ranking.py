"""Hybrid fact ranking: lexical + semantic + recency + confidence + channel.

Semantic scores come from stored fact vectors compared against a cached
query embedding. When no embedding is available the weights shift onto the
lexical signal and the relevance gate tightens.
"""

import asyncio
from contextlib import nullcontext
from datetime import datetime, timezone

import structlog

from .embedding_cache import QueryEmbeddingCache
from .grounding import clamp01, extract_stable_tokens, normalize_highlight_text
from .models import MemoryFact, ScoredFact, TraceContext
from .vectors import VectorBackfill

logger = structlog.get_logger()

RECENCY_HALF_LIFE_DAYS = 45.0
MAX_QUERY_TOKENS = 32
MAX_FACT_TOKENS = 96

SEMANTIC_WEIGHTS = {"semantic": 0.50, "lexical": 0.28, "confidence": 0.10, "recency": 0.07, "channel": 0.05}
LEXICAL_WEIGHTS = {"semantic": 0.0, "lexical": 0.75, "confidence": 0.10, "recency": 0.10, "channel": 0.05}


def lexical_score(fact: MemoryFact, query_tokens: list[str], query_compact: str) -> float:
    combined = f"{normalize_highlight_text(fact.fact)} {normalize_highlight_text(fact.evidence_text)}".strip()
    if not combined:
        return 0.0
    if query_compact and query_compact in combined:
        return 1.0
    if not query_tokens:
        return 0.0

    fact_tokens = set(extract_stable_tokens(combined, MAX_FACT_TOKENS))
    overlap = sum(1 for token in query_tokens if token in fact_tokens)
    return min(1.0, overlap / max(1, len(query_tokens)))


def recency_score(created_at: datetime | None, now: datetime | None = None) -> float:
    if created_at is None:
        return 0.0
    now = now or datetime.now(timezone.utc)
    age_days = max(0.0, (now - created_at).total_seconds()) / 86400.0
    return 1.0 / (1.0 + age_days / RECENCY_HALF_LIFE_DAYS)


def channel_score(fact_channel_id, query_channel_id) -> float:
    query_channel = str(query_channel_id or "").strip()
    if not query_channel:
        return 0.0
    fact_channel = str(fact_channel_id or "").strip()
    if not fact_channel:
        return 0.25
    return 1.0 if fact_channel == query_channel else 0.0


def passes_relevance_gate(scored: ScoredFact, semantic_available: bool) -> bool:
    lexical = clamp01(scored.lexical_score, 0.0)
    semantic = clamp01(scored.semantic_score, 0.0)
    combined = clamp01(scored.score, 0.0)

    if semantic_available:
        if semantic >= 0.20 or lexical >= 0.22:
            return True
        return combined >= 0.52 and (semantic >= 0.08 or lexical >= 0.10)
    return lexical >= 0.24 or combined >= 0.62


def _sort_key(scored: ScoredFact):
    created = scored.fact.created_at
    return (-scored.score, -(created.timestamp() if created else 0.0))


class HybridRanker:
    """Scores candidate facts against a query."""

    def __init__(self, llm, store, cache: QueryEmbeddingCache, backfill: VectorBackfill, metrics=None):
        self.llm = llm
        self.store = store
        self.cache = cache
        self.backfill = backfill
        self._metrics = metrics

    async def semantic_scores(
        self,
        candidates: list[MemoryFact],
        query_text: str,
        settings=None,
        trace: TraceContext | None = None,
    ) -> dict[int, float]:
        """Map of fact id -> cosine score, positive scores only.

        An empty map means the semantic signal is unavailable for this query.
        """
        if not self.llm.is_embedding_ready():
            return {}
        query = str(query_text or "").strip()
        if len(query) < 3:
            return {}

        query_embedding = await self.cache.get_or_compute(query, settings, trace)
        if query_embedding is None or not query_embedding.embedding or not query_embedding.model:
            return {}

        fact_ids = [f.id for f in candidates if isinstance(f.id, int) and f.id > 0]
        if not fact_ids:
            return {}

        score_map: dict[int, float] = {}
        seen: set[int] = set()

        def collect(ids):
            rows = self.store.get_memory_fact_vector_native_scores(
                ids, query_embedding.model, query_embedding.embedding
            )
            for row in rows or []:
                fact_id = row.get("fact_id")
                if not isinstance(fact_id, int) or fact_id <= 0:
                    continue
                seen.add(fact_id)
                score = row.get("score")
                if isinstance(score, (int, float)) and score > 0:
                    score_map[fact_id] = float(score)

        try:
            await asyncio.to_thread(collect, fact_ids)
            unresolved = {i for i in fact_ids if i not in seen}
            if unresolved:
                backfilled = await self.backfill.backfill(
                    candidates, unresolved, query_embedding.model, settings, trace
                )
                if backfilled:
                    await asyncio.to_thread(collect, backfilled)
        except Exception as e:
            logger.warning(
                "memory.semantic_scoring_failed",
                error=str(e),
                **(trace.as_log_context() if trace else {}),
            )
        return score_map

    async def rank(
        self,
        candidates: list[MemoryFact],
        query_text: str,
        channel_id: str | None = None,
        require_gate: bool = False,
        settings=None,
        trace: TraceContext | None = None,
    ) -> list[ScoredFact]:
        """Score, sort and gate candidates.

        With ``require_gate`` an all-filtered result is empty; otherwise the
        full sorted list is returned in that case.
        """
        if not candidates:
            return []
        query = str(query_text or "").strip()
        query_tokens = extract_stable_tokens(query, MAX_QUERY_TOKENS)
        query_compact = normalize_highlight_text(query)
        query_channel = str(channel_id or "").strip()

        semantic = await self.semantic_scores(candidates, query, settings, trace)
        semantic_available = bool(semantic)
        weights = SEMANTIC_WEIGHTS if semantic_available else LEXICAL_WEIGHTS
        now = datetime.now(timezone.utc)

        timer = self._metrics.timer("rank") if self._metrics is not None else nullcontext()
        with timer:
            scored = []
            for fact in candidates:
                signals = {
                    "semantic": semantic.get(fact.id, 0.0),
                    "lexical": lexical_score(fact, query_tokens, query_compact),
                    "confidence": clamp01(fact.confidence, 0.5),
                    "recency": recency_score(fact.created_at, now),
                    "channel": channel_score(fact.channel_id, query_channel),
                }
                combined = sum(weights[name] * value for name, value in signals.items())
                scored.append(
                    ScoredFact(
                        fact=fact,
                        score=round(clamp01(combined, 0.0), 6),
                        semantic_score=round(clamp01(signals["semantic"], 0.0), 6),
                        lexical_score=round(signals["lexical"], 6),
                        recency_score=signals["recency"],
                        confidence_score=signals["confidence"],
                        channel_score=signals["channel"],
                    )
                )
            scored.sort(key=_sort_key)

        if not query_tokens and not semantic_available:
            return scored

        gated = [s for s in scored if passes_relevance_gate(s, semantic_available)]
        if gated:
            return gated
        if require_gate:
            logger.debug("memory.relevance_gate_empty", candidates=len(scored))
            return []
        return scored
