"""Lazy fact-vector creation, bounded per query."""

import asyncio

import structlog

from .grounding import sanitize_inline
from .models import MemoryFact, TraceContext

logger = structlog.get_logger()


def build_fact_embedding_payload(fact: MemoryFact) -> str:
    """Text embedded for a stored fact: type, fact and evidence lines."""
    text = sanitize_inline(fact.fact, 220)
    if not text:
        return ""
    evidence = sanitize_inline(fact.evidence_text, 180)
    fact_type = sanitize_inline(fact.fact_type, 40)

    lines = []
    if fact_type:
        lines.append(f"type: {fact_type}")
    lines.append(f"fact: {text}")
    if evidence:
        lines.append(f"evidence: {evidence}")
    return "\n".join(lines)


class VectorBackfill:
    def __init__(self, llm, store, max_per_query: int = 8, metrics=None):
        self.llm = llm
        self.store = store
        self.max_per_query = max(0, int(max_per_query))
        self._metrics = metrics

    async def ensure_fact_vector(
        self,
        fact: MemoryFact,
        model: str = "",
        settings=None,
        trace: TraceContext | None = None,
    ) -> list[float] | None:
        """Return the stored vector for ``fact``, embedding it first if missing."""
        if fact is None or not isinstance(fact.id, int) or fact.id <= 0:
            return None
        trace = trace or TraceContext()
        try:
            resolved_model = str(model or self.llm.resolve_embedding_model(settings) or "").strip()
            if not resolved_model:
                return None

            existing = await asyncio.to_thread(
                self.store.get_memory_fact_vector_native, fact.id, resolved_model
            )
            if existing:
                return existing

            payload = build_fact_embedding_payload(fact)
            if not payload:
                return None
            result = await self.llm.embed_text(settings, payload, trace)
            if result is None or not result.embedding:
                return None
            await asyncio.to_thread(
                self.store.upsert_memory_fact_vector_native,
                fact.id,
                result.model or resolved_model,
                result.embedding,
            )
        except Exception as e:
            logger.warning(
                "memory.fact_vector_failed", fact_id=fact.id, error=str(e), **trace.as_log_context()
            )
            return None

        if self._metrics is not None:
            self._metrics.counter("vectors.backfilled")
        return list(result.embedding)

    async def backfill(
        self,
        candidates: list[MemoryFact],
        unresolved_ids: set[int],
        model: str,
        settings=None,
        trace: TraceContext | None = None,
    ) -> list[int]:
        """Embed unresolved candidates in candidate order, stopping after
        ``max_per_query`` successes.

        Returns the ids that now have a vector under ``model``.
        """
        if not unresolved_ids or not self.max_per_query:
            return []
        trace = (trace or TraceContext()).with_source("memory_fact")

        resolved = []
        for fact in candidates:
            if len(resolved) >= self.max_per_query:
                break
            if fact.id not in unresolved_ids:
                continue
            vector = await self.ensure_fact_vector(fact, model, settings, trace)
            if vector:
                resolved.append(fact.id)
        if resolved:
            logger.debug("memory.vectors_backfilled", count=len(resolved), model=model)
        return resolved
