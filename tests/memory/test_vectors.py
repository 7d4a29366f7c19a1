"""Tests for fact embedding payloads and bounded vector backfill."""

import pytest
from conftest import FakeLLM

from memory.models import MemoryFact, TraceContext
from memory.vectors import VectorBackfill, build_fact_embedding_payload
from observability import Metrics


def test_payload_lines():
    fact = MemoryFact(
        id=1, guild_id="g1", subject="u1", fact="Likes | pizza.", fact_type="preference", evidence_text="i like pizza"
    )
    assert build_fact_embedding_payload(fact) == "type: preference\nfact: Likes pizza.\nevidence: i like pizza"


def test_payload_without_evidence():
    fact = MemoryFact(id=1, guild_id="g1", subject="u1", fact="Likes pizza.", fact_type="")
    assert build_fact_embedding_payload(fact) == "fact: Likes pizza."


def test_payload_empty_fact():
    assert build_fact_embedding_payload(MemoryFact(id=1, guild_id="g1", subject="u1", fact="  ")) == ""


class TestEnsureFactVector:
    @pytest.mark.asyncio
    async def test_embeds_and_stores(self, store, add_fact):
        llm = FakeLLM()
        metrics = Metrics()
        backfill = VectorBackfill(llm, store, metrics=metrics)
        row = add_fact("likes pizza.")

        vector = await backfill.ensure_fact_vector(row)
        assert vector
        assert store.get_memory_fact_vector_native(row.id, "fake-embed") is not None
        assert metrics.count("vectors.backfilled") == 1

    @pytest.mark.asyncio
    async def test_existing_vector_not_reembedded(self, store, add_fact):
        llm = FakeLLM()
        backfill = VectorBackfill(llm, store)
        row = add_fact("likes pizza.")
        store.upsert_memory_fact_vector_native(row.id, "fake-embed", [1.0, 0.0])

        assert await backfill.ensure_fact_vector(row) == [1.0, 0.0]
        assert llm.embed_calls == []

    @pytest.mark.asyncio
    async def test_failure_returns_none(self, store, add_fact):
        llm = FakeLLM()
        llm.embed_error = RuntimeError("rate limited")
        backfill = VectorBackfill(llm, store)
        row = add_fact("likes pizza.")

        assert await backfill.ensure_fact_vector(row, trace=TraceContext(guild_id="g1")) is None
        assert store.get_stats()["vectors"] == 0

    @pytest.mark.asyncio
    async def test_invalid_fact(self, store):
        backfill = VectorBackfill(FakeLLM(), store)
        assert await backfill.ensure_fact_vector(None) is None
        assert await backfill.ensure_fact_vector(MemoryFact(id=0, guild_id="g1", subject="u1", fact="x")) is None


class TestBackfill:
    @pytest.mark.asyncio
    async def test_bounded_per_query(self, store, add_fact):
        llm = FakeLLM()
        backfill = VectorBackfill(llm, store, max_per_query=8)
        rows = [add_fact(f"fact number {i}.") for i in range(12)]

        resolved = await backfill.backfill(rows, {r.id for r in rows}, "fake-embed")
        assert resolved == [r.id for r in rows[:8]]
        assert store.get_stats()["vectors"] == 8

    @pytest.mark.asyncio
    async def test_skips_resolved_candidates(self, store, add_fact):
        backfill = VectorBackfill(FakeLLM(), store)
        rows = [add_fact(f"fact number {i}.") for i in range(3)]
        resolved = await backfill.backfill(rows, {rows[1].id}, "fake-embed")
        assert resolved == [rows[1].id]

    @pytest.mark.asyncio
    async def test_failures_do_not_count(self, store, add_fact):
        llm = FakeLLM()
        rows = [add_fact(f"fact number {i}.") for i in range(4)]
        failing = {rows[0].fact, rows[1].fact}
        original = llm.embed_text

        async def flaky(settings, text, trace=None):
            if any(f in text for f in failing):
                raise RuntimeError("boom")
            return await original(settings, text, trace)

        llm.embed_text = flaky
        backfill = VectorBackfill(llm, store, max_per_query=2)
        resolved = await backfill.backfill(rows, {r.id for r in rows}, "fake-embed")
        assert resolved == [rows[2].id, rows[3].id]

    @pytest.mark.asyncio
    async def test_trace_source(self, store, add_fact):
        llm = FakeLLM()
        seen = []
        original = llm.embed_text

        async def capture(settings, text, trace=None):
            seen.append(trace.source)
            return await original(settings, text, trace)

        llm.embed_text = capture
        row = add_fact("likes pizza.")
        await VectorBackfill(llm, store).backfill([row], {row.id}, "fake-embed", trace=TraceContext(source="x"))
        assert seen == ["memory_fact"]

    @pytest.mark.asyncio
    async def test_nothing_unresolved(self, store):
        assert await VectorBackfill(FakeLLM(), store).backfill([], set(), "fake-embed") == []
