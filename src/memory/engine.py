"""Memory engine facade: ingestion, hybrid retrieval, directives and snapshot."""

import asyncio
from pathlib import Path
from typing import Callable

import structlog

from cli.config_models import EngineConfig
from observability import Metrics

from .embedding_cache import QueryEmbeddingCache
from .errors import ValidationRejected, log_memory_error
from .grounding import (
    check_fact_candidate,
    clamp_int,
    normalize_evidence_text,
    normalize_memory_line_input,
    normalize_query_text,
)
from .journal import DailyJournal
from .models import (
    LORE_SUBJECT,
    SELF_SUBJECT,
    DirectiveScope,
    FactDTO,
    FactType,
    MemoryFact,
    PromptMemorySlice,
    TraceContext,
)
from .pipeline import IngestionPipeline
from .ranking import HybridRanker
from .snapshot import MemorySnapshot
from .vectors import VectorBackfill

logger = structlog.get_logger()

MAX_RESULT_LIMIT = 24
SELECT_CANDIDATE_MULTIPLIER = 6
SELECT_MAX_CANDIDATES = 90
SEARCH_CANDIDATE_MULTIPLIER = 12
SEARCH_MAX_CANDIDATES = 180
USER_FACT_LIMIT = 8
RELEVANT_MESSAGE_LIMIT = 8


def resolve_directive_scope(scope: str | None, keep: int = 120) -> DirectiveScope:
    """``self`` targets the bot's own memory; anything else is shared lore."""
    if str(scope or "lore").strip().lower() == "self":
        return DirectiveScope(
            subject=SELF_SUBJECT,
            prefix="Self memory",
            fact_type=FactType.SELF,
            keep=keep,
            trace_source="memory_self_ingest",
        )
    return DirectiveScope(
        subject=LORE_SUBJECT,
        prefix="Memory line",
        fact_type=FactType.LORE,
        keep=keep,
        trace_source="memory_lore_ingest",
    )


def _unique_ids(values) -> list[str]:
    return list(dict.fromkeys(str(v or "").strip() for v in values or [] if str(v or "").strip()))


class MemoryEngine:
    """Owns all mutable memory state for one process: queue, cache, metrics.

    Args:
        store: FactStore (or compatible) for facts, vectors and message history.
        llm: MemoryLLM (or compatible) for extraction and embeddings.
        memory_dir: Directory holding daily journal files and MEMORY.md.
        config: Engine config; defaults apply when omitted.
    """

    def __init__(
        self,
        store,
        llm,
        memory_dir: str | Path,
        config: EngineConfig | None = None,
        metrics: Metrics | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.store = store
        self.llm = llm
        self.config = config or EngineConfig()
        self.metrics = metrics or Metrics()
        mem_cfg = self.config.memory

        self.journal = DailyJournal(memory_dir)
        self.snapshot = MemorySnapshot(store, self.journal)
        cache_kwargs = {"clock": clock} if clock is not None else {}
        self.cache = QueryEmbeddingCache(
            llm,
            ttl_seconds=mem_cfg.query_cache_ttl_seconds,
            max_entries=mem_cfg.query_cache_max_entries,
            metrics=self.metrics,
            **cache_kwargs,
        )
        self.vectors = VectorBackfill(
            llm, store, max_per_query=mem_cfg.max_vector_backfill_per_query, metrics=self.metrics
        )
        self.ranker = HybridRanker(llm, store, self.cache, self.vectors, metrics=self.metrics)
        self.pipeline = IngestionPipeline(
            store,
            llm,
            self.journal,
            max_queue=mem_cfg.max_ingest_queue,
            max_facts_per_message=mem_cfg.max_facts_per_message,
            subject_keep=mem_cfg.subject_keep,
            on_fact_inserted=self._schedule_fact_vector,
            on_refresh=self.schedule_refresh,
            metrics=self.metrics,
        )

        self._refresh_pending = False
        self._background: set[asyncio.Task] = set()

    # -- ingestion -----------------------------------------------------------

    def ingest_message(
        self,
        message_id: str,
        author_id: str,
        author_name: str,
        content: str,
        settings: EngineConfig | None = None,
        trace: TraceContext | None = None,
    ) -> asyncio.Future:
        return self.pipeline.ingest_message(
            message_id, author_id, author_name, content, settings or self.config, trace
        )

    async def drain_ingest_queue(self, timeout: float = 5.0) -> bool:
        return await self.pipeline.drain(timeout)

    # -- retrieval -----------------------------------------------------------

    async def build_prompt_memory_slice(
        self,
        user_id: str | None,
        guild_id: str | None,
        channel_id: str | None,
        query_text: str,
        settings: EngineConfig | None = None,
        trace: TraceContext | None = None,
    ) -> PromptMemorySlice:
        guild = str(guild_id or "").strip()
        if not guild:
            return PromptMemorySlice()

        user_facts = await self.select_hybrid_facts(
            [user_id], guild, channel_id, query_text, settings, trace, limit=USER_FACT_LIMIT
        )
        relevant_facts = await self.select_hybrid_facts(
            [user_id, SELF_SUBJECT, LORE_SUBJECT],
            guild,
            channel_id,
            query_text,
            settings,
            trace,
            limit=self.config.memory.hybrid_fact_limit,
        )
        relevant_messages = []
        if channel_id:
            relevant_messages = await asyncio.to_thread(
                self.store.search_relevant_messages, channel_id, query_text, RELEVANT_MESSAGE_LIMIT
            )
        return PromptMemorySlice(
            user_facts=user_facts,
            relevant_facts=relevant_facts,
            relevant_messages=relevant_messages,
        )

    async def select_hybrid_facts(
        self,
        subjects: list[str | None],
        guild_id: str | None,
        channel_id: str | None,
        query_text: str,
        settings: EngineConfig | None = None,
        trace: TraceContext | None = None,
        limit: int = 10,
    ) -> list[FactDTO]:
        """Rank facts for the given subjects; falls back to the ungated order."""
        normalized_subjects = _unique_ids(subjects)
        guild = str(guild_id or "").strip()
        if not normalized_subjects or not guild:
            return []

        bounded = clamp_int(limit, 1, MAX_RESULT_LIMIT)
        candidate_limit = min(SELECT_MAX_CANDIDATES, max(bounded * SELECT_CANDIDATE_MULTIPLIER, bounded))
        candidates = await asyncio.to_thread(
            self.store.get_facts_for_subjects, normalized_subjects, candidate_limit, guild
        )
        if not candidates:
            return []

        ranked = await self.ranker.rank(
            candidates, query_text, channel_id, require_gate=False, settings=settings, trace=trace
        )
        return [FactDTO.from_scored(s) for s in ranked[:bounded]]

    async def search_durable_facts(
        self,
        guild_id: str | None,
        channel_id: str | None,
        query_text: str,
        settings: EngineConfig | None = None,
        trace: TraceContext | None = None,
        limit: int = 10,
    ) -> list[FactDTO]:
        """Scope-wide search; returns nothing when no fact passes the relevance gate."""
        guild = str(guild_id or "").strip()
        if not guild:
            return []

        bounded = clamp_int(limit, 1, MAX_RESULT_LIMIT)
        candidate_limit = min(SEARCH_MAX_CANDIDATES, max(bounded * SEARCH_CANDIDATE_MULTIPLIER, bounded))
        candidates = await asyncio.to_thread(self.store.get_facts_for_scope, guild, candidate_limit)
        if not candidates:
            return []

        ranked = await self.ranker.rank(
            candidates, query_text, channel_id, require_gate=True, settings=settings, trace=trace
        )
        return [FactDTO.from_scored(s) for s in ranked[:bounded]]

    # -- directives ----------------------------------------------------------

    async def remember_directive_line(
        self,
        line: str,
        source_message_id: str | None,
        user_id: str | None,
        guild_id: str | None,
        channel_id: str | None = None,
        source_text: str = "",
        scope: str = "lore",
        settings: EngineConfig | None = None,
    ) -> bool:
        """Store an explicit "remember this" line as a lore or self fact."""
        guild = str(guild_id or "").strip()
        if not guild:
            return False

        scope_cfg = resolve_directive_scope(scope, keep=self.config.memory.directive_keep)
        cleaned = normalize_memory_line_input(line)
        if not cleaned:
            return False
        try:
            check_fact_candidate(cleaned, source_text)
        except ValidationRejected as e:
            self.metrics.counter("facts.rejected")
            logger.info("memory.directive_rejected", reason=str(e), scope=scope_cfg.subject)
            return False

        fact_text = f"{scope_cfg.prefix}: {cleaned}."
        inserted = await asyncio.to_thread(
            self.store.add_memory_fact,
            guild,
            scope_cfg.subject,
            fact_text,
            scope_cfg.fact_type.value,
            str(channel_id) if channel_id else None,
            normalize_evidence_text(source_text, source_text),
            source_message_id,
            self.config.memory.directive_confidence,
        )
        if not inserted:
            return False

        self.metrics.counter("facts.inserted")
        self.store.log_action(
            kind="memory_fact", user_id=user_id, message_id=source_message_id, content=fact_text
        )
        await asyncio.to_thread(
            self.store.archive_old_facts_for_subject, guild, scope_cfg.subject, scope_cfg.keep
        )

        fact = await asyncio.to_thread(
            self.store.get_memory_fact_by_subject_and_fact, guild, scope_cfg.subject, fact_text
        )
        if fact is not None:
            self._schedule_fact_vector(
                fact, settings, TraceContext(user_id=user_id, source=scope_cfg.trace_source)
            )
        self.schedule_refresh()
        return True

    # -- snapshot ------------------------------------------------------------

    def schedule_refresh(self):
        """Debounced snapshot refresh: at most one pending at a time."""
        if self._refresh_pending:
            return
        self._refresh_pending = True
        self._spawn(self._delayed_refresh())

    async def _delayed_refresh(self):
        try:
            await asyncio.sleep(self.config.memory.refresh_debounce_seconds)
            await self.refresh_memory_markdown()
        except Exception as e:
            log_memory_error(self.store, "curation_refresh", e)
        finally:
            self._refresh_pending = False

    async def refresh_memory_markdown(self) -> Path:
        return await asyncio.to_thread(self.snapshot.write)

    async def read_memory_markdown(self) -> str:
        return await asyncio.to_thread(self.snapshot.read)

    # -- background work -----------------------------------------------------

    def _schedule_fact_vector(self, fact: MemoryFact, settings, trace: TraceContext):
        if not self.llm.is_embedding_ready():
            return
        self._spawn(self.vectors.ensure_fact_vector(fact, "", settings, trace))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def close(self, timeout: float = 5.0):
        """Drain the queue and wait for background tasks to settle."""
        await self.drain_ingest_queue(timeout)
        if self._background:
            await asyncio.wait(set(self._background), timeout=timeout)


async def load_prompt_memory_slice(
    engine: MemoryEngine | None,
    settings: EngineConfig | None,
    user_id: str | None,
    guild_id: str | None,
    channel_id: str | None = None,
    query_text: str = "",
    trace: TraceContext | None = None,
    source: str = "prompt_memory_slice",
    on_error: Callable[[Exception, dict], None] | None = None,
) -> PromptMemorySlice:
    """Build a prompt slice, degrading to an empty slice instead of raising."""
    if engine is None or settings is None or not settings.memory.enabled:
        return PromptMemorySlice()
    guild = str(guild_id or "").strip()
    if not guild:
        return PromptMemorySlice()

    user = str(user_id or "").strip() or None
    channel = str(channel_id or "").strip() or None
    query = normalize_query_text(query_text)
    source = str(source or "").strip() or "prompt_memory_slice"

    try:
        return await engine.build_prompt_memory_slice(
            user,
            guild,
            channel,
            query,
            settings,
            (trace or TraceContext()).with_source(source),
        )
    except Exception as e:
        logger.warning("memory.prompt_slice_failed", error=str(e), guild_id=guild, source=source)
        if on_error is not None:
            on_error(e, {"guild_id": guild, "channel_id": channel, "user_id": user, "source": source})
        return PromptMemorySlice()
