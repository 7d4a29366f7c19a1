"""Ingestion pipeline: bounded queue -> journal -> extract -> ground -> store."""

import asyncio
from collections import deque
from typing import Callable

import structlog

from .errors import QueueOverflow, ValidationRejected, WorkerJobFailed, log_memory_error
from .grounding import (
    check_fact_candidate,
    clamp01,
    clean_daily_entry_content,
    normalize_evidence_text,
    normalize_stored_fact_text,
)
from .journal import DailyJournal
from .models import ExtractedFact, IngestJob, MemoryFact, TraceContext

logger = structlog.get_logger()

DRAIN_POLL_SECONDS = 0.025


class IngestionPipeline:
    """Single-consumer queue that turns chat messages into durable facts.

    ``ingest_message`` never blocks and never raises. Jobs run one at a time,
    in FIFO order, on one worker task. A message id is queued or active at
    most once; repeat submissions share the first job's future.
    """

    def __init__(
        self,
        store,
        llm,
        journal: DailyJournal,
        max_queue: int = 400,
        max_facts_per_message: int = 4,
        subject_keep: int = 80,
        on_fact_inserted: Callable[[MemoryFact, object, TraceContext], None] | None = None,
        on_refresh: Callable[[], None] | None = None,
        metrics=None,
    ):
        self.store = store
        self.llm = llm
        self.journal = journal
        self.max_queue = max(1, int(max_queue))
        self.max_facts_per_message = max_facts_per_message
        self.subject_keep = subject_keep
        self._on_fact_inserted = on_fact_inserted
        self._on_refresh = on_refresh
        self._metrics = metrics

        self._queue: deque[IngestJob] = deque()
        self._pending: dict[str, IngestJob] = {}
        self._active: IngestJob | None = None
        self._worker: asyncio.Task | None = None

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def is_idle(self) -> bool:
        return not self._queue and self._active is None

    def ingest_message(
        self,
        message_id: str,
        author_id: str,
        author_name: str,
        content: str,
        settings=None,
        trace: TraceContext | None = None,
    ) -> asyncio.Future:
        """Enqueue a message; the future resolves True once processed, False if dropped or failed."""
        loop = asyncio.get_running_loop()
        trace = trace or TraceContext()
        normalized_id = str(message_id or "").strip()
        if not normalized_id:
            future = loop.create_future()
            future.set_result(False)
            return future

        existing = self._pending.get(normalized_id)
        if existing is not None:
            return existing.future

        self._record_voice_transcript(normalized_id, author_id, author_name, content, trace)

        if len(self._queue) >= self.max_queue:
            self._drop_oldest()

        job = IngestJob(
            message_id=normalized_id,
            author_id=str(author_id or "").strip(),
            author_name=str(author_name or "unknown"),
            content=str(content or ""),
            future=loop.create_future(),
            settings=settings,
            trace=trace,
        )
        self._queue.append(job)
        self._pending[normalized_id] = job
        self._count("ingest.enqueued")
        self._ensure_worker(loop)
        return job.future

    async def drain(self, timeout: float = 5.0) -> bool:
        """Wait until the queue is empty and no job is active. Returns idle state."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.1, float(timeout))
        while not self.is_idle and loop.time() < deadline:
            await asyncio.sleep(DRAIN_POLL_SECONDS)
        return self.is_idle

    def _drop_oldest(self):
        dropped = self._queue.popleft()
        self._pending.pop(dropped.message_id, None)
        if not dropped.future.done():
            dropped.future.set_result(False)
        self._count("ingest.dropped")
        log_memory_error(
            self.store,
            "ingest_queue_overflow",
            QueueOverflow("ingest queue full; dropping oldest message"),
            {"dropped_message_id": dropped.message_id},
        )

    def _ensure_worker(self, loop: asyncio.AbstractEventLoop):
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run_worker())

    async def _run_worker(self):
        while self._queue:
            job = self._queue.popleft()
            self._active = job
            try:
                await self.process_job(job)
                succeeded = True
                self._count("ingest.processed")
            except Exception as e:
                succeeded = False
                self._count("ingest.failed")
                log_memory_error(
                    self.store,
                    "ingest_worker",
                    WorkerJobFailed(str(e)),
                    {"message_id": job.message_id, "user_id": job.author_id},
                )
            finally:
                self._active = None

            if not job.future.done():
                job.future.set_result(succeeded)
            if self._pending.get(job.message_id) is job:
                del self._pending[job.message_id]

    async def process_job(self, job: IngestJob):
        """Journal the message, then extract, ground and store its facts."""
        cleaned = clean_daily_entry_content(job.content)
        if not cleaned:
            return
        trace = job.trace
        guild_id = str(trace.guild_id or "").strip()
        channel_id = str(trace.channel_id or "").strip()
        log_ctx = {"message_id": job.message_id, "user_id": job.author_id}

        wrote_journal = False
        try:
            await asyncio.to_thread(
                self.journal.append_entry,
                cleaned,
                job.author_id,
                job.author_name,
                job.message_id,
                guild_id,
                channel_id,
            )
            wrote_journal = True
        except Exception as e:
            log_memory_error(self.store, "daily_log_write", e, log_ctx)

        inserted = 0
        if len(cleaned) >= 4 and guild_id:
            try:
                extracted = await self.llm.extract_memory_facts(
                    job.settings, job.author_name, cleaned, self.max_facts_per_message, trace
                )
            except Exception as e:
                log_memory_error(self.store, "fact_extraction", e, log_ctx)
                extracted = []

            for row in extracted[: self.max_facts_per_message]:
                if await self._store_fact(job, row, cleaned, guild_id, channel_id):
                    inserted += 1

        if inserted and job.author_id:
            await asyncio.to_thread(
                self.store.archive_old_facts_for_subject, guild_id, job.author_id, self.subject_keep
            )

        if wrote_journal or inserted:
            if self._on_refresh is not None:
                self._on_refresh()

        logger.debug(
            "memory.ingest_processed",
            message_id=job.message_id,
            journal=wrote_journal,
            facts_inserted=inserted,
        )

    async def _store_fact(
        self, job: IngestJob, row: ExtractedFact, cleaned: str, guild_id: str, channel_id: str
    ) -> bool:
        fact_text = normalize_stored_fact_text(row.fact)
        if not fact_text:
            self._count("facts.rejected")
            return False
        try:
            check_fact_candidate(fact_text, cleaned)
        except ValidationRejected as e:
            self._count("facts.rejected")
            logger.debug("memory.fact_rejected", reason=str(e), message_id=job.message_id)
            return False

        inserted = await asyncio.to_thread(
            self.store.add_memory_fact,
            guild_id,
            job.author_id,
            fact_text,
            row.type.value,
            channel_id or None,
            normalize_evidence_text(row.evidence, cleaned),
            job.message_id,
            clamp01(row.confidence, 0.5),
        )
        if not inserted:
            return False

        self._count("facts.inserted")
        self.store.log_action(
            kind="memory_fact",
            user_id=job.author_id,
            message_id=job.message_id,
            content=fact_text,
        )
        if self._on_fact_inserted is not None:
            fact = await asyncio.to_thread(
                self.store.get_memory_fact_by_subject_and_fact, guild_id, job.author_id, fact_text
            )
            if fact is not None:
                self._on_fact_inserted(fact, job.settings, job.trace.with_source("memory_fact_ingest"))
        return True

    def _record_voice_transcript(self, message_id, author_id, author_name, content, trace: TraceContext):
        if not message_id.startswith("voice-"):
            return
        cleaned = clean_daily_entry_content(content)
        channel_id = str(trace.channel_id or "").strip()
        user_id = str(author_id or trace.user_id or "").strip()
        if not cleaned or not channel_id or not user_id:
            return
        try:
            self.store.record_message(
                message_id=message_id,
                channel_id=channel_id,
                author_id=user_id,
                author_name=" ".join(str(author_name or "").split()) or "unknown",
                content=cleaned,
                guild_id=str(trace.guild_id or "").strip() or None,
                is_bot=False,
            )
        except Exception as e:
            log_memory_error(
                self.store,
                "voice_history_record",
                e,
                {"message_id": message_id, "user_id": user_id, "channel_id": channel_id},
            )

    def _count(self, name: str):
        if self._metrics is not None:
            self._metrics.counter(name)
