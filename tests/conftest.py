"""Shared test fixtures for the durable memory engine."""

import asyncio
import math
import sys
import zlib
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cli.config_models import EngineConfig, MemoryConfig  # noqa: E402
from db import wal_connect  # noqa: E402
from memory.engine import MemoryEngine  # noqa: E402
from memory.grounding import extract_stable_tokens  # noqa: E402
from memory.models import EmbeddingResult, ExtractedFact, FactType  # noqa: E402
from memory.store import FactStore  # noqa: E402

EMBED_DIMS = 32


def bag_of_words_vector(text: str, dims: int = EMBED_DIMS) -> list[float]:
    """Deterministic unit vector from hashed tokens; shared words => positive cosine."""
    vector = [0.0] * dims
    for token in extract_stable_tokens(text, 128):
        vector[zlib.crc32(token.encode()) % dims] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if not norm:
        vector[0] = 1.0
        return vector
    return [v / norm for v in vector]


class FakeLLM:
    """Scripted stand-in for llm.client.MemoryLLM."""

    def __init__(self, facts=None, embeddings: bool = True, model: str = "fake-embed"):
        self.facts = facts if facts is not None else []
        self.embedding_ready = embeddings
        self.model = model
        self.extract_calls: list[str] = []
        self.embed_calls: list[str] = []
        self.extract_error: Exception | None = None
        self.embed_error: Exception | None = None
        self.embed_delay = 0.0

    def is_embedding_ready(self) -> bool:
        return self.embedding_ready

    def resolve_embedding_model(self, settings=None) -> str:
        return self.model

    async def extract_memory_facts(self, settings, author_name, message_content, max_facts=4, trace=None):
        self.extract_calls.append(message_content)
        if self.extract_error is not None:
            raise self.extract_error
        facts = self.facts(message_content) if callable(self.facts) else self.facts
        return list(facts)[:max_facts]

    async def embed_text(self, settings, text, trace=None):
        self.embed_calls.append(text)
        if self.embed_delay:
            await asyncio.sleep(self.embed_delay)
        if self.embed_error is not None:
            raise self.embed_error
        return EmbeddingResult(embedding=bag_of_words_vector(text), model=self.model)


def extracted(fact: str, evidence: str | None = None, fact_type=FactType.PREFERENCE, confidence=0.8):
    return ExtractedFact(fact=fact, type=fact_type, confidence=confidence, evidence=evidence)


@pytest.fixture
def store(tmp_path):
    return FactStore(tmp_path / "memory.db")


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def engine_config():
    return EngineConfig(memory=MemoryConfig(refresh_debounce_seconds=0.01))


@pytest.fixture
def engine(store, fake_llm, tmp_path, engine_config):
    return MemoryEngine(store, fake_llm, tmp_path / "memory", config=engine_config)


@pytest.fixture
def add_fact(store):
    """Insert a fact and return the stored row; ``created_at`` backdates it."""

    def _add(
        fact,
        subject="u1",
        guild_id="g1",
        channel_id=None,
        fact_type="preference",
        evidence=None,
        confidence=0.5,
        created_at=None,
    ):
        assert store.add_memory_fact(
            guild_id,
            subject,
            fact,
            fact_type=fact_type,
            channel_id=channel_id,
            evidence_text=evidence,
            source_message_id="m-seed",
            confidence=confidence,
        )
        if created_at is not None:
            with wal_connect(store.db_path) as conn:
                conn.execute(
                    "UPDATE memory_facts SET created_at = ? WHERE guild_id = ? AND subject = ? AND fact = ?",
                    (created_at.isoformat(timespec="milliseconds"), guild_id, subject, fact),
                )
        return store.get_memory_fact_by_subject_and_fact(guild_id, subject, fact)

    return _add
