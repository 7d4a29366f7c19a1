"""Data models for the durable memory engine."""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

LORE_SUBJECT = "__lore__"
SELF_SUBJECT = "__self__"


class FactType(str, Enum):
    PREFERENCE = "preference"
    PROFILE = "profile"
    RELATIONSHIP = "relationship"
    PROJECT = "project"
    LORE = "lore"
    SELF = "self"
    OTHER = "other"


@dataclass(frozen=True)
class TraceContext:
    """Where a call came from; carried into logs and collaborator calls."""

    guild_id: str | None = None
    channel_id: str | None = None
    user_id: str | None = None
    source: str | None = None

    def with_source(self, source: str) -> "TraceContext":
        return replace(self, source=source)

    def as_log_context(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v}


@dataclass(frozen=True)
class MemoryFact:
    id: int
    guild_id: str
    subject: str
    fact: str
    fact_type: str = FactType.OTHER.value
    channel_id: str | None = None
    evidence_text: str | None = None
    source_message_id: str | None = None
    confidence: float | None = 0.5
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ExtractedFact:
    """One validated row of LLM fact-extraction output."""

    fact: str
    type: FactType = FactType.OTHER
    confidence: float = 0.5
    evidence: str | None = None


@dataclass(frozen=True)
class EmbeddingResult:
    embedding: list[float]
    model: str

    def copy(self) -> "EmbeddingResult":
        return EmbeddingResult(embedding=list(self.embedding), model=self.model)


@dataclass
class IngestJob:
    message_id: str
    author_id: str
    author_name: str
    content: str
    future: asyncio.Future
    settings: Any = None
    trace: TraceContext = field(default_factory=TraceContext)


@dataclass(frozen=True)
class ScoredFact:
    """A candidate fact with its hybrid ranking signals attached."""

    fact: MemoryFact
    score: float
    semantic_score: float
    lexical_score: float
    recency_score: float = 0.0
    confidence_score: float = 0.5
    channel_score: float = 0.0


@dataclass(frozen=True)
class FactDTO:
    id: int
    created_at: datetime | None
    guild_id: str
    channel_id: str | None
    subject: str
    fact: str
    fact_type: str
    evidence_text: str | None
    source_message_id: str | None
    confidence: float | None
    score: float
    semantic_score: float
    lexical_score: float

    @classmethod
    def from_scored(cls, scored: ScoredFact) -> "FactDTO":
        row = scored.fact
        return cls(
            id=row.id,
            created_at=row.created_at,
            guild_id=row.guild_id,
            channel_id=row.channel_id,
            subject=row.subject,
            fact=row.fact,
            fact_type=row.fact_type,
            evidence_text=row.evidence_text,
            source_message_id=row.source_message_id,
            confidence=row.confidence,
            score=scored.score,
            semantic_score=scored.semantic_score,
            lexical_score=scored.lexical_score,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "guild_id": self.guild_id,
            "channel_id": self.channel_id,
            "subject": self.subject,
            "fact": self.fact,
            "fact_type": self.fact_type,
            "evidence_text": self.evidence_text,
            "source_message_id": self.source_message_id,
            "confidence": self.confidence,
            "score": self.score,
            "semantic_score": self.semantic_score,
            "lexical_score": self.lexical_score,
        }


@dataclass
class PromptMemorySlice:
    user_facts: list[FactDTO] = field(default_factory=list)
    relevant_facts: list[FactDTO] = field(default_factory=list)
    relevant_messages: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class DirectiveScope:
    subject: str
    prefix: str
    fact_type: FactType
    keep: int
    trace_source: str
