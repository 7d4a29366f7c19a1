"""Pydantic configuration models for the durable memory engine."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

VALID_LLM_PROVIDERS = {"auto", "claude", "openai", "gemini"}
VALID_EMBEDDING_PROVIDERS = {"auto", "openai", "gemini"}


def _expand_env(value: Optional[str]) -> Optional[str]:
    if value and value.startswith("${") and value.endswith("}"):
        return os.getenv(value[2:-1], "")
    return value


class LLMConfig(BaseModel):
    """Fact-extraction LLM configuration."""

    provider: str = "auto"
    model: Optional[str] = None  # None = provider's cheap default
    api_key: Optional[str] = None
    max_tokens: int = 800

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v not in VALID_LLM_PROVIDERS:
            raise ValueError(f"Invalid LLM provider: {v}. Must be one of {VALID_LLM_PROVIDERS}")
        return v


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration."""

    enabled: bool = True
    provider: str = "auto"
    model: Optional[str] = None  # None = provider default
    api_key: Optional[str] = None

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v not in VALID_EMBEDDING_PROVIDERS:
            raise ValueError(
                f"Invalid embedding provider: {v}. Must be one of {VALID_EMBEDDING_PROVIDERS}"
            )
        return v


class PathsConfig(BaseModel):
    """File paths configuration."""

    memory_dir: Path = Path("~/.durable-memory/memory")
    db_path: Path = Path("~/.durable-memory/memory.db")
    log_file: Path = Path("~/.durable-memory/durable-memory.log")

    @model_validator(mode="after")
    def expand_paths(self):
        """Expand ~ in all paths."""
        self.memory_dir = self.memory_dir.expanduser()
        self.db_path = self.db_path.expanduser()
        self.log_file = self.log_file.expanduser()
        return self


class MemoryConfig(BaseModel):
    """Ingestion and retrieval tuning."""

    enabled: bool = True
    max_ingest_queue: int = Field(default=400, ge=1)
    max_facts_per_message: int = Field(default=4, ge=1, le=6)
    subject_keep: int = Field(default=80, ge=1, le=400)
    directive_keep: int = Field(default=120, ge=1, le=400)
    directive_confidence: float = Field(default=0.72, ge=0.0, le=1.0)
    refresh_debounce_seconds: float = Field(default=1.0, ge=0.0)
    query_cache_ttl_seconds: float = Field(default=60.0, gt=0.0)
    query_cache_max_entries: int = Field(default=256, ge=1)
    max_vector_backfill_per_query: int = Field(default=8, ge=0)
    hybrid_fact_limit: int = Field(default=10, ge=1, le=24)


class RetryConfig(BaseModel):
    """Retry/backoff configuration for provider calls."""

    max_attempts: int = 3
    min_wait: float = 2.0
    llm_max_wait: float = 30.0


VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file_level: str = "DEBUG"
    json_mode: bool = False

    @field_validator("level", "file_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v_upper = v.upper()
        if v_upper not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Must be one of {VALID_LOG_LEVELS}")
        return v_upper


class EngineConfig(BaseModel):
    """Main configuration model."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def expand_env_vars(self):
        """Expand ${VAR} patterns in API keys."""
        self.llm.api_key = _expand_env(self.llm.api_key)
        self.embedding.api_key = _expand_env(self.embedding.api_key)
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        """Create config from a parsed YAML dict."""
        data = dict(data or {})
        if isinstance(data.get("paths"), dict):
            data["paths"] = {
                key: Path(value) if isinstance(value, str) else value
                for key, value in data["paths"].items()
            }
        return cls.model_validate(data)

    def to_dict(self) -> dict:
        return self.model_dump(mode="python")
