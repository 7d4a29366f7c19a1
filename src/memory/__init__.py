"""Durable memory: grounded fact ingestion and hybrid retrieval."""

from .engine import MemoryEngine, load_prompt_memory_slice
from .errors import MemoryEngineError
from .models import FactDTO, FactType, MemoryFact, PromptMemorySlice, TraceContext
from .store import FactStore

__all__ = [
    "FactDTO",
    "FactStore",
    "FactType",
    "MemoryEngine",
    "MemoryEngineError",
    "MemoryFact",
    "PromptMemorySlice",
    "TraceContext",
    "load_prompt_memory_slice",
]
