"""Multi-provider LLM abstraction layer."""

from .base import LLMAuthError, LLMError, LLMProvider, LLMRateLimitError
from .factory import create_cheap_provider, create_embedding_provider, create_llm_provider

__all__ = [
    "LLMProvider",
    "create_llm_provider",
    "create_cheap_provider",
    "create_embedding_provider",
    "LLMError",
    "LLMRateLimitError",
    "LLMAuthError",
]
