"""Base LLM provider abstraction."""

from abc import ABC, abstractmethod


class LLMError(Exception):
    """Base LLM error."""


class LLMRateLimitError(LLMError):
    """Rate limit hit."""


class LLMAuthError(LLMError):
    """Authentication failure."""


class LLMProvider(ABC):
    """Abstract LLM provider interface.

    Providers are synchronous wrappers over vendor SDKs; async callers run
    them through ``asyncio.to_thread``.
    """

    provider_name: str = "base"
    default_embedding_model: str | None = None

    @abstractmethod
    def generate(
        self, messages: list[dict], system: str | None = None, max_tokens: int = 2000
    ) -> str:
        """Generate a response from messages.

        Args:
            messages: List of {"role": ..., "content": ...} dicts
            system: Optional system prompt
            max_tokens: Max response tokens

        Returns:
            Generated text
        """
        ...

    def embed(self, text: str, model: str | None = None) -> tuple[list[float], str]:
        """Embed text.

        Returns:
            (vector, model name actually used)
        """
        raise LLMError(f"{self.provider_name} does not support embeddings")

    @property
    def supports_embeddings(self) -> bool:
        return type(self).embed is not LLMProvider.embed
