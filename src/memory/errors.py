"""Error taxonomy for the memory engine.

These never escape ``MemoryEngine.ingest_message`` or the ranking path; they
name the failure so it can be logged and counted at the boundary.
"""

import structlog

logger = structlog.get_logger()


class MemoryEngineError(Exception):
    """Base memory engine error."""


class ValidationRejected(MemoryEngineError):
    """Candidate text is ungrounded or instruction-like."""


class ExtractionFailed(MemoryEngineError):
    """The LLM collaborator failed during fact extraction."""


class EmbeddingUnavailable(MemoryEngineError):
    """No embedding collaborator is configured, or a call failed."""


class QueueOverflow(MemoryEngineError):
    """The ingest queue was full and the oldest job was dropped."""


class WorkerJobFailed(MemoryEngineError):
    """An unexpected exception escaped one ingest job."""


def log_memory_error(store, scope: str, error, metadata: dict | None = None) -> None:
    """Log a memory failure and mirror it to the store's action log.

    Never raises; a failing action log is only logged.
    """
    message = str(error)
    logger.warning(f"memory.{scope}", error=message, **(metadata or {}))
    if store is None:
        return
    try:
        store.log_action(kind="bot_error", content=f"memory_{scope}: {message}", metadata=metadata)
    except Exception as e:
        logger.error("memory.error_log_failed", scope=scope, error=str(e))
