"""Exception types for the hybrid memory system.

Only ``GenerationError`` after exhausted retries is ever visible to the end
user. Every other failure here is caught by the component that owns it and
degraded to a smaller but still usable context.
"""

from __future__ import annotations


class MemorySystemError(Exception):
    """Base exception for the memory system."""

    pass


class ConfigError(MemorySystemError):
    """Configuration could not be read or validated."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class UnsupportedModelError(MemorySystemError):
    """No tokenizer is known for the requested model."""

    def __init__(self, model_name: str, reason: str = ""):
        self.model_name = model_name
        detail = f": {reason}" if reason else ""
        super().__init__(f"Unsupported model for token counting: {model_name!r}{detail}")


class TransientExternalFailure(MemorySystemError):
    """An external call timed out or was rate limited; safe to retry."""

    def __init__(self, message: str, operation: str | None = None):
        self.operation = operation
        super().__init__(message)


class GenerationError(MemorySystemError):
    """The LLM generation collaborator failed."""

    def __init__(self, message: str, transient: bool = True):
        self.transient = transient
        super().__init__(message)


class EmbeddingError(MemorySystemError):
    """The embedding collaborator failed."""

    def __init__(self, message: str, transient: bool = True):
        self.transient = transient
        super().__init__(message)


class StorageError(MemorySystemError):
    """The persistence backend is unreachable or rejected an operation."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class SessionNotFoundError(MemorySystemError):
    """No live session is registered under the given id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


def is_transient(error: BaseException) -> bool:
    """Return True when ``error`` should be retried."""
    if isinstance(error, TransientExternalFailure):
        return True
    return bool(getattr(error, "transient", False))
