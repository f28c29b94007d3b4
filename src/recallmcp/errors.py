"""Exception hierarchy shared across the memory engine.

Policy rejections and validation failures are returned as result objects;
only infrastructure and precondition failures are raised.
"""

from __future__ import annotations


class RecallError(Exception):
    """Base class for all memory-engine errors."""


class InvalidOwnerError(RecallError, ValueError):
    """Raised when an owner id is empty or blank."""


class StoreError(RecallError):
    """Raised when the persistent store cannot complete a request."""


class MemoryNotFoundError(StoreError):
    """Raised when a referenced memory does not exist."""

    def __init__(self, memory_id: str) -> None:
        super().__init__(f"Memory not found: {memory_id}")
        self.memory_id = memory_id


class VersionNotFoundError(StoreError):
    """Raised when a referenced memory version does not exist."""

    def __init__(self, memory_id: str, version_number: int | None = None) -> None:
        if version_number is None:
            message = f"No versions recorded for memory {memory_id}"
        else:
            message = f"Version {version_number} not found for memory {memory_id}"
        super().__init__(message)
        self.memory_id = memory_id
        self.version_number = version_number


class EmbeddingError(RecallError):
    """Raised by embedding adapters when a call fails."""


class DimensionMismatchError(RecallError, ValueError):
    """Raised when comparing vectors of different length."""


class LLMError(RecallError):
    """Raised by LLM adapters when a call fails."""
