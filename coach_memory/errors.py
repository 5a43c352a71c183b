"""Error types for conversation memory."""

from typing import Optional


class CoachMemoryError(Exception):
    """Base class for all conversation memory errors."""

    def __init__(self, message: str, conversation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.conversation_id = conversation_id

    def __str__(self) -> str:
        if self.conversation_id:
            return f"{self.message} (conversation {self.conversation_id})"
        return self.message


class StorageError(CoachMemoryError):
    """A persistence read or write failed."""


class ConcurrencyConflict(StorageError):
    """A save lost a compare-and-swap race against another writer."""


class SummarizationFailure(CoachMemoryError):
    """The summarizer errored, timed out, or returned a degenerate result."""

    def __init__(
        self,
        message: str,
        conversation_id: Optional[str] = None,
        from_index: Optional[int] = None,
        to_index: Optional[int] = None
    ):
        super().__init__(message, conversation_id)
        self.from_index = from_index
        self.to_index = to_index


class InvariantViolation(CoachMemoryError):
    """An internal consistency check failed."""


class PacketOverlapError(InvariantViolation):
    """A packet append would overlap an already archived range."""
