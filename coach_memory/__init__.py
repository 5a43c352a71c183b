"""Rolling conversation memory for AI coaches."""

from .models import (
    Role,
    ChatMessage,
    ConversationMemory,
    MemoryPacket,
    ConversationContext,
    ConversationOverview,
)
from .errors import (
    CoachMemoryError,
    StorageError,
    ConcurrencyConflict,
    SummarizationFailure,
    InvariantViolation,
    PacketOverlapError,
)
from .base_store import MessageStore, PacketArchive
from .sqlite_store import SQLiteMemoryStore
from .summarizer import Summarizer, LLMSummarizer
from .compactor import Compactor, CompactionResult
from .context_assembler import assemble, render_context, format_time_ago
from .manager import ConversationMemoryManager

__all__ = [
    "Role",
    "ChatMessage",
    "ConversationMemory",
    "MemoryPacket",
    "ConversationContext",
    "ConversationOverview",
    "CoachMemoryError",
    "StorageError",
    "ConcurrencyConflict",
    "SummarizationFailure",
    "InvariantViolation",
    "PacketOverlapError",
    "MessageStore",
    "PacketArchive",
    "SQLiteMemoryStore",
    "Summarizer",
    "LLMSummarizer",
    "Compactor",
    "CompactionResult",
    "assemble",
    "render_context",
    "format_time_ago",
    "ConversationMemoryManager",
]
