"""Persistence contracts for conversation memory."""

from abc import ABC, abstractmethod
from typing import Optional, List

from .models import ConversationMemory, ConversationOverview, MemoryPacket


class MessageStore(ABC):
    """Stores the live window and bookkeeping of each conversation."""

    @abstractmethod
    def load(self, conversation_id: str) -> Optional[ConversationMemory]:
        """
        Load a conversation by ID.

        Args:
            conversation_id: Conversation ID

        Returns:
            ConversationMemory or None if not found
        """
        pass

    @abstractmethod
    def find(self, user_id: str, coach_id: str) -> Optional[ConversationMemory]:
        """Load the conversation of a (user, coach) pair, if any."""
        pass

    @abstractmethod
    def save(
        self,
        memory: ConversationMemory,
        expected_version: Optional[int]
    ) -> ConversationMemory:
        """
        Persist a conversation with a compare-and-swap on its version.

        Args:
            memory: State to persist
            expected_version: Version read before mutating, or None to insert

        Returns:
            Stored copy carrying the new version

        Raises:
            ConcurrencyConflict: If another writer saved first
            StorageError: If the backend fails
        """
        pass

    @abstractmethod
    def reset(self, memory: ConversationMemory, expected_version: int) -> int:
        """
        Persist a reset state and delete the conversation's packets atomically.

        Either both happen or neither does.

        Args:
            memory: Reset state to persist
            expected_version: Version read before resetting

        Returns:
            Number of deleted packets

        Raises:
            ConcurrencyConflict: If another writer saved first
            StorageError: If the backend fails
        """
        pass

    @abstractmethod
    def list_conversations(
        self,
        search: Optional[str] = None,
        limit: int = 50
    ) -> List[ConversationOverview]:
        """List conversations, most recently updated first."""
        pass


class PacketArchive(ABC):
    """Append-only archive of summary packets."""

    @abstractmethod
    def append(self, packet: MemoryPacket) -> MemoryPacket:
        """
        Archive a packet.

        Raises:
            PacketOverlapError: If the range overlaps an archived packet
            ConcurrencyConflict: If the conversation was cleared since the packet was made
            StorageError: If the backend fails
        """
        pass

    @abstractmethod
    def list_recent(self, conversation_id: str, limit: int) -> List[MemoryPacket]:
        """Most recent packets, newest first."""
        pass

    @abstractmethod
    def list_all(self, conversation_id: str) -> List[MemoryPacket]:
        """All packets ordered by range."""
        pass

    def latest(self, conversation_id: str) -> Optional[MemoryPacket]:
        """Packet covering the highest message range, if any."""
        packets = self.list_recent(conversation_id, limit=1)
        return packets[0] if packets else None
