"""Conversation memory manager: the entry point for chat handling code."""

import logging
import random
import time
from typing import Optional, List

from config.settings import Settings
from llm.factory import create_llm_client, LLMProvider
from .base_store import MessageStore, PacketArchive
from .compactor import Compactor
from .context_assembler import assemble, PACKET_LOOKAHEAD
from .errors import (
    ConcurrencyConflict,
    InvariantViolation,
    PacketOverlapError,
    StorageError,
)
from .models import (
    ChatMessage,
    ConversationContext,
    ConversationMemory,
    ConversationOverview,
    utcnow,
)
from .sqlite_store import SQLiteMemoryStore
from .summarizer import LLMSummarizer

logger = logging.getLogger(__name__)


class ConversationMemoryManager:
    """
    Rolling memory for every (user, coach) conversation.

    Each append is an optimistic read-modify-write: the state is loaded,
    mutated and saved with a version check. A lost race restarts the whole
    append from a fresh load.
    """

    MAX_APPEND_ATTEMPTS = 5
    RETRY_BACKOFF = 0.02  # seconds, scaled by attempt number

    def __init__(
        self,
        store: MessageStore,
        archive: PacketArchive,
        compactor: Compactor,
        max_append_attempts: int = MAX_APPEND_ATTEMPTS,
        packet_lookahead: int = PACKET_LOOKAHEAD
    ):
        """
        Initialize memory manager.

        Args:
            store: Message store holding conversation state
            archive: Packet archive holding summaries
            compactor: Compactor keeping windows bounded
            max_append_attempts: Attempts before a contended write gives up
            packet_lookahead: Default number of packets included in a context
        """
        self.store = store
        self.archive = archive
        self.compactor = compactor
        self.max_append_attempts = max(1, max_append_attempts)
        self.packet_lookahead = packet_lookahead

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ConversationMemoryManager":
        """Wire a manager backed by SQLite and the configured LLM provider."""
        settings = settings or Settings()

        api_key = settings.get_llm_api_key()
        if not api_key:
            logger.warning(
                f"No API key for {settings.llm_provider}. "
                "Compaction will fall back to truncation."
            )
        llm_client = create_llm_client(
            provider=LLMProvider(settings.llm_provider),
            api_key=api_key,
            model=settings.llm_model,
            timeout=settings.summary_timeout
        )

        store = SQLiteMemoryStore(db_path=settings.db_path)
        summarizer = LLMSummarizer(
            llm_client,
            max_words=settings.summary_max_words,
            language=settings.summary_language
        )
        compactor = Compactor(
            archive=store,
            summarizer=summarizer,
            window_limit=settings.window_limit,
            keep_recent=settings.keep_recent,
            summary_timeout=settings.summary_timeout,
            min_summary_chars=settings.min_summary_chars
        )
        return cls(
            store=store,
            archive=store,
            compactor=compactor,
            max_append_attempts=settings.max_append_attempts,
            packet_lookahead=settings.packet_lookahead
        )

    def append_message(
        self,
        user_id: str,
        coach_id: str,
        message: ChatMessage
    ) -> ConversationMemory:
        """
        Append a message, compacting the window if it overflows.

        Args:
            user_id: User ID
            coach_id: Coach ID
            message: Message to append

        Returns:
            The persisted conversation state

        Raises:
            StorageError: If the state could not be persisted
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_append_attempts + 1):
            try:
                return self._append_once(user_id, coach_id, message)
            except (ConcurrencyConflict, PacketOverlapError) as e:
                # Another request touched this conversation in between
                last_error = e
                logger.warning(
                    f"Concurrent update on {user_id}/{coach_id}, "
                    f"retrying append ({attempt}/{self.max_append_attempts}): {e}"
                )
                self._backoff(attempt)
            except InvariantViolation as e:
                logger.error(f"Append aborted for {user_id}/{coach_id}: {e}")
                raise StorageError(f"Append aborted: {e}", e.conversation_id) from e

        raise StorageError(
            f"Append for {user_id}/{coach_id} failed after "
            f"{self.max_append_attempts} attempts: {last_error}"
        ) from last_error

    def _append_once(
        self,
        user_id: str,
        coach_id: str,
        message: ChatMessage
    ) -> ConversationMemory:
        memory = self.store.find(user_id, coach_id)
        if memory is None:
            memory = ConversationMemory(user_id=user_id, coach_id=coach_id)
            expected_version = None
            logger.info(f"Starting conversation memory {memory.conversation_id} for {user_id}/{coach_id}")
        else:
            expected_version = memory.version

        memory = memory.model_copy(update={
            "window": [*memory.window, message],
            "total_message_count": memory.total_message_count + 1,
            "updated_at": utcnow(),
        })

        if self.compactor.is_due(memory):
            memory = self.compactor.compact(memory).memory

        return self.store.save(memory, expected_version)

    def get_context(
        self,
        user_id: str,
        coach_id: str,
        packet_lookahead: Optional[int] = None
    ) -> ConversationContext:
        """
        Get the prompt context of a conversation. Read-only.

        Args:
            user_id: User ID
            coach_id: Coach ID
            packet_lookahead: Number of packet summaries to include

        Returns:
            ConversationContext, empty if the conversation does not exist
        """
        lookahead = self.packet_lookahead if packet_lookahead is None else packet_lookahead

        memory = self.store.find(user_id, coach_id)
        if memory is None:
            return assemble(None)

        # At least one packet, so a zero lookahead still tells whether any exist
        packets = self.archive.list_recent(memory.conversation_id, max(lookahead, 1))
        return assemble(memory, packets, lookahead)

    def clear(self, user_id: str, coach_id: str) -> None:
        """
        Delete all packets and reset the conversation, keeping its ID.

        The reset moves the conversation to a new generation, so a packet
        summarized from pre-clear messages by a concurrent append is refused.

        Args:
            user_id: User ID
            coach_id: Coach ID

        Raises:
            StorageError: If the reset could not be persisted
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_append_attempts + 1):
            memory = self.store.find(user_id, coach_id)
            if memory is None:
                return

            reset = memory.model_copy(update={
                "window": [],
                "total_message_count": 0,
                "rolling_summary": "",
                "generation": memory.generation + 1,
                "updated_at": utcnow(),
            })
            try:
                deleted = self.store.reset(reset, memory.version)
            except ConcurrencyConflict as e:
                last_error = e
                logger.warning(
                    f"Concurrent update while clearing {memory.conversation_id}, "
                    f"retrying ({attempt}/{self.max_append_attempts})"
                )
                self._backoff(attempt)
                continue

            logger.info(f"Cleared conversation {memory.conversation_id} ({deleted} packets deleted)")
            return

        raise StorageError(
            f"Clear for {user_id}/{coach_id} failed after "
            f"{self.max_append_attempts} attempts: {last_error}"
        ) from last_error

    def list_conversations(
        self,
        search: Optional[str] = None,
        limit: int = 50
    ) -> List[ConversationOverview]:
        """List conversations for monitoring, most recently updated first."""
        return self.store.list_conversations(search=search, limit=limit)

    def close(self):
        """Release the compactor's summarizer workers."""
        self.compactor.close()

    def _backoff(self, attempt: int):
        if self.RETRY_BACKOFF > 0:
            time.sleep(random.uniform(0, self.RETRY_BACKOFF * attempt))
