"""Compaction of the live window into summary packets."""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from typing import Optional, List

from pydantic import BaseModel

from .base_store import PacketArchive
from .errors import InvariantViolation, SummarizationFailure
from .models import ChatMessage, ConversationMemory, MemoryPacket, utcnow
from .summarizer import Summarizer

logger = logging.getLogger(__name__)


class CompactionResult(BaseModel):
    """Outcome of one compaction attempt."""
    memory: ConversationMemory
    packet: Optional[MemoryPacket] = None
    truncated: bool = False  # True when the fallback dropped messages


class Compactor:
    """
    Keeps a conversation's window bounded.

    When the window grows past ``window_limit`` everything but the newest
    ``keep_recent`` messages is summarized into a packet. If summarization
    fails the window is truncated to the newest ``window_limit`` messages
    instead, and no packet is written.
    """

    # Configuration
    WINDOW_LIMIT = 10
    KEEP_RECENT = 2
    SUMMARY_TIMEOUT = 8.0  # seconds
    MIN_SUMMARY_CHARS = 40  # Shorter completions are treated as degenerate
    SUMMARY_WORKERS = 4

    def __init__(
        self,
        archive: PacketArchive,
        summarizer: Summarizer,
        window_limit: int = WINDOW_LIMIT,
        keep_recent: int = KEEP_RECENT,
        summary_timeout: float = SUMMARY_TIMEOUT,
        min_summary_chars: int = MIN_SUMMARY_CHARS,
        summary_workers: int = SUMMARY_WORKERS
    ):
        """
        Initialize compactor.

        Args:
            archive: Packet archive receiving new packets
            summarizer: Summarization capability
            window_limit: Maximum live messages after an append returns
            keep_recent: Newest messages left live by a compaction
            summary_timeout: Seconds to wait for the summarizer
            min_summary_chars: Minimum length of an acceptable summary
            summary_workers: Summaries that may run at once
        """
        if not 0 < keep_recent < window_limit:
            raise ValueError("keep_recent must be positive and below window_limit")

        self.archive = archive
        self.summarizer = summarizer
        self.window_limit = window_limit
        self.keep_recent = keep_recent
        self.summary_timeout = summary_timeout
        self.min_summary_chars = min_summary_chars

        # A summary abandoned at the deadline keeps its worker until the LLM
        # client times out, so the pool is shared and bounded
        self._executor = ThreadPoolExecutor(
            max_workers=summary_workers,
            thread_name_prefix="summarizer"
        )

    def is_due(self, memory: ConversationMemory) -> bool:
        """Check whether the window has outgrown its limit."""
        return len(memory.window) > self.window_limit

    def compact(self, memory: ConversationMemory) -> CompactionResult:
        """
        Compact the oldest part of the window if it is due.

        The packet, when one is produced, is already archived when this
        returns; the caller persists the returned memory afterwards.

        Args:
            memory: Current conversation state (not modified)

        Returns:
            CompactionResult with the updated state

        Raises:
            PacketOverlapError: If the archive refuses the packet
            ConcurrencyConflict: If the conversation was cleared meanwhile
            StorageError: If the archive write fails
            InvariantViolation: If the resulting window is still too large
        """
        if not self.is_due(memory):
            return CompactionResult(memory=memory)

        window = memory.window
        to_compact = window[:-self.keep_recent]
        keep = window[-self.keep_recent:]
        from_index = memory.first_window_index

        # An earlier append may have archived a packet but lost its window save
        latest = self.archive.latest(memory.conversation_id)
        if (
            latest
            and latest.generation == memory.generation
            and latest.to_message_index >= from_index
        ):
            skip = min(len(to_compact), latest.to_message_index - from_index + 1)
            logger.info(
                f"Messages {from_index}-{from_index + skip - 1} of {memory.conversation_id} "
                f"are already archived, skipping them"
            )
            to_compact = to_compact[skip:]
            from_index += skip
            if not to_compact:
                updated = memory.model_copy(update={
                    "window": keep,
                    "rolling_summary": latest.summary_text,
                    "updated_at": utcnow(),
                })
                return self._checked(CompactionResult(memory=updated))

        to_index = from_index + len(to_compact) - 1

        try:
            summary = self._check_summary(self._summarize(to_compact))
        except SummarizationFailure as e:
            logger.warning(
                f"Summarization failed for {memory.conversation_id} "
                f"(messages {from_index}-{to_index}): {e}. Truncating window instead."
            )
            updated = memory.model_copy(update={
                "window": window[-self.window_limit:],
                "updated_at": utcnow(),
            })
            return self._checked(CompactionResult(memory=updated, truncated=True))

        packet = MemoryPacket(
            conversation_id=memory.conversation_id,
            from_message_index=from_index,
            to_message_index=to_index,
            message_count=len(to_compact),
            summary_text=summary,
            generation=memory.generation
        )
        # Packet must be durable before the window is saved
        self.archive.append(packet)

        updated = memory.model_copy(update={
            "window": keep,
            "rolling_summary": summary,
            "updated_at": utcnow(),
        })
        logger.info(
            f"Compacted messages {from_index}-{to_index} of {memory.conversation_id} "
            f"into a packet ({len(summary.split())} words)"
        )
        return self._checked(CompactionResult(memory=updated, packet=packet))

    def _summarize(self, messages: List[ChatMessage]) -> str:
        """Run the summarizer with a hard deadline."""
        try:
            future = self._executor.submit(self.summarizer.summarize, messages)
            return future.result(timeout=self.summary_timeout)
        except FuturesTimeoutError as e:
            future.cancel()
            raise SummarizationFailure(
                f"Summarizer timed out after {self.summary_timeout}s"
            ) from e
        except SummarizationFailure:
            raise
        except Exception as e:
            raise SummarizationFailure(f"Summarizer error: {e}") from e

    def close(self):
        """Release summarizer workers. Later compactions fall back to truncation."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _check_summary(self, summary: Optional[str]) -> str:
        if not isinstance(summary, str) or not summary.strip():
            raise SummarizationFailure("Summarizer returned no text")
        summary = summary.strip()
        if len(summary) < self.min_summary_chars:
            raise SummarizationFailure(
                f"Summary too short ({len(summary)} chars), treating as degenerate"
            )
        return summary

    def _checked(self, result: CompactionResult) -> CompactionResult:
        if len(result.memory.window) > self.window_limit:
            raise InvariantViolation(
                f"Window holds {len(result.memory.window)} messages after compaction",
                result.memory.conversation_id
            )
        return result
