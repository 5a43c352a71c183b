"""SQLite-based store for conversation memory and summary packets."""

import sqlite3
import json
import logging
from pathlib import Path
from datetime import datetime
from typing import Optional, List

from .base_store import MessageStore, PacketArchive
from .errors import ConcurrencyConflict, PacketOverlapError, StorageError
from .models import (
    ChatMessage,
    ConversationMemory,
    ConversationOverview,
    MemoryPacket,
)

logger = logging.getLogger(__name__)


class SQLiteMemoryStore(MessageStore, PacketArchive):
    """SQLite-backed message store and packet archive sharing one database."""

    def __init__(self, db_path: str = "data/coach_memory.db", timeout: float = 30.0):
        """
        Initialize SQLite memory store.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait on a locked database
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with row factory."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize database schema."""
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e

        try:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS conversation_memory (
                    conversation_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    coach_id TEXT NOT NULL,
                    recent_messages TEXT NOT NULL DEFAULT '[]',
                    total_message_count INTEGER NOT NULL DEFAULT 0,
                    rolling_summary TEXT NOT NULL DEFAULT '',
                    version INTEGER NOT NULL DEFAULT 1,
                    generation INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS memory_packets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT NOT NULL,
                    from_message_index INTEGER NOT NULL,
                    to_message_index INTEGER NOT NULL,
                    message_count INTEGER NOT NULL,
                    summary_text TEXT NOT NULL,
                    generation INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (conversation_id) REFERENCES conversation_memory(conversation_id),
                    CHECK (to_message_index >= from_message_index)
                )
            """)

            # One conversation per (user, coach) pair
            cursor.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_memory_participants "
                "ON conversation_memory(user_id, coach_id)"
            )
            cursor.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_packets_range "
                "ON memory_packets(conversation_id, from_message_index)"
            )

            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot initialize schema in {self.db_path}: {e}") from e
        finally:
            conn.close()

        logger.info(f"Database initialized at {self.db_path}")

    # ------------------------------------------------------------------
    # Message store
    # ------------------------------------------------------------------

    def load(self, conversation_id: str) -> Optional[ConversationMemory]:
        """
        Load a conversation by ID.

        Args:
            conversation_id: Conversation ID

        Returns:
            ConversationMemory or None if not found
        """
        return self._fetch_memory(
            "SELECT * FROM conversation_memory WHERE conversation_id = ?",
            (conversation_id,)
        )

    def find(self, user_id: str, coach_id: str) -> Optional[ConversationMemory]:
        """
        Load the conversation between a user and a coach.

        Args:
            user_id: User ID
            coach_id: Coach ID

        Returns:
            ConversationMemory or None if the pair never talked
        """
        return self._fetch_memory(
            "SELECT * FROM conversation_memory WHERE user_id = ? AND coach_id = ?",
            (user_id, coach_id)
        )

    def _fetch_memory(self, query: str, params: tuple) -> Optional[ConversationMemory]:
        conn = self._get_connection()
        try:
            row = conn.execute(query, params).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to load conversation memory: {e}") from e
        finally:
            conn.close()

        if not row:
            return None
        return self._row_to_memory(row)

    def save(
        self,
        memory: ConversationMemory,
        expected_version: Optional[int]
    ) -> ConversationMemory:
        """
        Persist conversation state with a compare-and-swap on version.

        Args:
            memory: State to persist
            expected_version: Version read before mutating, or None to insert

        Returns:
            Stored copy carrying the new version

        Raises:
            ConcurrencyConflict: If another writer saved first
            StorageError: If the write fails
        """
        window_json = json.dumps([m.model_dump(mode="json") for m in memory.window])
        new_version = 1 if expected_version is None else expected_version + 1

        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            if expected_version is None:
                cursor.execute(
                    """
                    INSERT INTO conversation_memory
                    (conversation_id, user_id, coach_id, recent_messages, total_message_count,
                     rolling_summary, version, generation, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        memory.conversation_id,
                        memory.user_id,
                        memory.coach_id,
                        window_json,
                        memory.total_message_count,
                        memory.rolling_summary,
                        new_version,
                        memory.generation,
                        memory.created_at.isoformat(),
                        memory.updated_at.isoformat(),
                    )
                )
            else:
                cursor.execute(
                    """
                    UPDATE conversation_memory
                    SET recent_messages = ?, total_message_count = ?, rolling_summary = ?,
                        version = ?, generation = ?, updated_at = ?
                    WHERE conversation_id = ? AND version = ?
                    """,
                    (
                        window_json,
                        memory.total_message_count,
                        memory.rolling_summary,
                        new_version,
                        memory.generation,
                        memory.updated_at.isoformat(),
                        memory.conversation_id,
                        expected_version,
                    )
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise ConcurrencyConflict(
                        f"Version {expected_version} is stale",
                        memory.conversation_id
                    )
            conn.commit()
        except sqlite3.IntegrityError as e:
            # Another request created the conversation first
            raise ConcurrencyConflict(
                f"Conversation already exists: {e}", memory.conversation_id
            ) from e
        except sqlite3.Error as e:
            logger.error(f"Error saving conversation memory {memory.conversation_id}: {e}")
            raise StorageError(f"Failed to save conversation memory: {e}", memory.conversation_id) from e
        finally:
            conn.close()

        return memory.model_copy(update={"version": new_version})

    def reset(self, memory: ConversationMemory, expected_version: int) -> int:
        """
        Replace conversation state and delete its packets in one transaction.

        Args:
            memory: Reset state to persist
            expected_version: Version read before resetting

        Returns:
            Number of deleted packets

        Raises:
            ConcurrencyConflict: If another writer saved first
            StorageError: If the write fails
        """
        window_json = json.dumps([m.model_dump(mode="json") for m in memory.window])

        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                """
                UPDATE conversation_memory
                SET recent_messages = ?, total_message_count = ?, rolling_summary = ?,
                    version = ?, generation = ?, updated_at = ?
                WHERE conversation_id = ? AND version = ?
                """,
                (
                    window_json,
                    memory.total_message_count,
                    memory.rolling_summary,
                    expected_version + 1,
                    memory.generation,
                    memory.updated_at.isoformat(),
                    memory.conversation_id,
                    expected_version,
                )
            )
            if cursor.rowcount == 0:
                conn.rollback()
                raise ConcurrencyConflict(
                    f"Version {expected_version} is stale",
                    memory.conversation_id
                )

            deleted = conn.execute(
                "DELETE FROM memory_packets WHERE conversation_id = ?",
                (memory.conversation_id,)
            ).rowcount
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Error resetting conversation memory {memory.conversation_id}: {e}")
            raise StorageError(f"Failed to reset conversation memory: {e}", memory.conversation_id) from e
        finally:
            conn.close()

        return deleted

    def list_conversations(
        self,
        search: Optional[str] = None,
        limit: int = 50
    ) -> List[ConversationOverview]:
        """
        List conversations, optionally filtered by a search term.

        Args:
            search: Matched against user ID, coach ID and rolling summary
            limit: Maximum number of conversations

        Returns:
            List of ConversationOverview rows, most recently updated first
        """
        conn = self._get_connection()
        try:
            if search:
                pattern = f"%{search}%"
                rows = conn.execute(
                    """
                    SELECT * FROM conversation_memory
                    WHERE user_id LIKE ? OR coach_id LIKE ? OR rolling_summary LIKE ?
                    ORDER BY updated_at DESC
                    LIMIT ?
                    """,
                    (pattern, pattern, pattern, limit)
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM conversation_memory
                    ORDER BY updated_at DESC
                    LIMIT ?
                    """,
                    (limit,)
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list conversations: {e}") from e
        finally:
            conn.close()

        overviews = []
        for row in rows:
            memory = self._row_to_memory(row)
            overviews.append(ConversationOverview(
                conversation_id=memory.conversation_id,
                user_id=memory.user_id,
                coach_id=memory.coach_id,
                total_message_count=memory.total_message_count,
                window_size=len(memory.window),
                rolling_summary=memory.rolling_summary,
                updated_at=memory.updated_at
            ))
        return overviews

    # ------------------------------------------------------------------
    # Packet archive
    # ------------------------------------------------------------------

    def append(self, packet: MemoryPacket) -> MemoryPacket:
        """
        Archive a summary packet.

        Args:
            packet: Packet to write

        Returns:
            The archived packet

        Raises:
            PacketOverlapError: If an archived packet overlaps its range
            ConcurrencyConflict: If the conversation was cleared since the packet was made
            StorageError: If the write fails
        """
        conn = self._get_connection()
        try:
            # Take the write lock before the overlap check
            conn.execute("BEGIN IMMEDIATE")
            owner = conn.execute(
                "SELECT generation FROM conversation_memory WHERE conversation_id = ?",
                (packet.conversation_id,)
            ).fetchone()
            if owner and owner["generation"] != packet.generation:
                conn.rollback()
                raise ConcurrencyConflict(
                    f"Conversation was cleared while compacting "
                    f"(generation {packet.generation}, now {owner['generation']})",
                    packet.conversation_id
                )

            clash = conn.execute(
                """
                SELECT from_message_index, to_message_index FROM memory_packets
                WHERE conversation_id = ?
                  AND from_message_index <= ? AND to_message_index >= ?
                LIMIT 1
                """,
                (packet.conversation_id, packet.to_message_index, packet.from_message_index)
            ).fetchone()
            if clash:
                conn.rollback()
                raise PacketOverlapError(
                    f"Range {packet.from_message_index}-{packet.to_message_index} overlaps "
                    f"archived packet {clash['from_message_index']}-{clash['to_message_index']}",
                    packet.conversation_id
                )

            conn.execute(
                """
                INSERT INTO memory_packets
                (conversation_id, from_message_index, to_message_index,
                 message_count, summary_text, generation, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    packet.conversation_id,
                    packet.from_message_index,
                    packet.to_message_index,
                    packet.message_count,
                    packet.summary_text,
                    packet.generation,
                    packet.created_at.isoformat(),
                )
            )
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Error saving memory packet for {packet.conversation_id}: {e}")
            raise StorageError(f"Failed to save memory packet: {e}", packet.conversation_id) from e
        finally:
            conn.close()

        return packet

    def list_recent(self, conversation_id: str, limit: int) -> List[MemoryPacket]:
        """
        Get most recent packets of a conversation.

        Args:
            conversation_id: Conversation ID
            limit: Maximum number of packets to return

        Returns:
            List of MemoryPacket objects, newest first
        """
        return self._fetch_packets(
            """
            SELECT * FROM memory_packets
            WHERE conversation_id = ?
            ORDER BY to_message_index DESC
            LIMIT ?
            """,
            (conversation_id, max(0, limit))
        )

    def list_all(self, conversation_id: str) -> List[MemoryPacket]:
        """All packets of a conversation in chronological order."""
        return self._fetch_packets(
            """
            SELECT * FROM memory_packets
            WHERE conversation_id = ?
            ORDER BY from_message_index
            """,
            (conversation_id,)
        )

    def _fetch_packets(self, query: str, params: tuple) -> List[MemoryPacket]:
        conn = self._get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to load memory packets: {e}") from e
        finally:
            conn.close()

        return [
            MemoryPacket(
                conversation_id=row["conversation_id"],
                from_message_index=row["from_message_index"],
                to_message_index=row["to_message_index"],
                message_count=row["message_count"],
                summary_text=row["summary_text"],
                generation=row["generation"],
                created_at=datetime.fromisoformat(row["created_at"])
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> ConversationMemory:
        window = [ChatMessage.model_validate(m) for m in json.loads(row["recent_messages"] or "[]")]
        return ConversationMemory(
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            coach_id=row["coach_id"],
            window=window,
            total_message_count=row["total_message_count"],
            rolling_summary=row["rolling_summary"] or "",
            version=row["version"],
            generation=row["generation"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"])
        )
