"""Tests for the SQLite message store and packet archive."""

import tempfile
from pathlib import Path

import pytest

from coach_memory.errors import ConcurrencyConflict, PacketOverlapError
from coach_memory.models import ChatMessage, ConversationMemory, MemoryPacket
from coach_memory.sqlite_store import SQLiteMemoryStore


def make_packet(conversation_id: str, start: int, end: int) -> MemoryPacket:
    return MemoryPacket(
        conversation_id=conversation_id,
        from_message_index=start,
        to_message_index=end,
        message_count=end - start + 1,
        summary_text=f"Summary of messages {start} to {end}."
    )


class TestSQLiteMessageStore:
    """Test conversation state persistence."""

    def setup_method(self):
        """Set up test fixtures."""
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.store = SQLiteMemoryStore(db_path=str(Path(self.tmp_dir.name) / "memory.db"))

    def teardown_method(self):
        self.tmp_dir.cleanup()

    def test_creates_database_file(self):
        """Test that the database and its directory are created."""
        assert self.store.db_path.exists()

    def test_load_missing(self):
        """Test that unknown conversations load as None."""
        assert self.store.load("nope") is None
        assert self.store.find("u1", "lucy") is None

    def test_insert_and_load(self):
        """Test inserting a conversation and reading it back."""
        memory = ConversationMemory(
            user_id="u1",
            coach_id="lucy",
            window=[
                ChatMessage(role="user", content="Hi", metadata={"source": "app"}),
                ChatMessage(role="assistant", content="Hello! How was training?"),
            ],
            total_message_count=2,
            rolling_summary="Earlier summary."
        )

        saved = self.store.save(memory, expected_version=None)
        loaded = self.store.load(memory.conversation_id)

        assert saved.version == 1
        assert loaded.version == 1
        assert loaded.user_id == "u1"
        assert loaded.coach_id == "lucy"
        assert loaded.total_message_count == 2
        assert loaded.rolling_summary == "Earlier summary."
        assert loaded.window == memory.window
        assert loaded.window[0].metadata == {"source": "app"}

    def test_find_by_participants(self):
        """Test lookup by (user, coach) pair."""
        memory = ConversationMemory(user_id="u1", coach_id="lucy")
        self.store.save(memory, expected_version=None)

        assert self.store.find("u1", "lucy").conversation_id == memory.conversation_id
        assert self.store.find("u1", "sascha") is None

    def test_update_bumps_version(self):
        """Test that each save increments the version."""
        memory = self.store.save(ConversationMemory(user_id="u1", coach_id="lucy"), None)

        updated = memory.model_copy(update={"total_message_count": 1})
        saved = self.store.save(updated, expected_version=memory.version)

        assert saved.version == 2
        assert self.store.load(memory.conversation_id).total_message_count == 1

    def test_stale_version_conflicts(self):
        """Test that a save based on a stale read is refused."""
        memory = self.store.save(ConversationMemory(user_id="u1", coach_id="lucy"), None)
        self.store.save(memory.model_copy(update={"total_message_count": 1}), memory.version)

        with pytest.raises(ConcurrencyConflict):
            self.store.save(memory.model_copy(update={"total_message_count": 5}), memory.version)

        assert self.store.load(memory.conversation_id).total_message_count == 1

    def test_second_conversation_for_pair_conflicts(self):
        """Test that a pair cannot get two conversations."""
        self.store.save(ConversationMemory(user_id="u1", coach_id="lucy"), None)

        with pytest.raises(ConcurrencyConflict):
            self.store.save(ConversationMemory(user_id="u1", coach_id="lucy"), None)

    def test_list_conversations_with_search(self):
        """Test monitor listing and search."""
        self.store.save(
            ConversationMemory(user_id="u1", coach_id="lucy", rolling_summary="Talked about protein intake."),
            None
        )
        self.store.save(
            ConversationMemory(user_id="u2", coach_id="sascha", rolling_summary="Deadlift technique."),
            None
        )

        assert len(self.store.list_conversations()) == 2

        rows = self.store.list_conversations(search="protein")
        assert len(rows) == 1
        assert rows[0].user_id == "u1"
        assert rows[0].window_size == 0

        assert len(self.store.list_conversations(search="sascha")) == 1
        assert len(self.store.list_conversations(limit=1)) == 1


class TestSQLitePacketArchive:
    """Test packet archive behavior."""

    def setup_method(self):
        """Set up test fixtures."""
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.store = SQLiteMemoryStore(db_path=str(Path(self.tmp_dir.name) / "memory.db"))

    def teardown_method(self):
        self.tmp_dir.cleanup()

    def test_list_recent_newest_first(self):
        """Test recent packets come back newest first and limited."""
        for start, end in [(1, 9), (10, 18), (19, 27), (28, 36)]:
            self.store.append(make_packet("c1", start, end))

        recent = self.store.list_recent("c1", limit=3)

        assert [p.from_message_index for p in recent] == [28, 19, 10]
        assert self.store.latest("c1").to_message_index == 36

    def test_list_all_chronological(self):
        """Test all packets come back in range order."""
        self.store.append(make_packet("c1", 1, 9))
        self.store.append(make_packet("c1", 10, 18))

        packets = self.store.list_all("c1")

        assert [(p.from_message_index, p.to_message_index) for p in packets] == [(1, 9), (10, 18)]
        assert packets[0].summary_text == "Summary of messages 1 to 9."

    def test_overlapping_append_refused(self):
        """Test that overlapping ranges are never archived."""
        self.store.append(make_packet("c1", 1, 9))

        with pytest.raises(PacketOverlapError):
            self.store.append(make_packet("c1", 9, 12))
        with pytest.raises(PacketOverlapError):
            self.store.append(make_packet("c1", 1, 9))

        assert len(self.store.list_all("c1")) == 1

    def test_ranges_are_per_conversation(self):
        """Test that the same range may exist in different conversations."""
        self.store.append(make_packet("c1", 1, 9))
        self.store.append(make_packet("c2", 1, 9))

        assert len(self.store.list_all("c1")) == 1
        assert len(self.store.list_all("c2")) == 1


class TestSQLiteReset:
    """Test the atomic reset of a conversation."""

    def setup_method(self):
        """Set up test fixtures."""
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.store = SQLiteMemoryStore(db_path=str(Path(self.tmp_dir.name) / "memory.db"))
        self.memory = self.store.save(
            ConversationMemory(
                user_id="u1",
                coach_id="lucy",
                window=[ChatMessage(role="user", content="message 19")],
                total_message_count=19,
                rolling_summary="Summary of messages 10 to 18."
            ),
            expected_version=None
        )
        self.store.append(make_packet(self.memory.conversation_id, 1, 9))
        self.store.append(make_packet(self.memory.conversation_id, 10, 18))

    def teardown_method(self):
        self.tmp_dir.cleanup()

    def cleared(self):
        return self.memory.model_copy(update={
            "window": [],
            "total_message_count": 0,
            "rolling_summary": "",
            "generation": self.memory.generation + 1,
        })

    def test_reset_deletes_packets_and_state(self):
        """Test reset replaces the state and empties the archive together."""
        deleted = self.store.reset(self.cleared(), self.memory.version)

        loaded = self.store.load(self.memory.conversation_id)
        assert deleted == 2
        assert loaded.total_message_count == 0
        assert loaded.window == []
        assert loaded.generation == 1
        assert loaded.version == self.memory.version + 1
        assert self.store.list_all(self.memory.conversation_id) == []

    def test_stale_reset_changes_nothing(self):
        """Test a reset losing the version check keeps packets and state."""
        self.store.save(self.memory, self.memory.version)

        with pytest.raises(ConcurrencyConflict):
            self.store.reset(self.cleared(), self.memory.version)

        loaded = self.store.load(self.memory.conversation_id)
        assert loaded.total_message_count == 19
        assert len(self.store.list_all(self.memory.conversation_id)) == 2

    def test_packet_from_before_reset_refused(self):
        """Test a packet made for the previous generation is not archived."""
        self.store.reset(self.cleared(), self.memory.version)

        with pytest.raises(ConcurrencyConflict):
            self.store.append(make_packet(self.memory.conversation_id, 1, 9))

        assert self.store.list_all(self.memory.conversation_id) == []

    def test_packet_of_current_generation_accepted(self):
        """Test packets carry the generation they were made in."""
        self.store.reset(self.cleared(), self.memory.version)
        packet = make_packet(self.memory.conversation_id, 1, 9).model_copy(update={"generation": 1})

        self.store.append(packet)

        assert self.store.latest(self.memory.conversation_id).generation == 1
