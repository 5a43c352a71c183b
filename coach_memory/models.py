"""Memory data models."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Author of a chat message."""
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """A single message exchanged between a user and a coach."""
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Optional[Dict[str, Any]] = None  # Opaque, no assumed schema

    def as_line(self) -> str:
        """Render as a "role: content" line."""
        return f"{self.role.value}: {self.content}"


class ConversationMemory(BaseModel):
    """Rolling memory for one (user, coach) pair."""
    conversation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    coach_id: str
    window: List[ChatMessage] = Field(default_factory=list)
    total_message_count: int = 0
    rolling_summary: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0  # Bumped by the store on every successful save
    generation: int = 0  # Bumped by clear, stamped on packets

    @property
    def first_window_index(self) -> int:
        """Absolute 1-based index of the oldest live message."""
        return self.total_message_count - len(self.window) + 1


class MemoryPacket(BaseModel):
    """Immutable summary of a contiguous range of messages."""
    model_config = ConfigDict(frozen=True)

    conversation_id: str
    from_message_index: int = Field(ge=1)
    to_message_index: int = Field(ge=1)
    message_count: int = Field(ge=1)
    summary_text: str
    generation: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_range(self) -> "MemoryPacket":
        if self.to_message_index < self.from_message_index:
            raise ValueError("to_message_index must not precede from_message_index")
        if self.message_count != self.to_message_index - self.from_message_index + 1:
            raise ValueError("message_count must match the covered range")
        return self

    def overlaps(self, from_index: int, to_index: int) -> bool:
        return self.from_message_index <= to_index and from_index <= self.to_message_index


class ConversationContext(BaseModel):
    """Assembled view handed to prompt construction."""
    recent_messages: List[ChatMessage] = Field(default_factory=list)
    historical_summary: str = ""
    message_count: int = 0
    packet_count: int = 0


class ConversationOverview(BaseModel):
    """Listing row for the conversation monitor."""
    conversation_id: str
    user_id: str
    coach_id: str
    total_message_count: int
    window_size: int
    rolling_summary: str = ""
    updated_at: datetime
