"""Assembly of prompt context from conversation memory."""

from datetime import datetime
from typing import Optional, List, Sequence

from .models import ConversationContext, ConversationMemory, MemoryPacket, utcnow

PACKET_LOOKAHEAD = 3


def assemble(
    memory: Optional[ConversationMemory],
    recent_packets: Sequence[MemoryPacket] = (),
    packet_lookahead: int = PACKET_LOOKAHEAD
) -> ConversationContext:
    """
    Build the context handed to prompt construction.

    Pure: never triggers compaction or persistence.

    Args:
        memory: Conversation state, or None for an absent conversation
        recent_packets: Packets of the conversation, newest first. The rolling
            summary is only used when this is empty.
        packet_lookahead: Number of packets whose summaries are included

    Returns:
        ConversationContext with recent messages and historical summary
    """
    if memory is None:
        return ConversationContext()

    recent_packets = list(recent_packets)
    packets = recent_packets[:max(0, packet_lookahead)]
    if packets:
        historical_summary = "\n\n".join(p.summary_text for p in packets)
    elif recent_packets:
        # Packets exist but none were asked for
        historical_summary = ""
    else:
        historical_summary = memory.rolling_summary or ""

    return ConversationContext(
        recent_messages=list(memory.window),
        historical_summary=historical_summary,
        message_count=memory.total_message_count,
        packet_count=len(packets)
    )


def format_time_ago(moment: datetime, now: Optional[datetime] = None) -> str:
    """
    Describe how long ago something happened, e.g. "yesterday" or "3 weeks ago".

    Args:
        moment: Past instant (naive values are taken as UTC)
        now: Reference instant, defaults to the current time
    """
    now = now or utcnow()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=now.tzinfo)

    seconds = max(0, int((now - moment).total_seconds()))
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    weeks = days // 7
    months = days // 30

    if days == 0:
        if hours == 0:
            if minutes < 5:
                return "just now"
            return f"{minutes} minutes ago"
        if hours == 1:
            return "an hour ago"
        return f"{hours} hours ago"

    if days == 1:
        return "yesterday"
    if days < 7:
        return f"{days} days ago"

    if weeks == 1:
        return "last week"
    if weeks < 4:
        return f"{weeks} weeks ago"

    if months <= 1:
        return "last month"
    if months < 12:
        return f"{months} months ago"

    years = months // 12
    if years == 1:
        return "last year"
    return f"{years} years ago"


def render_context(context: ConversationContext, now: Optional[datetime] = None) -> str:
    """
    Render a context as a prompt section.

    Returns an empty string for a conversation with no history.
    """
    if not context.recent_messages and not context.historical_summary:
        return ""

    parts: List[str] = ["=== Previous Conversation ==="]
    if context.historical_summary:
        parts.append(f"[Earlier sessions]: {context.historical_summary}")

    if context.recent_messages:
        oldest = context.recent_messages[0].timestamp
        parts.append(
            f"[Recent messages, {context.message_count} exchanged in total, "
            f"oldest shown from {format_time_ago(oldest, now)}]"
        )
        for msg in context.recent_messages:
            parts.append(f"{msg.role.value.upper()}: {msg.content}")

    parts.append("=== End Previous Conversation ===")
    return "\n".join(parts)
