"""Summarization capability used by the compactor."""

import logging
from abc import ABC, abstractmethod
from typing import List

from llm.base_client import BaseLLMClient, Message
from .errors import SummarizationFailure
from .models import ChatMessage

logger = logging.getLogger(__name__)


class Summarizer(ABC):
    """Turns an ordered slice of chat messages into a short summary."""

    @abstractmethod
    def summarize(self, messages: List[ChatMessage]) -> str:
        """
        Summarize messages.

        Args:
            messages: Messages in chronological order

        Returns:
            Summary text

        Raises:
            SummarizationFailure: If no usable summary could be produced
        """
        pass


class LLMSummarizer(Summarizer):
    """Summarizer backed by any chat-completion LLM client."""

    SYSTEM_PROMPT = """You summarize conversations between a user and their fitness and nutrition coach.
Write a factual summary in the third person, at most {max_words} words, in {language}.
Cover:
- the main topics discussed
- decisions or agreements made
- goals the user stated and progress they reported
- notable situational facts relevant to future sessions (constraints, injuries, health notes, schedule)
Do not invent details. Output only the summary paragraph."""

    def __init__(
        self,
        llm_client: BaseLLMClient,
        max_words: int = 200,
        language: str = "English",
        temperature: float = 0.3,
        max_tokens: int = 400
    ):
        """
        Initialize LLM summarizer.

        Args:
            llm_client: LLM client used for completion
            max_words: Upper bound on summary length requested from the model
            language: Language the summary is written in
            temperature: Sampling temperature
            max_tokens: Maximum tokens in the completion
        """
        self.llm_client = llm_client
        self.max_words = max_words
        self.language = language
        self.temperature = temperature
        self.max_tokens = max_tokens

    def build_messages(self, messages: List[ChatMessage]) -> List[Message]:
        """Build the prompt for a slice of conversation."""
        conversation = "\n".join(m.as_line() for m in messages)
        return [
            Message(
                role="system",
                content=self.SYSTEM_PROMPT.format(
                    max_words=self.max_words,
                    language=self.language
                )
            ),
            Message(
                role="user",
                content=f"Summarize this conversation:\n\n{conversation}"
            ),
        ]

    def summarize(self, messages: List[ChatMessage]) -> str:
        if not messages:
            raise SummarizationFailure("Nothing to summarize")

        try:
            response = self.llm_client.chat(
                messages=self.build_messages(messages),
                temperature=self.temperature,
                max_tokens=self.max_tokens
            )
        except Exception as e:
            raise SummarizationFailure(
                f"{self.llm_client.get_provider_name()} summarization failed: {e}"
            ) from e

        summary = (response.content or "").strip()
        if not summary:
            raise SummarizationFailure("Summarizer returned an empty response")

        logger.debug(
            f"Summarized {len(messages)} messages with {self.llm_client.get_model_name()} "
            f"({len(summary.split())} words)"
        )
        return summary
