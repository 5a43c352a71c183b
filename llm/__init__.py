"""LLM clients used to compact conversation history."""

from .base_client import BaseLLMClient, Message, LLMResponse
from .openai_client import OpenAIClient
from .anthropic_client import AnthropicClient
from .factory import create_llm_client, LLMProvider

__all__ = [
    "BaseLLMClient",
    "Message",
    "LLMResponse",
    "OpenAIClient",
    "AnthropicClient",
    "create_llm_client",
    "LLMProvider",
]
