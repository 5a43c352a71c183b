"""Application settings."""

import os
from typing import Optional
from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Configuration for conversation memory."""

    # LLM provider used for summarization
    llm_provider: str = "openai"  # "openai" or "anthropic"
    llm_model: Optional[str] = None  # Override default model (gpt-4o-mini or claude-3-5-haiku)

    # API Keys
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None

    # Storage
    db_path: str = "data/coach_memory.db"

    # Window and compaction
    window_limit: int = Field(10, ge=2)
    keep_recent: int = Field(2, ge=1)
    packet_lookahead: int = Field(3, ge=0)
    summary_timeout: float = Field(8.0, gt=0)  # seconds
    min_summary_chars: int = 40
    summary_max_words: int = 200
    summary_language: str = "English"

    # Concurrency
    max_append_attempts: int = Field(5, ge=1)

    # Logging
    verbose: bool = False

    def __init__(self, **data):
        # Auto-load API keys from environment if not provided
        if "openai_api_key" not in data or data["openai_api_key"] is None:
            data["openai_api_key"] = os.environ.get("OPENAI_API_KEY")

        if "anthropic_api_key" not in data or data["anthropic_api_key"] is None:
            data["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY")

        if "db_path" not in data and os.environ.get("COACH_MEMORY_DB"):
            data["db_path"] = os.environ["COACH_MEMORY_DB"]

        super().__init__(**data)

    def get_llm_api_key(self) -> Optional[str]:
        """Get the API key for the configured LLM provider."""
        if self.llm_provider == "openai":
            return self.openai_api_key
        elif self.llm_provider == "anthropic":
            return self.anthropic_api_key
        return None
