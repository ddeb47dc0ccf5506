"""
Valora — Centralized configuration.

Loads all settings from .env and validates required keys. Nothing is read
at import time beyond .env itself: `load_settings()` is called once by
the entry point and the resulting Settings object is passed down.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from valora/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)

_PROVIDERS = ("gemini", "anthropic", "openai", "cohere")


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # LLM: provider-agnostic (gemini, anthropic, openai, cohere)
    LLM_PROVIDER: str = "gemini"
    LLM_MODEL: str = ""          # empty → default per provider
    LLM_API_KEY: str
    LLM_MAX_TOKENS: int = 1024

    # SQLite (ledger + conversation history)
    DATABASE_PATH: str = "data/valora.db"

    # Security
    ALLOWED_USER_IDS: list[int] = []

    TIMEZONE: str = "UTC"

    # Orchestration
    MAX_ITERATIONS: int = 50
    QUERY_ROW_LIMIT: int = 100
    CONCURRENT_OPERATIONS: bool = False
    MAX_HISTORY_TURNS: int = 40
    TURN_TIMEOUT_SECONDS: int = 120

    # Semantic search (disabled when QDRANT_URL is empty)
    QDRANT_URL: str = ""
    QDRANT_API_KEY: str = ""
    QDRANT_COLLECTION: str = "descriptions"
    EMBEDDING_MODEL: str = "models/text-embedding-004"
    EMBEDDING_API_KEY: str = ""  # empty → LLM_API_KEY
    EMBEDDING_DIMENSIONS: int = 768
    EMBEDDING_THRESHOLD: float = 0.5

    @property
    def search_enabled(self) -> bool:
        return bool(self.QDRANT_URL)

    @field_validator("LLM_PROVIDER", mode="before")
    @classmethod
    def parse_provider(cls, v: str) -> str:
        provider = (v or "gemini").strip().lower()
        if provider not in _PROVIDERS:
            raise ValueError(f"LLM_PROVIDER must be one of: {', '.join(_PROVIDERS)}")
        return provider

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator(
        "LLM_MAX_TOKENS", "MAX_ITERATIONS", "QUERY_ROW_LIMIT", "MAX_HISTORY_TURNS",
        "TURN_TIMEOUT_SECONDS", "EMBEDDING_DIMENSIONS",
        mode="before",
    )
    @classmethod
    def parse_positive_int(cls, v: str | int) -> int:
        value = int(v)
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("CONCURRENT_OPERATIONS", mode="before")
    @classmethod
    def parse_bool(cls, v: str | bool) -> bool:
        if isinstance(v, bool):
            return v
        return str(v).strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    llm_api_key = os.getenv("LLM_API_KEY", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    if not llm_api_key or llm_api_key.startswith("your-"):
        print("ERROR: LLM_API_KEY is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "gemini"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=llm_api_key,
        LLM_MAX_TOKENS=os.getenv("LLM_MAX_TOKENS", "1024"),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/valora.db"),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        MAX_ITERATIONS=os.getenv("MAX_ITERATIONS", "50"),
        QUERY_ROW_LIMIT=os.getenv("QUERY_ROW_LIMIT", "100"),
        CONCURRENT_OPERATIONS=os.getenv("CONCURRENT_OPERATIONS", "false"),
        MAX_HISTORY_TURNS=os.getenv("MAX_HISTORY_TURNS", "40"),
        TURN_TIMEOUT_SECONDS=os.getenv("TURN_TIMEOUT_SECONDS", "120"),
        QDRANT_URL=os.getenv("QDRANT_URL", ""),
        QDRANT_API_KEY=os.getenv("QDRANT_API_KEY", ""),
        QDRANT_COLLECTION=os.getenv("QDRANT_COLLECTION", "descriptions"),
        EMBEDDING_MODEL=os.getenv("EMBEDDING_MODEL", "models/text-embedding-004"),
        EMBEDDING_API_KEY=os.getenv("EMBEDDING_API_KEY", ""),
        EMBEDDING_DIMENSIONS=os.getenv("EMBEDDING_DIMENSIONS", "768"),
        EMBEDDING_THRESHOLD=os.getenv("EMBEDDING_THRESHOLD", "0.5"),
    )
