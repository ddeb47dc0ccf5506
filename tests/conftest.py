"""Shared test fixtures and configuration.

Sets up fake environment variables so valora.config.load_settings()
doesn't sys.exit(), and provides common fixtures like temp DBs, a fixed
clock and a scripted reasoning engine.
"""

import os

# Patch env vars BEFORE any valora imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("LLM_API_KEY", "fake-llm-key-for-tests")
os.environ.setdefault("LLM_PROVIDER", "gemini")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("QDRANT_URL", "")

from datetime import datetime, timezone

import pytest

from valora.ports.engine_port import EngineReply

FIXED_NOW = datetime(2025, 11, 10, 9, 30, tzinfo=timezone.utc)  # a Monday
TENANT = "user-1"


class ScriptedEngine:
    """ReasoningEngine stub that replays a fixed list of replies.

    Records a copy of every transcript it was sent.
    """

    def __init__(self, replies):
        self._replies = list(replies)
        self.transcripts = []

    async def generate(self, transcript):
        self.transcripts.append(list(transcript))
        if not self._replies:
            return EngineReply(text="(no more replies)")
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def scripted_engine():
    """Factory: scripted_engine([EngineReply(...), ...])."""
    return ScriptedEngine


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_valora.db")


@pytest.fixture
def ledger_db(tmp_db_path):
    """Return a LedgerDB instance backed by a temp file."""
    from valora.data.db import LedgerDB
    return LedgerDB(tmp_db_path)


@pytest.fixture
def conversation_db(tmp_db_path):
    """Return a ConversationDB instance backed by a temp file."""
    from valora.data.db import ConversationDB
    return ConversationDB(tmp_db_path)


@pytest.fixture
def context():
    """OperationContext for TENANT at FIXED_NOW."""
    from valora.core.registry import OperationContext
    return OperationContext(tenant_id=TENANT, now=FIXED_NOW)


@pytest.fixture
def settings(tmp_db_path):
    """Settings with a temp database and no semantic search."""
    from valora.config import Settings
    return Settings(
        TELEGRAM_BOT_TOKEN="fake-token-for-tests",
        LLM_API_KEY="fake-llm-key-for-tests",
        DATABASE_PATH=tmp_db_path,
        ALLOWED_USER_IDS=[12345],
    )
