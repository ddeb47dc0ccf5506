"""
Valora — Telegram Bot.

Telegram is the user interface: every message goes to the Conversation
Orchestrator and the final answer comes back as a reply. The bot owns the
conversation history: it loads the transcript before a turn and stores
the new turns only after the turn finished successfully.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from valora.errors import EngineError, OrchestrationLimitExceeded

if TYPE_CHECKING:
    from valora.config import Settings
    from valora.core.orchestrator import Orchestrator
    from valora.data.db import ConversationDB
    from valora.ports.engine_port import ReasoningEngine
    from valora.ports.search_port import SearchPort

logger = logging.getLogger(__name__)

_TELEGRAM_MESSAGE_LIMIT = 4096

_HELP_TEXT = (
    "Just tell me about your money in plain words:\n"
    "• \"Spent 42.50 on groceries\"\n"
    "• \"Got my salary, 5200\"\n"
    "• \"Rent is 1800 every month on the 1st\"\n"
    "• \"How much did I spend on food in October?\"\n"
    "• \"Change the last expense to 38\"\n"
    "• \"Delete the Netflix subscription\"\n\n"
    "/reset — forget our conversation (your transactions stay)\n"
    "/help — show this message"
)


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users.

    Does NOT send any response to strangers — the bot must not reveal
    its existence to unauthorized users.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        settings: Settings = context.bot_data["settings"]
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


def _split_message(text: str, limit: int = _TELEGRAM_MESSAGE_LIMIT) -> list[str]:
    """Split *text* into chunks Telegram accepts, preferring line breaks."""
    chunks: list[str] = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


async def _reply(update: Update, text: str) -> None:
    for chunk in _split_message(text):
        await update.message.reply_text(chunk)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    name = update.effective_user.first_name or "there"
    await update.message.reply_text(
        f"Hi {name}! I'm Valora, your personal finance buddy. "
        "Tell me what you spent or earned and I'll keep track of it.\n\n" + _HELP_TEXT
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(_HELP_TEXT)


@authorized_only
async def cmd_reset(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    conversations: ConversationDB = context.bot_data["conversations"]
    tenant_id = str(update.effective_user.id)
    await asyncio.to_thread(conversations.clear, tenant_id)
    await update.message.reply_text(
        "Conversation cleared. Your transactions are untouched."
    )


# ---------------------------------------------------------------------------
# Free text → orchestrator
# ---------------------------------------------------------------------------


@authorized_only
async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    text = (update.message.text or "").strip()
    if not text:
        return

    settings: Settings = context.bot_data["settings"]
    orchestrator: Orchestrator = context.bot_data["orchestrator"]
    conversations: ConversationDB = context.bot_data["conversations"]
    tenant_id = str(update.effective_user.id)

    history = await asyncio.to_thread(conversations.load, tenant_id, settings.MAX_HISTORY_TURNS)
    try:
        outcome = await asyncio.wait_for(
            orchestrator.handle_turn(text, history, tenant_id=tenant_id),
            timeout=settings.TURN_TIMEOUT_SECONDS,
        )
    except OrchestrationLimitExceeded as exc:
        logger.error("Turn aborted for %s: %s", tenant_id, exc)
        await update.message.reply_text(
            "Sorry, that took too many steps and I had to stop. "
            "Could you try asking in a simpler way?"
        )
        return
    except EngineError as exc:
        logger.error("Engine error for %s: %s", tenant_id, exc)
        await update.message.reply_text(
            "Sorry, I couldn't reach my brain just now. Please try again in a moment."
        )
        return
    except asyncio.TimeoutError:
        logger.error(
            "Turn for %s timed out after %ds", tenant_id, settings.TURN_TIMEOUT_SECONDS,
        )
        await update.message.reply_text(
            "Sorry, that took too long. Please try again."
        )
        return

    await asyncio.to_thread(conversations.append, tenant_id, outcome.new_turns)
    await _reply(update, outcome.final_text or "Done.")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@dataclass
class Services:
    """Everything a turn needs, constructed once at startup."""

    orchestrator: Orchestrator
    conversations: ConversationDB


def build_services(
    settings: Settings,
    engine: ReasoningEngine | None = None,
    search: SearchPort | None = None,
) -> Services:
    """Construct storage, ledger services, registry, engine and orchestrator.

    Args:
        engine: Reasoning engine. Defaults to the LLM_PROVIDER adapter.
        search: Search port. Defaults to Qdrant when QDRANT_URL is set.
    """
    from valora.core.ledger import QueryService, RecurringTransactionService, TransactionService
    from valora.core.operations import build_registry
    from valora.core.orchestrator import Orchestrator
    from valora.core.prompts import build_system_instruction
    from valora.core.sandbox import QuerySandbox
    from valora.data.db import ConversationDB, LedgerDB

    ledger = LedgerDB(settings.DATABASE_PATH)
    conversations = ConversationDB(settings.DATABASE_PATH)

    if search is None and settings.search_enabled:
        from valora.adapters.qdrant_search import GeminiEmbedder, QdrantSearch

        search = QdrantSearch(
            url=settings.QDRANT_URL,
            collection=settings.QDRANT_COLLECTION,
            embedder=GeminiEmbedder(
                api_key=settings.EMBEDDING_API_KEY or settings.LLM_API_KEY,
                model=settings.EMBEDDING_MODEL,
                dimensions=settings.EMBEDDING_DIMENSIONS,
            ),
            dimensions=settings.EMBEDDING_DIMENSIONS,
            api_key=settings.QDRANT_API_KEY,
        )

    registry = build_registry(
        TransactionService(ledger, search),
        RecurringTransactionService(ledger, search),
        QueryService(
            ledger,
            QuerySandbox(max_rows=settings.QUERY_ROW_LIMIT),
            search,
            score_threshold=settings.EMBEDDING_THRESHOLD,
        ),
        search_enabled=search is not None,
    )

    if engine is None:
        from valora.adapters.engine_factory import create_engine

        engine = create_engine(
            settings,
            build_system_instruction(settings.QUERY_ROW_LIMIT, search is not None),
            registry.declarations(),
        )

    tz = ZoneInfo(settings.TIMEZONE)
    orchestrator = Orchestrator(
        engine,
        registry,
        max_iterations=settings.MAX_ITERATIONS,
        concurrent=settings.CONCURRENT_OPERATIONS,
        clock=lambda: datetime.now(tz),
    )
    logger.info(
        "Services ready: %d operations, search %s",
        len(registry.names), "on" if search is not None else "off",
    )
    return Services(orchestrator=orchestrator, conversations=conversations)


def build_app(
    settings: Settings,
    engine: ReasoningEngine | None = None,
    search: SearchPort | None = None,
) -> Application:
    """Build the Telegram Application with all collaborators wired in."""
    services = build_services(settings, engine=engine, search=search)
    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    app.bot_data["settings"] = settings
    app.bot_data["orchestrator"] = services.orchestrator
    app.bot_data["conversations"] = services.conversations

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("reset", cmd_reset))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def main() -> None:
    """Entry point: load settings, build the app and start polling."""
    from valora.config import load_settings

    settings = load_settings()
    logger.info("Starting Valora bot...")
    app = build_app(settings)
    app.run_polling()
