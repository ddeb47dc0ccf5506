"""Reasoning engine factory — creates the right adapter based on config."""

from __future__ import annotations

import logging
from typing import Sequence

from valora.config import Settings
from valora.ports.engine_port import ReasoningEngine

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "gemini":    "gemini-2.0-flash",
    "anthropic": "claude-haiku-4-5-20251001",
    "openai":    "gpt-4o-mini",
    "cohere":    "command-a-03-2025",
}


def create_engine(
    settings: Settings, system_instruction: str, declarations: Sequence[dict],
) -> ReasoningEngine:
    """Return the engine adapter matching the LLM_PROVIDER setting."""
    provider = settings.LLM_PROVIDER.lower()
    if provider not in DEFAULT_MODELS:
        raise ValueError(
            f"Unknown LLM_PROVIDER={provider!r}. Supported: {', '.join(DEFAULT_MODELS)}"
        )

    model = settings.LLM_MODEL or DEFAULT_MODELS[provider]
    logger.info("LLM provider: %s, model: %s", provider, model)
    kwargs = dict(
        api_key=settings.LLM_API_KEY,
        model=model,
        system_instruction=system_instruction,
        declarations=declarations,
        max_tokens=settings.LLM_MAX_TOKENS,
    )

    if provider == "gemini":
        from valora.adapters.gemini_engine import GeminiEngine

        return GeminiEngine(**kwargs)

    if provider == "anthropic":
        from valora.adapters.anthropic_engine import AnthropicEngine

        return AnthropicEngine(**kwargs)

    if provider == "openai":
        from valora.adapters.openai_engine import OpenAIEngine

        return OpenAIEngine(**kwargs)

    from valora.adapters.cohere_engine import CohereEngine

    return CohereEngine(**kwargs)
