"""Cohere adapter — implements ReasoningEngine via the v2 chat API."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from valora.adapters.openai_engine import build_chat_messages, parse_tool_calls, to_function_tools
from valora.core.transcript import Turn
from valora.errors import EngineError
from valora.ports.engine_port import EngineReply

logger = logging.getLogger(__name__)


class CohereEngine:
    """ReasoningEngine backed by Cohere tool use."""

    def __init__(
        self,
        api_key: str,
        model: str,
        system_instruction: str,
        declarations: Sequence[dict],
        max_tokens: int = 1024,
        client: Any = None,
    ) -> None:
        if client is None:
            import cohere

            client = cohere.AsyncClientV2(api_key=api_key)
        self._client = client
        self._model = model
        self._system = system_instruction
        self._tools = to_function_tools(declarations)
        self._max_tokens = max_tokens

    async def generate(self, transcript: Sequence[Turn]) -> EngineReply:
        try:
            response = await self._client.chat(
                model=self._model,
                max_tokens=self._max_tokens,
                tools=self._tools,
                messages=build_chat_messages(self._system, transcript, text_key="tool_plan"),
            )
        except Exception as exc:
            logger.error("Cohere request failed: %s", exc)
            raise EngineError(f"Cohere request failed: {exc}") from exc

        message = response.message
        text = "".join(
            getattr(item, "text", "") for item in (message.content or ())
        ) or (getattr(message, "tool_plan", None) or "")
        return EngineReply(text=text, requests=parse_tool_calls(message.tool_calls))
