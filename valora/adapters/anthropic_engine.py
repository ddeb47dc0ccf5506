"""Anthropic adapter — implements ReasoningEngine via the Messages API tool use."""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

from valora.core.transcript import OperationRequest, Role, Turn
from valora.errors import EngineError
from valora.ports.engine_port import EngineReply

logger = logging.getLogger(__name__)


def to_anthropic_tools(declarations: Sequence[dict]) -> list[dict]:
    return [
        {"name": d["name"], "description": d["description"], "input_schema": d["parameters"]}
        for d in declarations
    ]


def build_messages(transcript: Sequence[Turn]) -> list[dict]:
    messages: list[dict] = []
    for turn in transcript:
        if turn.results:
            messages.append({
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": r.call_id,
                        "content": json.dumps(r.to_dict()),
                        "is_error": not r.success,
                    }
                    for r in turn.results
                ],
            })
        elif turn.requests:
            blocks: list[dict] = []
            if turn.text:
                blocks.append({"type": "text", "text": turn.text})
            blocks.extend(
                {"type": "tool_use", "id": r.call_id, "name": r.name, "input": r.args or {}}
                for r in turn.requests
            )
            messages.append({"role": "assistant", "content": blocks})
        elif turn.text:
            role = "assistant" if turn.role is Role.ASSISTANT else "user"
            messages.append({"role": role, "content": turn.text})
    return messages


def parse_response(response: Any) -> EngineReply:
    texts: list[str] = []
    requests: list[OperationRequest] = []
    for block in response.content:
        if block.type == "text":
            texts.append(block.text)
        elif block.type == "tool_use":
            args = block.input if isinstance(block.input, dict) else None
            requests.append(OperationRequest(name=block.name, args=args, call_id=block.id))
    return EngineReply(text="".join(texts), requests=tuple(requests))


class AnthropicEngine:
    """ReasoningEngine backed by Claude tool use."""

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
            import anthropic

            client = anthropic.AsyncAnthropic(api_key=api_key)
        self._client = client
        self._model = model
        self._system = system_instruction
        self._tools = to_anthropic_tools(declarations)
        self._max_tokens = max_tokens

    async def generate(self, transcript: Sequence[Turn]) -> EngineReply:
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                system=self._system,
                tools=self._tools,
                messages=build_messages(transcript),
            )
        except Exception as exc:
            logger.error("Anthropic request failed: %s", exc)
            raise EngineError(f"Anthropic request failed: {exc}") from exc
        return parse_response(response)
