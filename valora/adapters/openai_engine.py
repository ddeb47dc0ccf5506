"""OpenAI adapter — implements ReasoningEngine via chat completions tool calls.

`build_chat_messages()` and `parse_tool_calls()` are shared with the
Cohere adapter, whose v2 chat API uses the same message shape.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

from valora.core.transcript import OperationRequest, Role, Turn
from valora.errors import EngineError
from valora.ports.engine_port import EngineReply

logger = logging.getLogger(__name__)


def to_function_tools(declarations: Sequence[dict]) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {
                "name": d["name"],
                "description": d["description"],
                "parameters": d["parameters"],
            },
        }
        for d in declarations
    ]


def build_chat_messages(
    system: str, transcript: Sequence[Turn], text_key: str = "content",
) -> list[dict]:
    """System message plus the transcript in OpenAI chat format.

    *text_key* is where an assistant's text goes next to its tool calls
    ("content" for OpenAI, "tool_plan" for Cohere).
    """
    messages: list[dict] = [{"role": "system", "content": system}]
    for turn in transcript:
        if turn.results:
            messages.extend(
                {"role": "tool", "tool_call_id": r.call_id, "content": json.dumps(r.to_dict())}
                for r in turn.results
            )
        elif turn.requests:
            message: dict = {
                "role": "assistant",
                "tool_calls": [
                    {
                        "id": r.call_id,
                        "type": "function",
                        "function": {"name": r.name, "arguments": json.dumps(r.args or {})},
                    }
                    for r in turn.requests
                ],
            }
            if turn.text:
                message[text_key] = turn.text
            messages.append(message)
        elif turn.text:
            role = "assistant" if turn.role is Role.ASSISTANT else "user"
            messages.append({"role": role, "content": turn.text})
    return messages


def parse_tool_calls(tool_calls: Sequence[Any] | None) -> tuple[OperationRequest, ...]:
    """Tool calls whose arguments are not a JSON object come back with args=None."""
    requests = []
    for call in tool_calls or ():
        try:
            args = json.loads(call.function.arguments or "{}")
        except json.JSONDecodeError:
            logger.warning("Unparseable arguments for %s: %r", call.function.name, call.function.arguments)
            args = None
        if not isinstance(args, dict):
            args = None
        requests.append(OperationRequest(name=call.function.name, args=args, call_id=call.id or ""))
    return tuple(requests)


class OpenAIEngine:
    """ReasoningEngine backed by OpenAI function calling."""

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
            from openai import AsyncOpenAI

            client = AsyncOpenAI(api_key=api_key)
        self._client = client
        self._model = model
        self._system = system_instruction
        self._tools = to_function_tools(declarations)
        self._max_tokens = max_tokens

    async def generate(self, transcript: Sequence[Turn]) -> EngineReply:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                max_tokens=self._max_tokens,
                tools=self._tools,
                messages=build_chat_messages(self._system, transcript),
            )
        except Exception as exc:
            logger.error("OpenAI request failed: %s", exc)
            raise EngineError(f"OpenAI request failed: {exc}") from exc

        message = response.choices[0].message
        return EngineReply(
            text=message.content or "",
            requests=parse_tool_calls(message.tool_calls),
        )
