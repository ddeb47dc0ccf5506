"""Google Gemini adapter — implements ReasoningEngine via google-generativeai."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from valora.core.transcript import OperationRequest, Role, Turn
from valora.errors import EngineError
from valora.ports.engine_port import EngineReply

logger = logging.getLogger(__name__)

# Gemini's Schema proto only knows a subset of JSON schema.
_SCHEMA_KEYS = {"type", "description", "enum", "properties", "required", "items", "nullable"}


def to_gemini_schema(schema: dict) -> dict:
    """Trim a JSON schema to what Gemini accepts, with upper-case type names."""
    converted: dict = {}
    for key, value in schema.items():
        if key not in _SCHEMA_KEYS:
            continue
        if key == "type":
            converted[key] = str(value).upper()
        elif key == "properties":
            converted[key] = {name: to_gemini_schema(prop) for name, prop in value.items()}
        elif key == "items":
            converted[key] = to_gemini_schema(value)
        else:
            converted[key] = value
    return converted


def to_gemini_declarations(declarations: Sequence[dict]) -> list[dict]:
    result = []
    for declaration in declarations:
        entry = {"name": declaration["name"], "description": declaration["description"]}
        # Gemini rejects an OBJECT schema without properties.
        if declaration["parameters"].get("properties"):
            entry["parameters"] = to_gemini_schema(declaration["parameters"])
        result.append(entry)
    return result


def build_contents(transcript: Sequence[Turn]) -> list[dict]:
    """Translate the transcript into Gemini `contents`."""
    contents: list[dict] = []
    for turn in transcript:
        if turn.results:
            contents.append({
                "role": "user",
                "parts": [
                    {"function_response": {"name": r.name, "response": r.to_dict()}}
                    for r in turn.results
                ],
            })
            continue

        parts: list[dict] = []
        if turn.text:
            parts.append({"text": turn.text})
        for request in turn.requests:
            parts.append({"function_call": {"name": request.name, "args": request.args or {}}})
        if parts:
            contents.append({
                "role": "model" if turn.role is Role.ASSISTANT else "user",
                "parts": parts,
            })
    return contents


def _to_plain(value: Any) -> Any:
    """Convert proto map/repeated values from function-call args into plain Python."""
    if isinstance(value, (str, bytes, int, float, bool)) or value is None:
        return value
    if hasattr(value, "items"):
        return {k: _to_plain(v) for k, v in value.items()}
    if hasattr(value, "__iter__"):
        return [_to_plain(v) for v in value]
    return value


def parse_response(response: Any) -> EngineReply:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return EngineReply()

    texts: list[str] = []
    requests: list[OperationRequest] = []
    for part in candidates[0].content.parts:
        text = getattr(part, "text", "")
        call = getattr(part, "function_call", None)
        if text:
            texts.append(text)
        elif call is not None and (getattr(call, "name", "") or getattr(call, "args", None)):
            # Nameless calls are passed on so the orchestrator logs and drops them.
            args = _to_plain(call.args) if call.args is not None else None
            requests.append(OperationRequest(name=call.name or "", args=args))
    return EngineReply(text="".join(texts), requests=tuple(requests))


class GeminiEngine:
    """ReasoningEngine backed by a Gemini model with function calling."""

    def __init__(
        self,
        api_key: str,
        model: str,
        system_instruction: str,
        declarations: Sequence[dict],
        max_tokens: int = 1024,
    ) -> None:
        import google.generativeai as genai

        genai.configure(api_key=api_key)
        self._genai = genai
        self._max_tokens = max_tokens
        tools = [{"function_declarations": to_gemini_declarations(declarations)}]
        self._model = genai.GenerativeModel(
            model_name=model,
            system_instruction=system_instruction,
            tools=tools,
        )

    async def generate(self, transcript: Sequence[Turn]) -> EngineReply:
        contents = build_contents(transcript)
        try:
            response = await self._model.generate_content_async(
                contents,
                generation_config=self._genai.types.GenerationConfig(
                    max_output_tokens=self._max_tokens,
                ),
            )
        except Exception as exc:
            logger.error("Gemini request failed: %s", exc)
            raise EngineError(f"Gemini request failed: {exc}") from exc

        reply = parse_response(response)
        logger.debug(
            "Gemini reply: %d chars, %d request(s)", len(reply.text), len(reply.requests),
        )
        return reply
