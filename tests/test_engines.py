"""Tests for the reasoning engine adapters and the engine factory.

Provider SDK calls are mocked; only the message translation and response
parsing are exercised.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from valora.adapters import anthropic_engine, gemini_engine, openai_engine
from valora.adapters.anthropic_engine import AnthropicEngine
from valora.adapters.cohere_engine import CohereEngine
from valora.adapters.engine_factory import DEFAULT_MODELS, create_engine
from valora.adapters.openai_engine import OpenAIEngine
from valora.core.results import OperationResult
from valora.core.transcript import OperationRequest, Turn
from valora.errors import EngineError

DECLARATIONS = [
    {
        "name": "add_transaction",
        "description": "Add a transaction",
        "parameters": {
            "type": "object",
            "properties": {
                "amount": {"type": "number", "description": "Amount", "exclusiveMinimum": 0},
                "type": {"type": "string", "enum": ["expense", "income"]},
                "tags": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["amount", "type"],
        },
    },
    {
        "name": "get_current_date",
        "description": "Today",
        "parameters": {"type": "object", "properties": {}},
    },
]


def _transcript():
    """user → assistant with two calls → results (one failed) → final answer."""
    return [
        Turn.user("spent 5 on coffee"),
        Turn.assistant("On it", [
            OperationRequest("get_current_date", {}, "c1"),
            OperationRequest("add_transaction", {"amount": 5, "type": "expense"}, "c2"),
        ]),
        Turn.operation_results([
            OperationResult(name="get_current_date", success=True, message="Today", call_id="c1"),
            OperationResult(
                name="add_transaction", success=False, message="bad", call_id="c2",
            ),
        ]),
        Turn.assistant("Couldn't add it"),
    ]


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------


class TestGemini:
    def test_schema_is_trimmed_and_upper_cased(self):
        schema = gemini_engine.to_gemini_schema(DECLARATIONS[0]["parameters"])
        assert schema["type"] == "OBJECT"
        assert schema["properties"]["amount"] == {"type": "NUMBER", "description": "Amount"}
        assert schema["properties"]["tags"]["items"] == {"type": "STRING"}
        assert schema["properties"]["type"]["enum"] == ["expense", "income"]

    def test_declarations_without_properties_omit_parameters(self):
        add, today = gemini_engine.to_gemini_declarations(DECLARATIONS)
        assert "parameters" in add
        assert "parameters" not in today

    def test_build_contents(self):
        contents = gemini_engine.build_contents(_transcript())
        assert [c["role"] for c in contents] == ["user", "model", "user", "model"]
        assert contents[1]["parts"][0] == {"text": "On it"}
        assert contents[1]["parts"][2]["function_call"] == {
            "name": "add_transaction", "args": {"amount": 5, "type": "expense"},
        }
        responses = [p["function_response"] for p in contents[2]["parts"]]
        assert [r["name"] for r in responses] == ["get_current_date", "add_transaction"]
        assert responses[1]["response"]["success"] is False

    def test_parse_response(self):
        response = SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[
            SimpleNamespace(text="Let me add that", function_call=None),
            SimpleNamespace(text="", function_call=SimpleNamespace(
                name="add_transaction", args={"amount": 5.0, "tags": ["a", "b"]},
            )),
        ]))])
        reply = gemini_engine.parse_response(response)
        assert reply.text == "Let me add that"
        assert reply.requests == (
            OperationRequest("add_transaction", {"amount": 5.0, "tags": ["a", "b"]}),
        )

    def test_nameless_call_is_kept_as_malformed_request(self):
        response = SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[
            SimpleNamespace(text="", function_call=SimpleNamespace(name="", args={"amount": 5})),
        ]))])
        reply = gemini_engine.parse_response(response)
        assert reply.requests == (OperationRequest("", {"amount": 5}),)
        assert not reply.requests[0].is_well_formed

    def test_parse_empty_response(self):
        reply = gemini_engine.parse_response(SimpleNamespace(candidates=[]))
        assert reply.text == ""
        assert reply.requests == ()

    @pytest.mark.asyncio
    async def test_provider_failure_becomes_engine_error(self):
        with patch("google.generativeai.configure"), \
             patch("google.generativeai.GenerativeModel") as model_cls:
            model_cls.return_value.generate_content_async = AsyncMock(side_effect=RuntimeError("quota"))
            engine = gemini_engine.GeminiEngine("key", "gemini-2.0-flash", "sys", DECLARATIONS)
            with pytest.raises(EngineError, match="quota"):
                await engine.generate([Turn.user("hi")])


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class TestAnthropic:
    def test_tools(self):
        tools = anthropic_engine.to_anthropic_tools(DECLARATIONS)
        assert tools[0]["input_schema"] == DECLARATIONS[0]["parameters"]

    def test_build_messages(self):
        messages = anthropic_engine.build_messages(_transcript())
        assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant"]
        assert messages[0]["content"] == "spent 5 on coffee"
        blocks = messages[1]["content"]
        assert blocks[0] == {"type": "text", "text": "On it"}
        assert blocks[2] == {
            "type": "tool_use", "id": "c2", "name": "add_transaction",
            "input": {"amount": 5, "type": "expense"},
        }
        results = messages[2]["content"]
        assert [r["tool_use_id"] for r in results] == ["c1", "c2"]
        assert [r["is_error"] for r in results] == [False, True]
        assert json.loads(results[0]["content"])["message"] == "Today"

    @pytest.mark.asyncio
    async def test_generate(self):
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=SimpleNamespace(content=[
            SimpleNamespace(type="text", text="Adding"),
            SimpleNamespace(type="tool_use", id="toolu_1", name="add_transaction", input={"amount": 5}),
        ]))
        engine = AnthropicEngine("key", "claude", "sys", DECLARATIONS, client=client)
        reply = await engine.generate([Turn.user("hi")])

        assert reply.text == "Adding"
        assert reply.requests == (OperationRequest("add_transaction", {"amount": 5}, "toolu_1"),)
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["system"] == "sys"
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_failure(self):
        client = MagicMock()
        client.messages.create = AsyncMock(side_effect=RuntimeError("overloaded"))
        engine = AnthropicEngine("key", "claude", "sys", DECLARATIONS, client=client)
        with pytest.raises(EngineError):
            await engine.generate([Turn.user("hi")])


# ---------------------------------------------------------------------------
# OpenAI / Cohere
# ---------------------------------------------------------------------------


def _tool_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


class TestOpenAI:
    def test_build_chat_messages(self):
        messages = openai_engine.build_chat_messages("sys", _transcript())
        assert messages[0] == {"role": "system", "content": "sys"}
        assert messages[1] == {"role": "user", "content": "spent 5 on coffee"}
        assistant = messages[2]
        assert assistant["content"] == "On it"
        assert json.loads(assistant["tool_calls"][1]["function"]["arguments"]) == {
            "amount": 5, "type": "expense",
        }
        assert [m["tool_call_id"] for m in messages[3:5]] == ["c1", "c2"]
        assert messages[5] == {"role": "assistant", "content": "Couldn't add it"}

    def test_cohere_text_key(self):
        messages = openai_engine.build_chat_messages("sys", _transcript(), text_key="tool_plan")
        assert messages[2]["tool_plan"] == "On it"
        assert "content" not in messages[2]

    def test_parse_tool_calls(self):
        requests = openai_engine.parse_tool_calls([
            _tool_call("a", "add_transaction", '{"amount": 5}'),
            _tool_call("b", "add_transaction", "{not json"),
            _tool_call("c", "add_transaction", "[1, 2]"),
            _tool_call("d", "get_current_date", ""),
        ])
        assert [r.args for r in requests] == [{"amount": 5}, None, None, {}]
        assert [r.call_id for r in requests] == ["a", "b", "c", "d"]

    def test_parse_no_tool_calls(self):
        assert openai_engine.parse_tool_calls(None) == ()

    @pytest.mark.asyncio
    async def test_generate(self):
        client = MagicMock()
        message = SimpleNamespace(content=None, tool_calls=[_tool_call("x", "get_current_date", "{}")])
        client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)]),
        )
        engine = OpenAIEngine("key", "gpt", "sys", DECLARATIONS, client=client)
        reply = await engine.generate([Turn.user("what day is it")])
        assert reply.text == ""
        assert reply.requests == (OperationRequest("get_current_date", {}, "x"),)
        tools = client.chat.completions.create.call_args.kwargs["tools"]
        assert tools[0]["function"]["name"] == "add_transaction"


class TestCohere:
    @pytest.mark.asyncio
    async def test_generate_uses_tool_plan_when_no_content(self):
        client = MagicMock()
        message = SimpleNamespace(
            content=None,
            tool_plan="I will check the date",
            tool_calls=[_tool_call("t1", "get_current_date", "{}")],
        )
        client.chat = AsyncMock(return_value=SimpleNamespace(message=message))
        engine = CohereEngine("key", "command", "sys", DECLARATIONS, client=client)
        reply = await engine.generate([Turn.user("hi")])
        assert reply.text == "I will check the date"
        assert reply.requests[0].call_id == "t1"

    @pytest.mark.asyncio
    async def test_generate_final_text(self):
        client = MagicMock()
        message = SimpleNamespace(content=[SimpleNamespace(text="All done")], tool_plan=None, tool_calls=None)
        client.chat = AsyncMock(return_value=SimpleNamespace(message=message))
        engine = CohereEngine("key", "command", "sys", DECLARATIONS, client=client)
        reply = await engine.generate([Turn.user("hi")])
        assert reply.text == "All done"
        assert reply.requests == ()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestEngineFactory:
    @pytest.mark.parametrize("provider, cls", [
        ("anthropic", AnthropicEngine),
        ("openai", OpenAIEngine),
        ("cohere", CohereEngine),
    ])
    def test_creates_adapter(self, settings, provider, cls):
        configured = settings.model_copy(update={"LLM_PROVIDER": provider})
        engine = create_engine(configured, "sys", DECLARATIONS)
        assert isinstance(engine, cls)
        assert engine._model == DEFAULT_MODELS[provider]

    def test_gemini_is_default(self, settings):
        with patch("google.generativeai.configure"), \
             patch("google.generativeai.GenerativeModel") as model_cls:
            engine = create_engine(settings, "sys", DECLARATIONS)
        assert isinstance(engine, gemini_engine.GeminiEngine)
        assert model_cls.call_args.kwargs["model_name"] == "gemini-2.0-flash"

    def test_model_override(self, settings):
        configured = settings.model_copy(update={"LLM_PROVIDER": "openai", "LLM_MODEL": "gpt-4.1"})
        assert create_engine(configured, "sys", DECLARATIONS)._model == "gpt-4.1"

    def test_unknown_provider(self, settings):
        configured = settings.model_copy(update={"LLM_PROVIDER": "mistral"})
        with pytest.raises(ValueError, match="mistral"):
            create_engine(configured, "sys", DECLARATIONS)
