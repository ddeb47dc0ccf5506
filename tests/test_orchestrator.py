"""Tests for valora.core.orchestrator — the engine/operation loop."""

import asyncio
from datetime import datetime, timezone

import pytest
from pydantic import BaseModel

from valora.core.orchestrator import Orchestrator
from valora.core.registry import DispatchRegistry
from valora.core.results import OperationResult
from valora.core.transcript import OperationRequest, Role, Turn
from valora.errors import EngineError, OrchestrationLimitExceeded
from valora.ports.engine_port import EngineReply

FIXED_NOW = datetime(2025, 11, 10, 9, 30, tzinfo=timezone.utc)
TENANT = "user-1"


class SleepArgs(BaseModel):
    label: str
    delay: float = 0.0


def _registry(log):
    async def sleep(args, ctx):
        await asyncio.sleep(args.delay)
        log.append((args.label, ctx.tenant_id))
        return OperationResult.ok("sleep", f"slept {args.label}", {"label": args.label})

    registry = DispatchRegistry()
    registry.register("sleep", sleep, SleepArgs, "Sleep for a while")
    registry.freeze()
    return registry


def _orchestrator(engine, log=None, **kwargs):
    return Orchestrator(engine, _registry(log if log is not None else []), clock=lambda: FIXED_NOW, **kwargs)


def _sleep(label, delay=0.0, call_id=""):
    return OperationRequest("sleep", {"label": label, "delay": delay}, call_id)


class TestSingleIteration:
    @pytest.mark.asyncio
    async def test_plain_answer_returns_after_one_call(self, scripted_engine):
        engine = scripted_engine([EngineReply(text="Hello!")])
        outcome = await _orchestrator(engine).handle_turn("hi", [], tenant_id=TENANT)

        assert outcome.final_text == "Hello!"
        assert outcome.iterations == 1
        assert [t.role for t in outcome.new_turns] == [Role.USER, Role.ASSISTANT]
        assert outcome.new_turns[0].text == "hi"
        assert len(engine.transcripts) == 1

    @pytest.mark.asyncio
    async def test_prior_transcript_is_sent_but_not_returned(self, scripted_engine):
        prior = [Turn.user("earlier"), Turn.assistant("noted")]
        engine = scripted_engine([EngineReply(text="ok")])
        outcome = await _orchestrator(engine).handle_turn("now", prior, tenant_id=TENANT)

        assert engine.transcripts[0][:2] == prior
        assert engine.transcripts[0][2] == Turn.user("now")
        assert outcome.new_turns[0] == Turn.user("now")
        assert len(outcome.new_turns) == 2

    def test_max_iterations_must_be_positive(self, scripted_engine):
        with pytest.raises(ValueError):
            _orchestrator(scripted_engine([]), max_iterations=0)


class TestOperationLoop:
    @pytest.mark.asyncio
    async def test_results_fed_back_in_request_order(self, scripted_engine):
        log = []
        engine = scripted_engine([
            EngineReply(text="Working", requests=(
                _sleep("a", 0.03, "c1"), _sleep("b", 0.0, "c2"), _sleep("c", 0.01, "c3"),
            )),
            EngineReply(text="All done"),
        ])
        outcome = await _orchestrator(engine, log).handle_turn("go", [], tenant_id=TENANT)

        assert outcome.final_text == "All done"
        assert outcome.iterations == 2
        user, assistant, results, final = outcome.new_turns
        assert assistant.text == "Working"
        assert [r.call_id for r in assistant.requests] == ["c1", "c2", "c3"]
        assert results.role is Role.USER
        assert [r.payload["label"] for r in results.results] == ["a", "b", "c"]
        assert [r.call_id for r in results.results] == ["c1", "c2", "c3"]
        assert final == Turn.assistant("All done")
        # sequential by default
        assert [label for label, _ in log] == ["a", "b", "c"]
        assert all(tenant == TENANT for _, tenant in log)

    @pytest.mark.asyncio
    async def test_concurrent_mode_keeps_result_order(self, scripted_engine):
        log = []
        engine = scripted_engine([
            EngineReply(requests=(_sleep("slow", 0.05), _sleep("fast", 0.0))),
            EngineReply(text="done"),
        ])
        outcome = await _orchestrator(engine, log, concurrent=True).handle_turn(
            "go", [], tenant_id=TENANT,
        )

        results = outcome.new_turns[2].results
        assert [r.payload["label"] for r in results] == ["slow", "fast"]
        assert [label for label, _ in log] == ["fast", "slow"]

    @pytest.mark.asyncio
    async def test_second_engine_call_sees_results(self, scripted_engine):
        engine = scripted_engine([
            EngineReply(requests=(_sleep("a"),)),
            EngineReply(text="done"),
        ])
        await _orchestrator(engine).handle_turn("go", [], tenant_id=TENANT)

        second = engine.transcripts[1]
        assert len(second) == 3
        assert second[-1].results[0].message == "slept a"

    @pytest.mark.asyncio
    async def test_missing_call_ids_are_generated(self, scripted_engine):
        engine = scripted_engine([
            EngineReply(requests=(_sleep("a"),)),
            EngineReply(text="done"),
        ])
        outcome = await _orchestrator(engine).handle_turn("go", [], tenant_id=TENANT)

        request = outcome.new_turns[1].requests[0]
        result = outcome.new_turns[2].results[0]
        assert request.call_id.startswith("call_")
        assert result.call_id == request.call_id

    @pytest.mark.asyncio
    async def test_malformed_requests_are_dropped(self, scripted_engine):
        log = []
        engine = scripted_engine([
            EngineReply(requests=(
                OperationRequest("sleep", None), OperationRequest("", {}), _sleep("ok"),
            )),
            EngineReply(text="done"),
        ])
        outcome = await _orchestrator(engine, log).handle_turn("go", [], tenant_id=TENANT)

        assert [label for label, _ in log] == ["ok"]
        assert len(outcome.new_turns[1].requests) == 1

    @pytest.mark.asyncio
    async def test_nameless_request_is_logged(self, scripted_engine, caplog):
        engine = scripted_engine([
            EngineReply(requests=(OperationRequest("", {"amount": 5}),)),
        ])
        with caplog.at_level("WARNING", logger="valora.core.orchestrator"):
            await _orchestrator(engine).handle_turn("go", [], tenant_id=TENANT)
        assert "Dropping malformed operation request" in caplog.text

    @pytest.mark.asyncio
    async def test_only_malformed_requests_is_a_final_answer(self, scripted_engine):
        engine = scripted_engine([
            EngineReply(text="Let me check", requests=(OperationRequest("sleep", None),)),
        ])
        outcome = await _orchestrator(engine).handle_turn("go", [], tenant_id=TENANT)

        assert outcome.final_text == "Let me check"
        assert outcome.iterations == 1

    @pytest.mark.asyncio
    async def test_failed_operation_does_not_stop_the_turn(self, scripted_engine):
        engine = scripted_engine([
            EngineReply(requests=(OperationRequest("nope", {}, "c1"),)),
            EngineReply(text="That didn't work"),
        ])
        outcome = await _orchestrator(engine).handle_turn("go", [], tenant_id=TENANT)

        failed = outcome.new_turns[2].results[0]
        assert failed.error.code == "UNKNOWN_OPERATION"
        assert outcome.final_text == "That didn't work"


class TestFailures:
    @pytest.mark.asyncio
    async def test_iteration_limit(self, scripted_engine):
        engine = scripted_engine([EngineReply(requests=(_sleep(str(i)),)) for i in range(3)])
        with pytest.raises(OrchestrationLimitExceeded, match=r"\(3\)"):
            await _orchestrator(engine, max_iterations=3).handle_turn("go", [], tenant_id=TENANT)
        assert len(engine.transcripts) == 3

    @pytest.mark.asyncio
    async def test_engine_error_propagates(self, scripted_engine):
        engine = scripted_engine([EngineError("provider down")])
        with pytest.raises(EngineError):
            await _orchestrator(engine).handle_turn("go", [], tenant_id=TENANT)
