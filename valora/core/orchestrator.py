"""
Valora — Conversation Orchestrator.

Drives one user turn to completion:

    user message → engine → (operations → results → engine)* → final text

Each iteration sends the whole transcript to the engine. If the reply
carries well-formed operation requests they are executed through the
Dispatch Registry and their results go back as a single synthetic user
turn. A reply without requests is the final answer.

The orchestrator never persists anything: it returns the new turns and
the caller decides whether to store them.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Sequence

from valora.core.registry import DispatchRegistry, OperationContext
from valora.core.results import OperationResult
from valora.core.transcript import OperationRequest, Turn
from valora.errors import OrchestrationLimitExceeded
from valora.ports.engine_port import ReasoningEngine

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 50


@dataclass(frozen=True)
class TurnOutcome:
    final_text: str
    new_turns: tuple[Turn, ...]
    iterations: int


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


class Orchestrator:
    """Runs the engine ⇄ registry loop for one user turn at a time."""

    def __init__(
        self,
        engine: ReasoningEngine,
        registry: DispatchRegistry,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        concurrent: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self._engine = engine
        self._registry = registry
        self._max_iterations = max_iterations
        self._concurrent = concurrent
        self._clock = clock or datetime.now

    async def handle_turn(
        self,
        message: str,
        prior_transcript: Sequence[Turn],
        *,
        tenant_id: str,
    ) -> TurnOutcome:
        """Process *message* on top of *prior_transcript* for *tenant_id*.

        Returns the final assistant text and every turn produced, starting
        with the user message.

        Raises:
            OrchestrationLimitExceeded: no final answer within max_iterations.
            EngineError: the engine call failed.
        """
        history = list(prior_transcript)
        new_turns: list[Turn] = [Turn.user(message)]

        for iteration in range(1, self._max_iterations + 1):
            reply = await self._engine.generate(history + new_turns)
            requests = self._well_formed(reply.requests)

            if not requests:
                new_turns.append(Turn.assistant(reply.text))
                logger.info(
                    "Turn for %s finished after %d iteration(s)", tenant_id, iteration,
                )
                return TurnOutcome(reply.text, tuple(new_turns), iteration)

            logger.info(
                "Iteration %d: executing %s",
                iteration, ", ".join(r.name for r in requests),
            )
            new_turns.append(Turn.assistant(reply.text, requests))
            context = OperationContext(tenant_id=tenant_id, now=self._clock())
            results = await self._run(requests, context)
            new_turns.append(Turn.operation_results(results))

        logger.error(
            "Turn for %s hit the iteration ceiling (%d)", tenant_id, self._max_iterations,
        )
        raise OrchestrationLimitExceeded(self._max_iterations)

    @staticmethod
    def _well_formed(requests: Sequence[OperationRequest]) -> list[OperationRequest]:
        kept = []
        for request in requests:
            if not request.is_well_formed:
                logger.warning("Dropping malformed operation request: %r", request)
                continue
            if not request.call_id:
                request = dataclasses.replace(request, call_id=_new_call_id())
            kept.append(request)
        return kept

    async def _run(
        self, requests: list[OperationRequest], context: OperationContext,
    ) -> list[OperationResult]:
        if self._concurrent:
            # gather() returns results in argument order.
            return list(await asyncio.gather(
                *(self._registry.dispatch(r, context) for r in requests)
            ))
        return [await self._registry.dispatch(r, context) for r in requests]
