"""Reasoning engine port — abstract interface for the LLM with function calling.

The orchestrator depends on this protocol, never on a specific provider.
Adapters are bound to a system instruction and the operation declarations
when they are constructed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence

from valora.core.transcript import OperationRequest, Turn


@dataclass(frozen=True)
class EngineReply:
    """One engine response: free text and zero or more operation requests."""

    text: str = ""
    requests: tuple[OperationRequest, ...] = ()


class ReasoningEngine(Protocol):
    """Abstract reasoning engine used by the orchestrator.

    Implementations raise EngineError when the provider call fails.
    """

    async def generate(self, transcript: Sequence[Turn]) -> EngineReply: ...
