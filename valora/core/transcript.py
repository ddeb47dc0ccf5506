"""Transcript model — the provider-neutral conversation record.

A transcript is an append-only sequence of Turns. A turn holds text, the
operation requests the assistant made, or the bundled results of those
requests. Engine adapters translate turns into their provider's message
format; callers persist turns through `to_dict()` / `Turn.from_dict()`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

from valora.core.results import OperationResult, jsonable


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class OperationRequest:
    """One tool call requested by the engine.

    `args` is None when the engine omitted arguments entirely; such a
    request is malformed and gets dropped. An empty dict is fine.
    """

    name: str
    args: dict | None
    call_id: str = ""

    @property
    def is_well_formed(self) -> bool:
        return bool(self.name) and isinstance(self.args, dict)


@dataclass(frozen=True)
class Turn:
    role: Role
    text: str = ""
    requests: tuple[OperationRequest, ...] = ()
    results: tuple[OperationResult, ...] = ()

    @classmethod
    def user(cls, text: str) -> Turn:
        return cls(role=Role.USER, text=text)

    @classmethod
    def assistant(cls, text: str, requests: Sequence[OperationRequest] = ()) -> Turn:
        return cls(role=Role.ASSISTANT, text=text, requests=tuple(requests))

    @classmethod
    def operation_results(cls, results: Sequence[OperationResult]) -> Turn:
        """Synthetic user turn bundling every result of one iteration."""
        return cls(role=Role.USER, results=tuple(results))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role.value}
        if self.text:
            data["text"] = self.text
        if self.requests:
            data["requests"] = [
                {"name": r.name, "args": jsonable(r.args), "call_id": r.call_id}
                for r in self.requests
            ]
        if self.results:
            data["results"] = [
                {"name": r.name, "call_id": r.call_id, "result": r.to_dict()}
                for r in self.results
            ]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Turn:
        return cls(
            role=Role(data["role"]),
            text=data.get("text", ""),
            requests=tuple(
                OperationRequest(name=r["name"], args=r.get("args"), call_id=r.get("call_id", ""))
                for r in data.get("requests", ())
            ),
            results=tuple(
                OperationResult.from_dict(r["name"], r["result"], call_id=r.get("call_id", ""))
                for r in data.get("results", ())
            ),
        )
