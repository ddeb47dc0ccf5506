"""Search port — abstract interface for semantic transaction search."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

TRANSACTION = "transaction"
RECURRING = "recurring"


@dataclass(frozen=True)
class SearchHit:
    record_id: int
    kind: str          # TRANSACTION | RECURRING
    score: float


class SearchPort(Protocol):
    """Vector index over transaction descriptions, partitioned by tenant.

    Implementations raise SearchError when the backend fails.
    """

    async def index(self, tenant_id: str, kind: str, record_id: int, text: str) -> None: ...

    async def search(self, tenant_id: str, query: str, limit: int = 20) -> list[SearchHit]: ...
