"""Qdrant adapter — implements SearchPort over the Qdrant REST API.

Descriptions are embedded with Gemini and stored one point per record.
Point ids are derived from (tenant, kind, record id), so re-indexing an
edited record overwrites its previous vector. Every search is filtered on
the tenant id stored in the payload.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable

import httpx

from valora.errors import SearchError
from valora.ports.search_port import RECURRING, SearchHit

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 10

Embedder = Callable[[str], Awaitable[list[float]]]


def record_key(kind: str, record_id: int) -> str:
    """Prefixed record id: T-12 for transactions, RT-12 for recurring ones."""
    return f"{'RT' if kind == RECURRING else 'T'}-{record_id}"


def point_id(tenant_id: str, kind: str, record_id: int) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"valora:{tenant_id}:{record_key(kind, record_id)}"))


class GeminiEmbedder:
    """Text → vector using the Gemini embedding endpoint."""

    def __init__(self, api_key: str, model: str, dimensions: int) -> None:
        self._api_key = api_key
        self._model = model
        self._dimensions = dimensions

    async def __call__(self, text: str) -> list[float]:
        import google.generativeai as genai

        genai.configure(api_key=self._api_key)
        result = await asyncio.to_thread(
            genai.embed_content,
            model=self._model,
            content=text,
            task_type="SEMANTIC_SIMILARITY",
            output_dimensionality=self._dimensions,
        )
        return list(result["embedding"])


class QdrantSearch:
    """SearchPort backed by a single Qdrant collection."""

    def __init__(
        self,
        url: str,
        collection: str,
        embedder: Embedder,
        dimensions: int,
        api_key: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._collection = collection
        self._embed = embedder
        self._dimensions = dimensions
        self._headers = {"api-key": api_key} if api_key else {}
        self._transport = transport
        self._collection_ready = False

    async def _request(self, method: str, path: str, json: dict | None = None) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self._url,
            headers=self._headers,
            timeout=_TIMEOUT_SECONDS,
            transport=self._transport,
        ) as client:
            return await client.request(method, path, json=json)

    async def _ensure_collection(self) -> None:
        if self._collection_ready:
            return
        path = f"/collections/{self._collection}"
        resp = await self._request("GET", path)
        if resp.status_code == 404:
            logger.info("Creating Qdrant collection %s (%d dims)", self._collection, self._dimensions)
            created = await self._request(
                "PUT", path, json={"vectors": {"size": self._dimensions, "distance": "Cosine"}},
            )
            created.raise_for_status()
            indexed = await self._request(
                "PUT", f"{path}/index",
                json={"field_name": "tenant_id", "field_schema": "keyword"},
            )
            indexed.raise_for_status()
        else:
            resp.raise_for_status()
        self._collection_ready = True

    async def _vector(self, text: str) -> list[float]:
        try:
            return await self._embed(text)
        except Exception as exc:
            raise SearchError(f"Embedding failed: {exc}") from exc

    async def index(self, tenant_id: str, kind: str, record_id: int, text: str) -> None:
        vector = await self._vector(text)
        point = {
            "id": point_id(tenant_id, kind, record_id),
            "vector": vector,
            "payload": {
                "tenant_id": tenant_id,
                "kind": kind,
                "record_id": record_id,
                "key": record_key(kind, record_id),
                "description": text,
            },
        }
        try:
            await self._ensure_collection()
            resp = await self._request(
                "PUT", f"/collections/{self._collection}/points?wait=true",
                json={"points": [point]},
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise SearchError(f"Qdrant upsert failed: {exc}") from exc
        logger.info("Indexed %s for %s", record_key(kind, record_id), tenant_id)

    async def search(self, tenant_id: str, query: str, limit: int = 20) -> list[SearchHit]:
        vector = await self._vector(query)
        try:
            await self._ensure_collection()
            resp = await self._request(
                "POST", f"/collections/{self._collection}/points/search",
                json={
                    "vector": vector,
                    "limit": limit,
                    "with_payload": True,
                    "filter": {"must": [{"key": "tenant_id", "match": {"value": tenant_id}}]},
                },
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            raise SearchError(f"Qdrant search failed: {exc}") from exc

        hits = []
        for hit in data.get("result", []):
            payload = hit.get("payload") or {}
            if payload.get("tenant_id") != tenant_id or "record_id" not in payload:
                continue
            hits.append(SearchHit(
                record_id=int(payload["record_id"]),
                kind=payload.get("kind", ""),
                score=float(hit.get("score", 0.0)),
            ))
        return hits
