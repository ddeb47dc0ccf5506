"""Tests for valora.adapters.qdrant_search — Qdrant REST calls via httpx.MockTransport."""

import json

import httpx
import pytest

from valora.adapters.qdrant_search import QdrantSearch, point_id, record_key
from valora.errors import SearchError
from valora.ports.search_port import RECURRING, TRANSACTION


async def fake_embed(text):
    return [0.1, 0.2, 0.3]


class FakeQdrant:
    """Records requests and answers like a Qdrant server."""

    def __init__(self, collection_exists=True, search_result=None, fail_points=False):
        self.collection_exists = collection_exists
        self.search_result = search_result or []
        self.fail_points = fail_points
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body, request.headers))
        path = request.url.path
        if request.method == "GET" and path == "/collections/descriptions":
            return httpx.Response(200 if self.collection_exists else 404, json={"result": {}})
        if path.endswith("/points") and self.fail_points:
            return httpx.Response(500, json={"status": "error"})
        if path.endswith("/points/search"):
            return httpx.Response(200, json={"result": self.search_result})
        return httpx.Response(200, json={"result": True})


def _search(server, api_key=""):
    return QdrantSearch(
        "http://qdrant:6333/", "descriptions", fake_embed, 3,
        api_key=api_key, transport=httpx.MockTransport(server),
    )


class TestKeys:
    def test_record_key(self):
        assert record_key(TRANSACTION, 12) == "T-12"
        assert record_key(RECURRING, 12) == "RT-12"

    def test_point_id_is_stable_and_tenant_scoped(self):
        assert point_id("a", TRANSACTION, 1) == point_id("a", TRANSACTION, 1)
        assert point_id("a", TRANSACTION, 1) != point_id("b", TRANSACTION, 1)
        assert point_id("a", TRANSACTION, 1) != point_id("a", RECURRING, 1)


class TestIndex:
    @pytest.mark.asyncio
    async def test_creates_collection_once(self):
        server = FakeQdrant(collection_exists=False)
        search = _search(server, api_key="secret")
        await search.index("user-1", TRANSACTION, 7, "Coffee")
        await search.index("user-1", RECURRING, 8, "Rent")

        calls = [(method, path) for method, path, _, _ in server.requests]
        assert calls == [
            ("GET", "/collections/descriptions"),
            ("PUT", "/collections/descriptions"),
            ("PUT", "/collections/descriptions/index"),
            ("PUT", "/collections/descriptions/points"),
            ("PUT", "/collections/descriptions/points"),
        ]
        assert server.requests[1][2]["vectors"] == {"size": 3, "distance": "Cosine"}
        assert server.requests[0][3]["api-key"] == "secret"

    @pytest.mark.asyncio
    async def test_point_payload(self):
        server = FakeQdrant()
        await _search(server).index("user-1", RECURRING, 8, "Rent")
        point = server.requests[-1][2]["points"][0]
        assert point["id"] == point_id("user-1", RECURRING, 8)
        assert point["vector"] == [0.1, 0.2, 0.3]
        assert point["payload"] == {
            "tenant_id": "user-1", "kind": RECURRING, "record_id": 8,
            "key": "RT-8", "description": "Rent",
        }

    @pytest.mark.asyncio
    async def test_http_failure_raises_search_error(self):
        with pytest.raises(SearchError, match="upsert"):
            await _search(FakeQdrant(fail_points=True)).index("user-1", TRANSACTION, 1, "x")

    @pytest.mark.asyncio
    async def test_embedding_failure_raises_search_error(self):
        async def broken(text):
            raise RuntimeError("quota")

        search = QdrantSearch("http://q", "descriptions", broken, 3, transport=httpx.MockTransport(FakeQdrant()))
        with pytest.raises(SearchError, match="Embedding failed"):
            await search.index("user-1", TRANSACTION, 1, "x")


class TestSearch:
    @pytest.mark.asyncio
    async def test_filters_by_tenant(self):
        server = FakeQdrant(search_result=[
            {"id": "a", "score": 0.9, "payload": {"tenant_id": "user-1", "kind": TRANSACTION, "record_id": 3}},
            {"id": "b", "score": 0.8, "payload": {"tenant_id": "user-2", "kind": TRANSACTION, "record_id": 4}},
            {"id": "c", "score": 0.7, "payload": {"tenant_id": "user-1", "kind": RECURRING, "record_id": 5}},
        ])
        hits = await _search(server).search("user-1", "coffee", limit=5)

        assert [(h.record_id, h.kind, h.score) for h in hits] == [
            (3, TRANSACTION, 0.9), (5, RECURRING, 0.7),
        ]
        body = server.requests[-1][2]
        assert body["limit"] == 5
        assert body["filter"] == {"must": [{"key": "tenant_id", "match": {"value": "user-1"}}]}
