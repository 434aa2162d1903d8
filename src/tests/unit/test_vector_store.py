"""
Unit Tests for the Qdrant Vector Store

Uses an AsyncMock in place of AsyncQdrantClient.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.retrieval.vector_store import FrappeDocsVectorStore


def point(point_id, score, **payload):
    return SimpleNamespace(id=point_id, score=score, payload=payload)


@pytest.fixture
def embeddings():
    mock = MagicMock()
    mock.aembed_query = AsyncMock(return_value=[0.1] * 8)
    return mock


@pytest.fixture
def qdrant_client():
    client = MagicMock()
    client.query_points = AsyncMock()
    client.get_collection = AsyncMock(return_value=SimpleNamespace(points_count=42))
    client.close = AsyncMock()
    return client


class TestSearch:
    """Tests for similarity search."""

    @pytest.mark.asyncio
    async def test_maps_payload_to_hits(self, embeddings, qdrant_client):
        qdrant_client.query_points.return_value = SimpleNamespace(points=[
            point(7, 0.74, filename="api/document.json", title="Document API",
                  content="frappe.get_doc", sourceUrl="https://frappeframework.com/docs/api",
                  metadata={"processedAt": "2026-09-01T00:00:00Z"}, section="api"),
            point("abc", 0.91, file_name="doctype.json", text="A DocType is..."),
        ])
        store = FrappeDocsVectorStore(embeddings, collection_name="frappe_docs", client=qdrant_client)

        hits = await store.search("get a document", limit=5, threshold=0.5)

        assert [hit.id for hit in hits] == ["abc", "7"]
        assert hits[0].filename == "doctype.json"
        assert hits[0].title == "doctype.json"
        assert hits[0].content == "A DocType is..."
        assert hits[1].source_url == "https://frappeframework.com/docs/api"
        assert hits[1].metadata == {"processedAt": "2026-09-01T00:00:00Z", "section": "api"}

        embeddings.aembed_query.assert_awaited_once_with("get a document")
        kwargs = qdrant_client.query_points.await_args.kwargs
        assert kwargs["collection_name"] == "frappe_docs"
        assert kwargs["limit"] == 5
        assert kwargs["score_threshold"] == 0.5
        assert kwargs["with_payload"] is True

    @pytest.mark.asyncio
    async def test_threshold_enforced_locally(self, embeddings, qdrant_client):
        qdrant_client.query_points.return_value = SimpleNamespace(points=[
            point(1, 0.4, filename="low.json"),
            point(2, 0.8, filename="high.json"),
        ])
        store = FrappeDocsVectorStore(embeddings, client=qdrant_client)

        hits = await store.search("anything", threshold=0.7)
        assert [hit.filename for hit in hits] == ["high.json"]

    @pytest.mark.asyncio
    async def test_errors_propagate(self, embeddings, qdrant_client):
        qdrant_client.query_points.side_effect = ConnectionError("qdrant unavailable")
        store = FrappeDocsVectorStore(embeddings, client=qdrant_client)

        with pytest.raises(ConnectionError):
            await store.search("anything")


class TestCollection:
    """Tests for collection stats and shutdown."""

    @pytest.mark.asyncio
    async def test_collection_stats(self, embeddings, qdrant_client):
        store = FrappeDocsVectorStore(embeddings, collection_name="frappe_docs", client=qdrant_client)
        stats = await store.get_collection_stats()

        assert stats == {"collection_name": "frappe_docs", "documents_indexed": 42}

    @pytest.mark.asyncio
    async def test_close(self, embeddings, qdrant_client):
        store = FrappeDocsVectorStore(embeddings, client=qdrant_client)
        await store.close()
        qdrant_client.close.assert_awaited_once()
