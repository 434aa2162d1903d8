"""
Qdrant Vector Store Integration

Similarity search over the scraped Frappe documentation stored in Qdrant.
This is the leaf of the retrieval pipeline: query text in, scored
passages out, sorted by descending similarity.

Documents are written by the ingestion scripts; this module only reads.
"""

from typing import Any, Dict, List, Optional

from loguru import logger
from qdrant_client import AsyncQdrantClient

from . import config
from .models import DocumentHit

# Payload keys that are lifted into DocumentHit fields rather than metadata
_RESERVED_PAYLOAD_KEYS = {
    "filename", "file_name", "title", "content", "text",
    "source_url", "sourceUrl", "metadata",
}


class FrappeDocsVectorStore:
    """
    Async Qdrant wrapper for Frappe documentation chunks.

    Embeds the query text with the configured embedding model and runs a
    cosine similarity query against the collection.
    """

    def __init__(
        self,
        embeddings,
        host: str = config.QDRANT_HOST,
        port: int = config.QDRANT_PORT,
        collection_name: str = config.QDRANT_COLLECTION,
        client: Optional[AsyncQdrantClient] = None
    ):
        """
        Initialize Qdrant vector store connection.

        Args:
            embeddings: Object exposing `async aembed_query(text) -> List[float]`
            host: Qdrant server hostname
            port: Qdrant server port
            collection_name: Name of the Qdrant collection
            client: Pre-built AsyncQdrantClient (tests, shared connections)
        """
        self.embeddings = embeddings
        self.collection_name = collection_name

        if client is None:
            logger.info(f"Connecting to Qdrant at {host}:{port}")
            client = AsyncQdrantClient(host=host, port=port)
        self.client = client

        logger.info(f"Qdrant vector store initialized: {collection_name}")

    async def search(
        self,
        query_text: str,
        limit: int = 10,
        threshold: float = 0.7
    ) -> List[DocumentHit]:
        """
        Find the passages most similar to a query.

        Args:
            query_text: Natural-language query
            limit: Maximum number of passages
            threshold: Minimum similarity score

        Returns:
            List[DocumentHit]: Passages sorted by descending similarity

        Raises:
            Exception: embedding or Qdrant failures propagate; the
                retrieval layer decides how to degrade.
        """
        vector = await self.embeddings.aembed_query(query_text)
        response = await self.client.query_points(
            collection_name=self.collection_name,
            query=vector,
            limit=limit,
            score_threshold=threshold,
            with_payload=True
        )

        hits = [self._to_hit(point) for point in response.points]
        # Qdrant pre-filters, but the threshold is enforced here as well
        hits = [hit for hit in hits if hit.similarity >= threshold]
        hits.sort(key=lambda hit: hit.similarity, reverse=True)

        logger.debug(f"Qdrant returned {len(hits)} hits for: {query_text[:60]}")
        return hits

    @staticmethod
    def _to_hit(point: Any) -> DocumentHit:
        payload: Dict[str, Any] = dict(point.payload or {})

        metadata = dict(payload.get("metadata") or {})
        for key, value in payload.items():
            if key not in _RESERVED_PAYLOAD_KEYS:
                metadata.setdefault(key, value)

        filename = payload.get("filename") or payload.get("file_name") or str(point.id)
        return DocumentHit(
            id=str(point.id),
            filename=filename,
            title=payload.get("title") or filename,
            content=payload.get("content") or payload.get("text") or "",
            similarity=float(point.score or 0.0),
            source_url=payload.get("source_url") or payload.get("sourceUrl"),
            metadata=metadata
        )

    async def get_collection_stats(self) -> Dict[str, Any]:
        """
        Get collection statistics.

        Returns:
            dict: collection name and number of indexed points
        """
        info = await self.client.get_collection(self.collection_name)
        return {
            "collection_name": self.collection_name,
            "documents_indexed": info.points_count or 0
        }

    async def close(self) -> None:
        """Close the Qdrant connection."""
        await self.client.close()
