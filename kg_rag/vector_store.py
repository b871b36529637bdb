"""
Qdrant vector index for knowledge nodes.

A single collection holds one point per node.  Each point carries named
vectors, one slot per embedding family (``openai`` and ``ollama``), so a node
embedded by the fallback model lives beside nodes embedded by the primary
model without mixing dimensions.  Point ids are the node ids.
"""

import asyncio
import math
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger
from qdrant_client import QdrantClient
from qdrant_client.http import models
from qdrant_client.http.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PointStruct,
    VectorParams,
)

from .config import QdrantConfig
from .exceptions import VectorIndexError

TENANT_FIELD = "tenant_id"


class SearchResult:
    """A single vector search hit."""

    __slots__ = ("id", "score", "payload")

    def __init__(self, id: str, score: float, payload: Dict[str, Any]):
        self.id = id
        self.score = score
        self.payload = payload

    def __repr__(self) -> str:
        return f"SearchResult(id={self.id!r}, score={self.score:.4f})"


class VectorIndex:
    """Tenant-filtered nearest-neighbour search over named vectors."""

    def __init__(
        self,
        config: Optional[QdrantConfig] = None,
        client: Optional[QdrantClient] = None,
    ):
        self._config = config or QdrantConfig()
        self._client: Optional[QdrantClient] = client
        self._dims: Dict[str, int] = dict(self._config.namespace_dims)

    @property
    def collection_name(self) -> str:
        return self._config.collection_name

    @property
    def namespaces(self) -> List[str]:
        return list(self._dims)

    @property
    def _lazy_client(self) -> QdrantClient:
        if self._client is None:
            location = self._config.location
            if location == ":memory:":
                self._client = QdrantClient(location=":memory:")
            elif location:
                storage = Path(location)
                storage.mkdir(parents=True, exist_ok=True)
                self._client = QdrantClient(path=str(storage))
            else:
                self._client = QdrantClient(
                    url=self._config.url,
                    api_key=self._config.api_key,
                )
        return self._client

    async def _run(self, action: str, fn):
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except VectorIndexError:
            raise
        except Exception as exc:
            raise VectorIndexError(f"Failed to {action}: {exc}") from exc

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        await self.ensure_schema()

    async def ensure_schema(self) -> None:
        """
        Make the collection carry exactly the configured named vectors.

        A collection created with a single unnamed vector, or with a missing
        or mis-sized slot, is dropped and recreated.  Existing points in such
        a collection are lost.
        """
        await self._run("prepare vector collection", self._ensure_schema_sync)

    def _ensure_schema_sync(self) -> None:
        client = self._lazy_client
        name = self.collection_name

        if client.collection_exists(name):
            if self._schema_matches(client.get_collection(name)):
                logger.debug("Collection '{}' already has the expected layout", name)
                return
            logger.warning(
                "Collection '{}' has an incompatible vector layout; recreating it", name
            )
            client.delete_collection(name)

        client.create_collection(
            collection_name=name,
            vectors_config={
                namespace: VectorParams(size=dim, distance=Distance.COSINE)
                for namespace, dim in self._dims.items()
            },
        )
        client.create_payload_index(
            collection_name=name,
            field_name=TENANT_FIELD,
            field_schema=models.PayloadSchemaType.KEYWORD,
        )
        logger.info(
            "Created collection '{}' with vectors {}", name, self._dims
        )

    def _schema_matches(self, info) -> bool:
        vectors = info.config.params.vectors
        if not isinstance(vectors, dict):
            return False
        for namespace, dim in self._dims.items():
            params = vectors.get(namespace)
            if params is None or params.size != dim:
                return False
        return True

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def _check_vector(self, namespace: str, vector: List[float]) -> None:
        if namespace not in self._dims:
            raise VectorIndexError(
                f"Unknown vector namespace '{namespace}'. Valid: {self.namespaces}"
            )
        expected = self._dims[namespace]
        if len(vector) != expected:
            raise VectorIndexError(
                f"Vector for namespace '{namespace}' has {len(vector)} dimensions, "
                f"expected {expected}"
            )

    async def upsert(
        self,
        node_id: str,
        namespace: str,
        vector: List[float],
        payload: Dict[str, Any],
    ) -> None:
        """Store one node's vector; the payload must carry its tenant id."""
        self._check_vector(namespace, vector)
        if not payload.get(TENANT_FIELD):
            raise VectorIndexError(f"Payload for point {node_id} has no {TENANT_FIELD}")

        point = PointStruct(id=node_id, vector={namespace: list(vector)}, payload=payload)
        await self._run(
            f"upsert point {node_id}",
            lambda: self._lazy_client.upsert(
                collection_name=self.collection_name, points=[point], wait=True
            ),
        )
        logger.debug("Upserted point {} into '{}'", node_id, namespace)

    async def delete(self, node_id: str) -> None:
        await self._run(
            f"delete point {node_id}",
            lambda: self._lazy_client.delete(
                collection_name=self.collection_name,
                points_selector=models.PointIdsList(points=[node_id]),
                wait=True,
            ),
        )

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        query_vector: List[float],
        namespace: str,
        tenant_id: str,
        limit: int = 5,
        score_threshold: float = 0.7,
    ) -> List[SearchResult]:
        """
        Return up to ``limit`` hits of ``tenant_id`` scoring at least
        ``score_threshold``, best first.
        """
        self._check_vector(namespace, query_vector)
        tenant_filter = Filter(
            must=[FieldCondition(key=TENANT_FIELD, match=MatchValue(value=tenant_id))]
        )

        response = await self._run(
            "search vectors",
            lambda: self._lazy_client.query_points(
                collection_name=self.collection_name,
                query=list(query_vector),
                using=namespace,
                query_filter=tenant_filter,
                limit=limit,
                # Qdrant drops scores equal to its threshold; keep the boundary here instead.
                score_threshold=math.nextafter(score_threshold, -math.inf),
                with_payload=True,
            ),
        )

        results = []
        for point in response.points:
            payload = point.payload or {}
            if payload.get(TENANT_FIELD) != tenant_id:
                continue
            if point.score < score_threshold:
                continue
            results.append(SearchResult(id=str(point.id), score=point.score, payload=payload))
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def count(self, tenant_id: Optional[str] = None) -> int:
        count_filter = None
        if tenant_id is not None:
            count_filter = Filter(
                must=[FieldCondition(key=TENANT_FIELD, match=MatchValue(value=tenant_id))]
            )
        result = await self._run(
            "count points",
            lambda: self._lazy_client.count(
                collection_name=self.collection_name,
                count_filter=count_filter,
                exact=True,
            ),
        )
        return result.count

    async def get_stats(self) -> Dict[str, Any]:
        try:
            info = await self._run(
                "read collection info",
                lambda: self._lazy_client.get_collection(self.collection_name),
            )
        except VectorIndexError as exc:
            return {"name": self.collection_name, "error": str(exc)}
        return {
            "name": self.collection_name,
            "points_count": info.points_count,
            "status": info.status.name if hasattr(info.status, "name") else str(info.status),
            "vectors": dict(self._dims),
        }

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
