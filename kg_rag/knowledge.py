"""
Knowledge operations spanning the graph store and the vector index.

The graph store is the source of truth; the vector index is a derived cache.
The two are written independently and there is no compensation step: a node
whose vector upsert fails stays in the graph (visible to direct lookups,
invisible to similarity search), and a node deleted from the graph stays
deleted even if removing its vector point fails.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from .config import RetrievalConfig
from .embeddings import EmbeddingGateway, EmbeddingResult
from .graph_store import (
    GraphStore,
    KnowledgeNode,
    KnowledgeRelation,
    NodeMetadata,
    NodeType,
    new_id,
)
from .vector_store import VectorIndex


@dataclass
class ScoredNode:
    node: KnowledgeNode
    score: float

    def to_dict(self) -> Dict[str, Any]:
        data = self.node.to_dict()
        data["score"] = self.score
        return data


@dataclass
class KnowledgeGraphView:
    nodes: List[KnowledgeNode] = field(default_factory=list)
    relations: List[KnowledgeRelation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [r.to_dict() for r in self.relations],
        }


def embedding_text(title: str, content: str) -> str:
    return f"{title} {content}"


class KnowledgeService:
    """Node and relation lifecycle across both stores, scoped by tenant."""

    def __init__(
        self,
        embeddings: EmbeddingGateway,
        vectors: VectorIndex,
        graph: GraphStore,
        retrieval: Optional[RetrievalConfig] = None,
    ):
        self._embeddings = embeddings
        self._vectors = vectors
        self._graph = graph
        self._retrieval = retrieval or RetrievalConfig()

    @property
    def graph(self) -> GraphStore:
        return self._graph

    async def add_node(
        self,
        tenant_id: str,
        title: str,
        content: str,
        node_type: NodeType = NodeType.CONCEPT,
        metadata: Optional[NodeMetadata] = None,
        embedding: Optional[EmbeddingResult] = None,
    ) -> KnowledgeNode:
        """
        Embed, store and index a new node.

        ``embedding`` may be supplied when the caller already embedded the
        node's text; otherwise ``"{title} {content}"`` is embedded here.

        Raises:
            EmbeddingUnavailable: no provider could embed the text.
            VectorIndexError: the point could not be written; the node is
                already in the graph store at that point.
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")
        if embedding is None:
            embedding = await self._embeddings.embed(embedding_text(title, content))

        node = KnowledgeNode(
            node_id=new_id(),
            tenant_id=tenant_id,
            title=title,
            content=content,
            node_type=node_type,
            metadata=metadata or NodeMetadata(),
            embedding=embedding.vector,
            embedding_model=embedding.model,
        )
        await self._graph.add_node(node)

        namespace = embedding.namespace.value
        await self._vectors.upsert(
            node.node_id,
            namespace,
            embedding.vector,
            {
                "tenant_id": tenant_id,
                "node_id": node.node_id,
                "title": title,
                "content": content,
                "type": node.node_type.value,
                "embedding_model": embedding.model,
            },
        )
        logger.debug(
            "Added {} node {} ({} via {})",
            node.node_type.value,
            node.node_id,
            namespace,
            embedding.model,
        )
        return node

    async def add_relation(
        self,
        tenant_id: str,
        source_id: str,
        target_id: str,
        relation_type: str,
        strength: float = 0.5,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> KnowledgeRelation:
        relation = KnowledgeRelation(
            relation_id=new_id(),
            tenant_id=tenant_id,
            source_id=source_id,
            target_id=target_id,
            relation_type=relation_type,
            strength=strength,
            metadata=metadata or {},
        )
        return await self._graph.add_relation(relation)

    async def search_similar_nodes(
        self,
        query: str,
        tenant_id: str,
        limit: int = 10,
        threshold: Optional[float] = None,
    ) -> List[ScoredNode]:
        """Tenant-scoped similarity search, hydrated from the graph store, best first."""
        if threshold is None:
            threshold = self._retrieval.score_threshold
        embedding = await self._embeddings.embed(query)
        hits = await self._vectors.search(
            embedding.vector,
            embedding.namespace.value,
            tenant_id,
            limit=limit,
            score_threshold=threshold,
        )
        if not hits:
            return []

        nodes = await self._graph.get_nodes([h.id for h in hits], tenant_id)
        by_id = {n.node_id: n for n in nodes}
        scored = []
        for hit in hits:
            node = by_id.get(hit.id)
            if node is None:
                logger.debug("Vector point {} has no graph node; skipping", hit.id)
                continue
            scored.append(ScoredNode(node=node, score=hit.score))
        return scored

    async def get_knowledge_graph(self, tenant_id: str, limit: int = 100) -> KnowledgeGraphView:
        nodes, relations = await self._graph.get_graph(tenant_id, limit=limit)
        return KnowledgeGraphView(nodes=nodes, relations=relations)

    async def delete_node(self, node_id: str, tenant_id: str) -> Tuple[KnowledgeNode, List[str]]:
        """
        Delete a node, its relations and its vector point.

        Returns:
            The deleted node and the ids of the relations removed with it.

        Raises:
            NodeNotFound: missing, or owned by another tenant.
            VectorIndexError: the point could not be removed; the graph
                deletion is not rolled back.
        """
        node = await self._graph.get_node(node_id, tenant_id)
        removed = await self._graph.delete_node(node_id, tenant_id)
        await self._vectors.delete(node_id)
        logger.info(
            "Deleted node {} and {} relation(s) for tenant {}", node_id, len(removed), tenant_id
        )
        return node, removed
