"""
Knowledge graph store backed by NetworkX with GraphML persistence.

Knowledge nodes are directed-graph nodes and relations are edges, so the
store gives at most one relation per ordered (source, target) pair.  Every
node keeps an explicit adjacency list (``connections``) that is updated in the
same locked step as the edge insert, which keeps adjacency symmetric.
"""

import asyncio
import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import networkx as nx
from loguru import logger

from .config import GraphConfig
from .exceptions import DuplicateRelationError, GraphStoreError, NodeNotFound


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    """Opaque identifier shared by a node and its vector point."""
    return str(uuid.uuid4())


def _check_unit_interval(name: str, value: Optional[float]) -> None:
    if value is not None and not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")


class NodeType(str, Enum):
    DOCUMENT = "document"
    CONCEPT = "concept"
    ENTITY = "entity"
    RELATION = "relation"


@dataclass
class NodeMetadata:
    source: Optional[str] = None
    confidence: Optional[float] = None
    tags: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    # Unconstrained extras supplied by callers.
    attributes: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        _check_unit_interval("confidence", self.confidence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "confidence": self.confidence,
            "tags": list(self.tags),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "attributes": dict(self.attributes),
        }


@dataclass
class KnowledgeNode:
    """A knowledge graph node owned by one tenant."""

    node_id: str
    tenant_id: str
    title: str
    content: str
    node_type: NodeType
    metadata: NodeMetadata = field(default_factory=NodeMetadata)
    embedding: Optional[List[float]] = None
    embedding_model: Optional[str] = None
    connections: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.node_type = NodeType(self.node_type)

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        data = {
            "node_id": self.node_id,
            "tenant_id": self.tenant_id,
            "title": self.title,
            "content": self.content,
            "type": self.node_type.value,
            "metadata": self.metadata.to_dict(),
            "embedding_model": self.embedding_model,
            "connections": list(self.connections),
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data


@dataclass
class KnowledgeRelation:
    """A directed, weighted relation between two nodes of the same tenant."""

    relation_id: str
    tenant_id: str
    source_id: str
    target_id: str
    relation_type: str
    strength: float = 0.5
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_now)

    def __post_init__(self):
        _check_unit_interval("strength", self.strength)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "relation_id": self.relation_id,
            "tenant_id": self.tenant_id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "relation_type": self.relation_type,
            "strength": self.strength,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
        }


class GraphStore:
    """
    Tenant-scoped node/relation storage in a NetworkX DiGraph.

    The graph is loaded from disk on first access and saved explicitly via
    save(); an empty ``storage_path`` keeps it in memory only.  All public
    methods are async; the sync bodies run in the default executor under a
    re-entrant lock.
    """

    def __init__(self, config: Optional[GraphConfig] = None):
        self._config = config or GraphConfig()
        self._graph: Optional[nx.DiGraph] = None
        self._metadata: Dict[str, Any] = {}
        self._lock = threading.RLock()
        # tenant_id -> node ids, relation_id -> (source, target)
        self._tenant_index: Dict[str, Set[str]] = {}
        self._relation_index: Dict[str, Tuple[str, str]] = {}

        if self._persistent:
            Path(self._config.storage_path).mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def _persistent(self) -> bool:
        return bool(self._config.storage_path)

    @property
    def _graph_path(self) -> Path:
        return Path(self._config.storage_path) / self._config.graph_filename

    @property
    def _metadata_path(self) -> Path:
        return Path(self._config.storage_path) / self._config.metadata_filename

    # ------------------------------------------------------------------
    # Internal graph lifecycle
    # ------------------------------------------------------------------

    @property
    def _g(self) -> nx.DiGraph:
        if self._graph is None:
            with self._lock:
                if self._graph is None:
                    self._load_or_create()
        return self._graph

    def _load_or_create(self) -> None:
        if self._persistent and self._graph_path.exists():
            try:
                graph = nx.read_graphml(str(self._graph_path))
            except Exception as exc:
                raise GraphStoreError(
                    f"Failed to load graph from {self._graph_path}: {exc}"
                ) from exc
            if self._metadata_path.exists():
                self._metadata = json.loads(self._metadata_path.read_text(encoding="utf-8"))
            logger.info(
                "Loaded graph: {} nodes, {} edges",
                graph.number_of_nodes(),
                graph.number_of_edges(),
            )
        else:
            graph = nx.DiGraph()
            self._metadata = {"created_at": _now()}
            logger.debug("Created new knowledge graph")

        self._graph = graph
        self._rebuild_indexes()

    def _rebuild_indexes(self) -> None:
        self._tenant_index = {}
        for node_id, data in self._graph.nodes(data=True):
            self._tenant_index.setdefault(data.get("tenant_id", ""), set()).add(node_id)
        self._relation_index = {
            data["relation_id"]: (src, tgt)
            for src, tgt, data in self._graph.edges(data=True)
            if "relation_id" in data
        }

    # ------------------------------------------------------------------
    # (De)serialisation of graph attributes
    # ------------------------------------------------------------------

    @staticmethod
    def _node_attrs(node: KnowledgeNode) -> Dict[str, Any]:
        # GraphML cannot hold None or containers: drop the former, JSON-encode the latter.
        attrs = {
            "tenant_id": node.tenant_id,
            "title": node.title,
            "content": node.content,
            "node_type": node.node_type.value,
            "tags": json.dumps(node.metadata.tags),
            "attributes": json.dumps(node.metadata.attributes),
            "created_at": node.metadata.created_at,
            "updated_at": node.metadata.updated_at,
            "connections": json.dumps(node.connections),
        }
        if node.metadata.source is not None:
            attrs["source"] = node.metadata.source
        if node.metadata.confidence is not None:
            attrs["confidence"] = float(node.metadata.confidence)
        if node.embedding is not None:
            attrs["embedding"] = json.dumps(node.embedding)
        if node.embedding_model:
            attrs["embedding_model"] = node.embedding_model
        return attrs

    def _make_node(self, node_id: str) -> KnowledgeNode:
        d = self._g.nodes[node_id]
        embedding = d.get("embedding")
        confidence = d.get("confidence")
        return KnowledgeNode(
            node_id=node_id,
            tenant_id=d.get("tenant_id", ""),
            title=d.get("title", ""),
            content=d.get("content", ""),
            node_type=NodeType(d.get("node_type", NodeType.CONCEPT.value)),
            metadata=NodeMetadata(
                source=d.get("source"),
                confidence=float(confidence) if confidence is not None else None,
                tags=json.loads(d.get("tags", "[]")),
                created_at=d.get("created_at", ""),
                updated_at=d.get("updated_at", ""),
                attributes=json.loads(d.get("attributes", "{}")),
            ),
            embedding=json.loads(embedding) if embedding else None,
            embedding_model=d.get("embedding_model"),
            connections=json.loads(d.get("connections", "[]")),
        )

    def _make_relation(self, src: str, tgt: str) -> KnowledgeRelation:
        d = self._g[src][tgt]
        return KnowledgeRelation(
            relation_id=d.get("relation_id", ""),
            tenant_id=d.get("tenant_id", ""),
            source_id=src,
            target_id=tgt,
            relation_type=d.get("relation_type", ""),
            strength=float(d.get("strength", 0.5)),
            metadata=json.loads(d.get("metadata", "{}")),
            created_at=d.get("created_at", ""),
        )

    def _tenant_nodes(self, tenant_id: str) -> Set[str]:
        # The index is only built once the graph has been loaded.
        self._g
        return self._tenant_index.get(tenant_id, set())

    def _owned(self, node_id: str, tenant_id: str) -> bool:
        return node_id in self._tenant_nodes(tenant_id)

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Eagerly load the graph so the first request is not delayed."""
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, lambda: self._g)

    async def add_node(self, node: KnowledgeNode) -> KnowledgeNode:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, lambda: self._add_node_sync(node))

    def _add_node_sync(self, node: KnowledgeNode) -> KnowledgeNode:
        with self._lock:
            if node.node_id in self._g:
                raise GraphStoreError(f"Knowledge node already exists: {node.node_id}")
            node.connections = []
            self._g.add_node(node.node_id, **self._node_attrs(node))
            self._tenant_index.setdefault(node.tenant_id, set()).add(node.node_id)
        return node

    async def get_node(self, node_id: str, tenant_id: str) -> Optional[KnowledgeNode]:
        """Return the node, or None if it is missing or owned by another tenant."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None, lambda: self._get_node_sync(node_id, tenant_id)
        )

    def _get_node_sync(self, node_id: str, tenant_id: str) -> Optional[KnowledgeNode]:
        with self._lock:
            if not self._owned(node_id, tenant_id):
                return None
            return self._make_node(node_id)

    async def get_nodes(self, node_ids: Iterable[str], tenant_id: str) -> List[KnowledgeNode]:
        """Hydrate nodes in the given order, skipping ids this tenant does not own."""
        ids = list(node_ids)
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None,
            lambda: [
                node
                for node in (self._get_node_sync(nid, tenant_id) for nid in ids)
                if node is not None
            ],
        )

    async def find_nodes(
        self,
        tenant_id: str,
        node_type: Optional[NodeType] = None,
        tag: Optional[str] = None,
        text: Optional[str] = None,
        connected_to: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[KnowledgeNode]:
        """
        Query a tenant's nodes, newest first.

        Args:
            node_type: Only nodes of this type.
            tag: Only nodes carrying this tag.
            text: Free-text match; a node matches when any term occurs in
                its title or content (case-insensitive).
            connected_to: Only nodes whose adjacency list contains this id.
            limit: Maximum number of nodes returned.
        """
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None,
            lambda: self._find_nodes_sync(tenant_id, node_type, tag, text, connected_to, limit),
        )

    def _find_nodes_sync(self, tenant_id, node_type, tag, text, connected_to, limit):
        terms = [t for t in (text or "").lower().split() if t]
        wanted_type = NodeType(node_type).value if node_type is not None else None
        with self._lock:
            owned = self._tenant_nodes(tenant_id)
            matched = []
            # Filter on raw attributes; only the survivors are decoded.
            for node_id in reversed(list(self._g.nodes)):
                if node_id not in owned:
                    continue
                d = self._g.nodes[node_id]
                if wanted_type is not None and d.get("node_type") != wanted_type:
                    continue
                if tag is not None and tag not in json.loads(d.get("tags", "[]")):
                    continue
                if connected_to is not None and connected_to not in json.loads(
                    d.get("connections", "[]")
                ):
                    continue
                if terms:
                    haystack = f"{d.get('title', '')} {d.get('content', '')}".lower()
                    if not any(term in haystack for term in terms):
                        continue
                matched.append((d.get("created_at", ""), node_id))

            matched.sort(key=lambda item: item[0], reverse=True)
            if limit is not None:
                matched = matched[:limit]
            return [self._make_node(node_id) for _, node_id in matched]

    async def add_relation(self, relation: KnowledgeRelation) -> KnowledgeRelation:
        """
        Insert a relation and append each endpoint to the other's adjacency list.

        Raises:
            NodeNotFound: an endpoint is missing or belongs to another tenant.
            DuplicateRelationError: the ordered pair is already related.
        """
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None, lambda: self._add_relation_sync(relation)
        )

    def _add_relation_sync(self, relation: KnowledgeRelation) -> KnowledgeRelation:
        src, tgt = relation.source_id, relation.target_id
        if src == tgt:
            raise GraphStoreError("A node cannot be related to itself")

        with self._lock:
            for node_id in (src, tgt):
                if not self._owned(node_id, relation.tenant_id):
                    raise NodeNotFound(node_id)
            if self._g.has_edge(src, tgt):
                raise DuplicateRelationError(
                    f"Relation {src} -> {tgt} already exists for this tenant"
                )
            if relation.relation_id in self._relation_index:
                raise DuplicateRelationError(f"Relation id already used: {relation.relation_id}")

            self._g.add_edge(
                src,
                tgt,
                relation_id=relation.relation_id,
                tenant_id=relation.tenant_id,
                relation_type=relation.relation_type,
                strength=float(relation.strength),
                metadata=json.dumps(relation.metadata),
                created_at=relation.created_at,
            )
            self._relation_index[relation.relation_id] = (src, tgt)

            touched = _now()
            for node_id, other in ((src, tgt), (tgt, src)):
                attrs = self._g.nodes[node_id]
                connections = json.loads(attrs.get("connections", "[]"))
                if other not in connections:
                    connections.append(other)
                attrs["connections"] = json.dumps(connections)
                attrs["updated_at"] = touched

        return relation

    async def get_relations(
        self,
        tenant_id: str,
        node_ids: Optional[Iterable[str]] = None,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
        relation_type: Optional[str] = None,
    ) -> List[KnowledgeRelation]:
        """Relations of a tenant, optionally restricted to those touching ``node_ids``."""
        wanted = set(node_ids) if node_ids is not None else None
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None,
            lambda: self._get_relations_sync(tenant_id, wanted, source_id, target_id, relation_type),
        )

    def _get_relations_sync(self, tenant_id, wanted, source_id, target_id, relation_type):
        with self._lock:
            relations = []
            for src, tgt, data in self._g.edges(data=True):
                if data.get("tenant_id") != tenant_id:
                    continue
                if wanted is not None and src not in wanted and tgt not in wanted:
                    continue
                if source_id is not None and src != source_id:
                    continue
                if target_id is not None and tgt != target_id:
                    continue
                if relation_type is not None and data.get("relation_type") != relation_type:
                    continue
                relations.append(self._make_relation(src, tgt))
            return relations

    async def get_graph(
        self, tenant_id: str, limit: int = 100
    ) -> Tuple[List[KnowledgeNode], List[KnowledgeRelation]]:
        """The newest ``limit`` nodes of a tenant plus every relation touching them."""
        nodes = await self.find_nodes(tenant_id, limit=limit)
        relations = await self.get_relations(tenant_id, node_ids=[n.node_id for n in nodes])
        return nodes, relations

    async def delete_node(self, node_id: str, tenant_id: str) -> List[str]:
        """
        Remove a node with every relation that references it.

        Returns:
            The ids of the removed relations.

        Raises:
            NodeNotFound: missing, or owned by another tenant.
        """
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None, lambda: self._delete_node_sync(node_id, tenant_id)
        )

    def _delete_node_sync(self, node_id: str, tenant_id: str) -> List[str]:
        with self._lock:
            if not self._owned(node_id, tenant_id):
                raise NodeNotFound(node_id)

            incident = list(self._g.out_edges(node_id, data=True)) + list(
                self._g.in_edges(node_id, data=True)
            )
            removed = [data["relation_id"] for _, _, data in incident if "relation_id" in data]

            touched = _now()
            for neighbour in set(self._g.successors(node_id)) | set(self._g.predecessors(node_id)):
                attrs = self._g.nodes[neighbour]
                connections = [c for c in json.loads(attrs.get("connections", "[]")) if c != node_id]
                attrs["connections"] = json.dumps(connections)
                attrs["updated_at"] = touched

            self._g.remove_node(node_id)
            self._tenant_index[tenant_id].discard(node_id)
            for relation_id in removed:
                self._relation_index.pop(relation_id, None)
        return removed

    async def save(self) -> None:
        """Persist the graph and metadata to disk (no-op for in-memory stores)."""
        if not self._persistent:
            return
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._save_sync)

    def _save_sync(self) -> None:
        with self._lock:
            try:
                nx.write_graphml(self._g, str(self._graph_path))
            except Exception as exc:
                raise GraphStoreError(f"Failed to save graph: {exc}") from exc
            self._metadata.update(
                {
                    "updated_at": _now(),
                    "nodes_count": self._g.number_of_nodes(),
                    "edges_count": self._g.number_of_edges(),
                }
            )
            self._metadata_path.write_text(
                json.dumps(self._metadata, indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        logger.debug(
            "Graph saved: {} nodes, {} edges",
            self._metadata["nodes_count"],
            self._metadata["edges_count"],
        )

    async def get_stats(self, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, lambda: self._stats_sync(tenant_id))

    def _stats_sync(self, tenant_id: Optional[str]) -> Dict[str, Any]:
        with self._lock:
            if tenant_id is None:
                view = self._g
            else:
                view = self._g.subgraph(self._tenant_nodes(tenant_id))

            node_types: Dict[str, int] = {}
            for _, d in view.nodes(data=True):
                t = d.get("node_type", "unknown")
                node_types[t] = node_types.get(t, 0) + 1

            relation_types: Dict[str, int] = {}
            for _, _, d in view.edges(data=True):
                t = d.get("relation_type", "unknown")
                relation_types[t] = relation_types.get(t, 0) + 1

            return {
                "nodes_count": view.number_of_nodes(),
                "edges_count": view.number_of_edges(),
                "node_types": node_types,
                "relation_types": relation_types,
                "density": nx.density(view) if view.number_of_nodes() > 1 else 0.0,
            }
