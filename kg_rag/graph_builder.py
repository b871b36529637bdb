"""
Decomposes raw text into concept nodes joined by "similar" relations.

Each retained sentence becomes a ``concept`` node.  Once every node exists,
all unordered pairs embedded in the same vector namespace are compared by
cosine similarity; pairs at or above the threshold are related with
strength equal to their similarity.  The pass is quadratic in the segment
count, so documents are capped at ``max_segments``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
from loguru import logger

from .config import IngestConfig
from .embeddings import namespace_for_model
from .exceptions import DocumentTooLarge
from .graph_store import KnowledgeNode, KnowledgeRelation, NodeMetadata, NodeType
from .knowledge import KnowledgeService, embedding_text
from .segmenter import SentenceSegmenter

SIMILAR_RELATION = "similar"
DOCUMENT_TAG = "document"


@dataclass
class DecompositionResult:
    nodes: List[KnowledgeNode] = field(default_factory=list)
    relations: List[KnowledgeRelation] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "relations": [r.to_dict() for r in self.relations],
            "summary": self.summary,
        }


def similarity_matrix(vectors: List[List[float]]) -> np.ndarray:
    """Pairwise cosine similarities of equal-length vectors (zero rows score 0)."""
    matrix = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    unit = matrix / norms
    return unit @ unit.T


class SimilarityGraphBuilder:
    def __init__(
        self,
        knowledge: KnowledgeService,
        config: Optional[IngestConfig] = None,
        segmenter: Optional[SentenceSegmenter] = None,
    ):
        self._knowledge = knowledge
        self._config = config or IngestConfig()
        self._segmenter = segmenter or SentenceSegmenter(self._config)

    async def decompose(
        self, raw_text: str, tenant_id: str, source: Optional[str] = None
    ) -> DecompositionResult:
        """
        Turn a document into concept nodes and similarity relations.

        Args:
            raw_text: Document text.
            tenant_id: Owner of every node and relation created.
            source: Recorded in each node's metadata.

        Raises:
            DocumentTooLarge: more segments than ``max_segments``; nothing
                is written.
        """
        segments = self._segmenter.split(raw_text)
        if len(segments) > self._config.max_segments:
            raise DocumentTooLarge(len(segments), self._config.max_segments)

        logger.info(
            "Decomposing document from {} into {} segment(s)", source or "<text>", len(segments)
        )

        nodes: List[KnowledgeNode] = []
        for segment in segments:
            node = await self._knowledge.add_node(
                tenant_id,
                segment.title,
                segment.text,
                NodeType.CONCEPT,
                NodeMetadata(
                    source=source,
                    confidence=self._config.default_confidence,
                    tags=[DOCUMENT_TAG],
                    attributes={"segment_index": segment.index},
                ),
            )
            nodes.append(node)

        relations = await self._relate_similar(nodes, tenant_id)

        summary = f"Processed document with {len(nodes)} concepts and {len(relations)} relations"
        logger.info(summary)
        return DecompositionResult(nodes=nodes, relations=relations, summary=summary)

    async def _relate_similar(
        self, nodes: List[KnowledgeNode], tenant_id: str
    ) -> List[KnowledgeRelation]:
        # Vectors from different model families are not comparable.
        groups: Dict[str, List[KnowledgeNode]] = {}
        for node in nodes:
            if node.embedding:
                groups.setdefault(namespace_for_model(node.embedding_model).value, []).append(node)

        relations: List[KnowledgeRelation] = []
        threshold = self._config.similarity_threshold
        for namespace, members in groups.items():
            if len(members) < 2:
                continue
            sims = similarity_matrix([n.embedding for n in members])
            for i in range(len(members)):
                for j in range(i + 1, len(members)):
                    similarity = float(sims[i, j])
                    if similarity < threshold:
                        continue
                    relation = await self._knowledge.add_relation(
                        tenant_id,
                        members[i].node_id,
                        members[j].node_id,
                        SIMILAR_RELATION,
                        strength=min(max(similarity, 0.0), 1.0),
                        metadata={"similarity": similarity, "namespace": namespace},
                    )
                    relations.append(relation)
        return relations
