"""
Retrieval-then-generate pipeline.

    query -> embed -> tenant-filtered vector search -> hydrate nodes
          -> generate with context -> answer, sources, confidence
"""

import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger

from .config import RetrievalConfig
from .exceptions import QueryFailed
from .generation import GenerationGateway, GenerationRequest
from .graph_store import KnowledgeNode
from .knowledge import KnowledgeService, ScoredNode
from .providers import ProviderCredential, ProviderKind


@dataclass
class ChatRequest:
    message: str
    tenant_id: str
    session_id: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[ProviderKind] = None
    use_rag: bool = True
    credential_override: Optional[str] = None
    endpoint_override: Optional[str] = None
    tenant_credentials: List[ProviderCredential] = field(default_factory=list)
    # Per-request retrieval overrides; config values apply when unset.
    top_k: Optional[int] = None
    score_threshold: Optional[float] = None


@dataclass
class ChatResponse:
    answer: str
    sources: List[ScoredNode]
    confidence: float
    model: str
    provider: ProviderKind
    tokens: int
    processing_time_ms: int
    session_id: str

    @property
    def source_nodes(self) -> List[KnowledgeNode]:
        return [s.node for s in self.sources]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answer": self.answer,
            "sources": [s.to_dict() for s in self.sources],
            "confidence": self.confidence,
            "model": self.model,
            "provider": self.provider.value,
            "tokens": self.tokens,
            "processing_time_ms": self.processing_time_ms,
            "session_id": self.session_id,
        }


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{random.randint(0, 36 ** 9):x}"


def context_passage(node: KnowledgeNode) -> str:
    return f"{node.title}: {node.content} (Type: {node.node_type.value})"


class RAGOrchestrator:
    """Answers a tenant's question, grounded in that tenant's knowledge nodes."""

    def __init__(
        self,
        knowledge: KnowledgeService,
        generation: GenerationGateway,
        config: Optional[RetrievalConfig] = None,
    ):
        self._knowledge = knowledge
        self._generation = generation
        self._config = config or RetrievalConfig()

    def aggregate_confidence(self, nodes: List[KnowledgeNode]) -> float:
        """Mean stored confidence of the retrieved nodes."""
        if not nodes:
            return self._config.empty_confidence
        values = [
            n.metadata.confidence
            if n.metadata.confidence is not None
            else self._config.node_default_confidence
            for n in nodes
        ]
        return sum(values) / len(values)

    async def answer(self, request: ChatRequest) -> ChatResponse:
        """
        Run one RAG query.

        Raises:
            ValueError: empty message or missing tenant.
            QueryFailed: any downstream failure; the cause is chained but its
                details are not part of the message.
        """
        if not request.message or not request.message.strip():
            raise ValueError("Message is required")
        if not request.tenant_id:
            raise ValueError("tenant_id is required")

        started = time.perf_counter()
        session_id = request.session_id or new_session_id()

        try:
            sources: List[ScoredNode] = []
            if request.use_rag:
                sources = await self._knowledge.search_similar_nodes(
                    request.message,
                    request.tenant_id,
                    limit=request.top_k or self._config.top_k,
                    threshold=(
                        request.score_threshold
                        if request.score_threshold is not None
                        else self._config.score_threshold
                    ),
                )

            result = await self._generation.generate(
                GenerationRequest(
                    message=request.message,
                    context=[context_passage(s.node) for s in sources],
                    model=request.model,
                    provider=request.provider,
                    credential_override=request.credential_override,
                    endpoint_override=request.endpoint_override,
                    tenant_credentials=request.tenant_credentials,
                )
            )
        except Exception as exc:
            logger.error("RAG query failed for tenant {}: {}", request.tenant_id, exc)
            raise QueryFailed("Failed to perform RAG query") from exc

        if request.use_rag:
            confidence = self.aggregate_confidence([s.node for s in sources])
        else:
            confidence = 1.0

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Answered query with {} source(s) via {} in {} ms",
            len(sources),
            result.provider.value,
            elapsed_ms,
        )
        return ChatResponse(
            answer=result.answer,
            sources=sources,
            confidence=confidence,
            model=result.model,
            provider=result.provider,
            tokens=result.tokens,
            processing_time_ms=elapsed_ms,
            session_id=session_id,
        )
