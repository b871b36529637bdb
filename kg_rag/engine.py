"""
Engine assembly.

Every store handle and gateway is constructed once here and passed into the
components that need it.  Typical lifecycle:

    engine = RAGEngine(config)
    await engine.initialize()
    result = await engine.ingest_file("notes.md", tenant_id="alice")
    response = await engine.orchestrator.answer(ChatRequest(...))
    engine.close()
"""

from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger
from qdrant_client import QdrantClient

from .config import KGRagConfig
from .embeddings import EmbeddingGateway
from .generation import GenerationGateway
from .graph_builder import DecompositionResult, SimilarityGraphBuilder
from .graph_store import GraphStore
from .knowledge import KnowledgeService
from .orchestrator import RAGOrchestrator
from .vector_store import VectorIndex

SUPPORTED_EXTENSIONS = (".txt", ".md")


class RAGEngine:
    def __init__(
        self,
        config: Optional[KGRagConfig] = None,
        embeddings: Optional[EmbeddingGateway] = None,
        generation: Optional[GenerationGateway] = None,
        vectors: Optional[VectorIndex] = None,
        graph: Optional[GraphStore] = None,
        qdrant_client: Optional[QdrantClient] = None,
    ):
        self._config = config or KGRagConfig()
        self._config.validate()
        self._config.ensure_directories()

        self.embeddings = embeddings or EmbeddingGateway(self._config.embedding)
        self.generation = generation or GenerationGateway(self._config.llm)
        self.vectors = vectors or VectorIndex(self._config.qdrant, client=qdrant_client)
        self.graph = graph or GraphStore(self._config.graph)

        self.knowledge = KnowledgeService(
            self.embeddings, self.vectors, self.graph, self._config.retrieval
        )
        self.builder = SimilarityGraphBuilder(self.knowledge, self._config.ingest)
        self.orchestrator = RAGOrchestrator(
            self.knowledge, self.generation, self._config.retrieval
        )
        self._is_initialized = False

    @property
    def config(self) -> KGRagConfig:
        return self._config

    async def initialize(self) -> None:
        """Prepare the vector collection and load the graph (idempotent)."""
        if self._is_initialized:
            return
        await self.vectors.ensure_schema()
        await self.graph.initialize()
        self._is_initialized = True
        logger.info("RAG engine initialized")

    async def ingest_text(
        self, text: str, tenant_id: str, source: Optional[str] = None
    ) -> DecompositionResult:
        await self.initialize()
        try:
            return await self.builder.decompose(text, tenant_id, source)
        finally:
            # Keep whatever was written, even when decomposition stopped part-way.
            await self.graph.save()

    async def ingest_file(self, path: str, tenant_id: str) -> DecompositionResult:
        """
        Decompose a UTF-8 ``.txt`` or ``.md`` file into the tenant's graph.

        Raises:
            FileNotFoundError: the path does not exist.
            ValueError: unsupported file extension.
        """
        src = Path(path)
        if not src.is_file():
            raise FileNotFoundError(f"File not found: {src}")
        if src.suffix.lower() not in SUPPORTED_EXTENSIONS:
            raise ValueError(
                f"Unsupported file type '{src.suffix}'. Supported: {', '.join(SUPPORTED_EXTENSIONS)}"
            )

        logger.info("Ingesting {} for tenant {}", src.name, tenant_id)
        return await self.ingest_text(src.read_text(encoding="utf-8"), tenant_id, source=src.name)

    async def get_stats(self, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        await self.initialize()
        vector_stats = await self.vectors.get_stats()
        if tenant_id is not None:
            vector_stats["tenant_points"] = await self.vectors.count(tenant_id)
        return {
            "vector_store": vector_stats,
            "graph_store": await self.graph.get_stats(tenant_id),
        }

    def close(self) -> None:
        self.vectors.close()


def create_engine(config: Optional[KGRagConfig] = None) -> RAGEngine:
    return RAGEngine(config)
