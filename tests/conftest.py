"""Shared fixtures: deterministic provider stubs and in-memory stores."""

from typing import Dict, List, Optional, Sequence, Tuple

import pytest
from qdrant_client import QdrantClient

from kg_rag.config import (
    EmbeddingConfig,
    GraphConfig,
    IngestConfig,
    KGRagConfig,
    LLMConfig,
    LoggingConfig,
    QdrantConfig,
    RetrievalConfig,
)
from kg_rag.embeddings import BaseEmbeddingBackend, EmbeddingGateway, EmbeddingResult
from kg_rag.engine import RAGEngine
from kg_rag.exceptions import ProviderError
from kg_rag.generation import ChatPrompt, Completion, GenerationBackend, GenerationGateway
from kg_rag.providers import ProviderKind

OPENAI_DIM = 4
OLLAMA_DIM = 3


class StubEmbeddingBackend(BaseEmbeddingBackend):
    """
    Returns fixed vectors chosen by keyword.

    The first keyword found (case-insensitive) in the text selects its vector;
    texts matching no keyword get ``default``.
    """

    def __init__(
        self,
        kind: ProviderKind,
        model: str,
        default: Sequence[float],
        vectors: Optional[List[Tuple[str, Sequence[float]]]] = None,
        fail: bool = False,
    ):
        self.kind = kind
        self._model = model
        self._default = list(default)
        self._vectors = [(k.lower(), list(v)) for k, v in (vectors or [])]
        self.fail = fail
        self.calls: List[Tuple[str, str]] = []

    @property
    def default_model(self) -> str:
        return self._model

    async def embed(self, text: str, model: str) -> EmbeddingResult:
        self.calls.append((text, model))
        if self.fail:
            raise ProviderError(self.kind.value, "quota exceeded")
        lowered = text.lower()
        vector = next((v for k, v in self._vectors if k in lowered), self._default)
        return EmbeddingResult(vector=list(vector), model=model, tokens=len(text.split()), provider=self.kind)


class StubGenerationBackend(GenerationBackend):
    """Echoes which provider answered and records every prompt it saw."""

    def __init__(self, config: LLMConfig, kind: ProviderKind, fail: bool = False):
        super().__init__(config)
        self.kind = kind
        self.fail = fail
        self.prompts: List[ChatPrompt] = []
        self.calls: List[Dict[str, Optional[str]]] = []

    def _complete(self, prompt, model, api_key, base_url):
        self.prompts.append(prompt)
        self.calls.append({"model": model, "api_key": api_key, "base_url": base_url})
        if self.fail:
            raise RuntimeError(f"{self.kind.value} is down")
        return Completion(text=f"answer from {self.kind.value}", model=model, tokens=7)


@pytest.fixture
def llm_config() -> LLMConfig:
    return LLMConfig(
        openai_api_key="",
        anthropic_api_key="",
        gemini_api_key="",
        groq_api_key="",
        ollama_model="llama2",
    )


@pytest.fixture
def config(llm_config) -> KGRagConfig:
    return KGRagConfig(
        qdrant=QdrantConfig(
            location=":memory:",
            collection_name="test_knowledge",
            openai_dim=OPENAI_DIM,
            ollama_dim=OLLAMA_DIM,
        ),
        graph=GraphConfig(storage_path=""),
        embedding=EmbeddingConfig(
            openai_api_key="",
            openai_model="text-embedding-3-small",
            ollama_model="nomic-embed-text",
            fallback_enabled=True,
        ),
        llm=llm_config,
        ingest=IngestConfig(
            min_segment_length=20,
            similarity_threshold=0.7,
            default_confidence=0.8,
            title_length=100,
            max_segments=200,
        ),
        retrieval=RetrievalConfig(top_k=5, score_threshold=0.7),
        logging=LoggingConfig(level="DEBUG", format="human", enable_file_logging=False),
    )


@pytest.fixture
def primary_embedder() -> StubEmbeddingBackend:
    return StubEmbeddingBackend(
        ProviderKind.OPENAI,
        "text-embedding-3-small",
        default=[0.5, 0.5, 0.5, 0.5],
        vectors=[
            ("machine learning", [1.0, 0.0, 0.0, 0.0]),
            ("deep learning", [0.0, 1.0, 0.0, 0.0]),
        ],
    )


@pytest.fixture
def secondary_embedder() -> StubEmbeddingBackend:
    return StubEmbeddingBackend(
        ProviderKind.OLLAMA,
        "nomic-embed-text",
        default=[0.0, 0.0, 1.0],
        vectors=[("machine learning", [1.0, 0.0, 0.0])],
    )


@pytest.fixture
def embedding_gateway(config, primary_embedder, secondary_embedder) -> EmbeddingGateway:
    return EmbeddingGateway(config.embedding, primary=primary_embedder, secondary=secondary_embedder)


@pytest.fixture
def generation_backends(llm_config) -> Dict[ProviderKind, StubGenerationBackend]:
    return {kind: StubGenerationBackend(llm_config, kind) for kind in ProviderKind}


@pytest.fixture
def generation_gateway(llm_config, generation_backends) -> GenerationGateway:
    return GenerationGateway(llm_config, backends=generation_backends)


@pytest.fixture
def qdrant_client():
    client = QdrantClient(location=":memory:")
    yield client
    client.close()


@pytest.fixture
def engine(config, embedding_gateway, generation_gateway, qdrant_client) -> RAGEngine:
    return RAGEngine(
        config,
        embeddings=embedding_gateway,
        generation=generation_gateway,
        qdrant_client=qdrant_client,
    )


@pytest.fixture
async def ready_engine(engine) -> RAGEngine:
    await engine.initialize()
    return engine
