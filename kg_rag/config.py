"""
Configuration for the knowledge-graph RAG engine.

All values are resolved from environment variables or a .env file located at
the project root.  Sub-configurations are composed into KGRagConfig, which is
built once at startup and handed to every component's constructor.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()


def _env(key: str, default, cast: type = str):
    value = os.getenv(key)
    if value is None or value == "":
        return default
    if cast is bool:
        return str(value).lower() in ("true", "1", "yes")
    return cast(value)


# ---------------------------------------------------------------------------
# Sub-configurations
# ---------------------------------------------------------------------------


@dataclass
class QdrantConfig:
    """Qdrant vector index connection and collection layout."""

    # ":memory:" or a filesystem path selects embedded Qdrant; otherwise url is used.
    location: Optional[str] = field(
        default_factory=lambda: _env("QDRANT_LOCATION", None)
    )
    url: str = field(
        default_factory=lambda: _env("QDRANT_URL", "http://localhost:6333")
    )
    api_key: Optional[str] = field(
        default_factory=lambda: _env("QDRANT_API_KEY", None)
    )
    collection_name: str = field(
        default_factory=lambda: _env("QDRANT_COLLECTION_NAME", "knowledge_embeddings")
    )

    # Named vector slots, one per embedding family.
    openai_dim: int = field(
        default_factory=lambda: _env("QDRANT_OPENAI_DIM", 1536, int)
    )
    ollama_dim: int = field(
        default_factory=lambda: _env("QDRANT_OLLAMA_DIM", 768, int)
    )

    @property
    def namespace_dims(self) -> Dict[str, int]:
        return {"openai": self.openai_dim, "ollama": self.ollama_dim}


@dataclass
class GraphConfig:
    """NetworkX knowledge graph persistence settings."""

    # Empty string keeps the graph in memory only.
    storage_path: str = field(
        default_factory=lambda: _env("GRAPH_STORAGE_PATH", "./database/graph")
    )
    graph_filename: str = "knowledge_graph.graphml"
    metadata_filename: str = "graph_metadata.json"


@dataclass
class EmbeddingConfig:
    """Embedding providers: OpenAI first, Ollama as the fallback."""

    openai_api_key: str = field(
        default_factory=lambda: _env("OPENAI_API_KEY", "")
    )
    openai_base_url: str = field(
        default_factory=lambda: _env("OPENAI_BASE_URL", "https://api.openai.com/v1")
    )
    # text-embedding-3-small: 1536 dim
    openai_model: str = field(
        default_factory=lambda: _env("DEFAULT_EMBEDDING_MODEL", "text-embedding-3-small")
    )

    ollama_base_url: str = field(
        default_factory=lambda: _env("OLLAMA_BASE_URL", "http://localhost:11434")
    )
    # nomic-embed-text: 768 dim
    ollama_model: str = field(
        default_factory=lambda: _env("OLLAMA_EMBEDDING_MODEL", "nomic-embed-text")
    )

    fallback_enabled: bool = field(
        default_factory=lambda: _env("USE_OLLAMA_FALLBACK", True, bool)
    )
    request_timeout: float = field(
        default_factory=lambda: _env("EMBEDDING_TIMEOUT", 60.0, float)
    )


@dataclass
class LLMConfig:
    """Generation provider credentials and defaults."""

    openai_api_key: str = field(
        default_factory=lambda: _env("OPENAI_API_KEY", "")
    )
    openai_base_url: str = field(
        default_factory=lambda: _env("OPENAI_BASE_URL", "https://api.openai.com/v1")
    )
    openai_model: str = field(
        default_factory=lambda: _env("OPENAI_MODEL", "gpt-4o-mini")
    )

    anthropic_api_key: str = field(
        default_factory=lambda: _env("ANTHROPIC_API_KEY", "")
    )
    anthropic_model: str = field(
        default_factory=lambda: _env("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022")
    )

    gemini_api_key: str = field(
        default_factory=lambda: _env("GEMINI_API_KEY", "")
    )
    gemini_model: str = field(
        default_factory=lambda: _env("GEMINI_MODEL", "gemini-2.0-flash")
    )

    groq_api_key: str = field(
        default_factory=lambda: _env("GROQ_API_KEY", "")
    )
    groq_model: str = field(
        default_factory=lambda: _env("GROQ_LLM_MODEL", "llama-3.3-70b-versatile")
    )

    # Local provider, always available.
    ollama_base_url: str = field(
        default_factory=lambda: _env("OLLAMA_BASE_URL", "http://localhost:11434")
    )
    ollama_model: str = field(
        default_factory=lambda: _env("OLLAMA_MODEL", "llama2")
    )

    max_tokens: int = field(
        default_factory=lambda: _env("LLM_MAX_TOKENS", 2000, int)
    )
    temperature: float = field(
        default_factory=lambda: _env("LLM_TEMPERATURE", 0.7, float)
    )
    request_timeout: float = field(
        default_factory=lambda: _env("LLM_TIMEOUT", 180.0, float)
    )


@dataclass
class IngestConfig:
    """Document decomposition settings."""

    min_segment_length: int = field(
        default_factory=lambda: _env("INGEST_MIN_SEGMENT_LENGTH", 20, int)
    )
    similarity_threshold: float = field(
        default_factory=lambda: _env("INGEST_SIMILARITY_THRESHOLD", 0.7, float)
    )
    default_confidence: float = field(
        default_factory=lambda: _env("INGEST_DEFAULT_CONFIDENCE", 0.8, float)
    )
    title_length: int = field(
        default_factory=lambda: _env("INGEST_TITLE_LENGTH", 100, int)
    )
    # Upper bound on segments per document; the similarity pass is all-pairs.
    max_segments: int = field(
        default_factory=lambda: _env("INGEST_MAX_SEGMENTS", 200, int)
    )


@dataclass
class RetrievalConfig:
    """Retrieval and confidence scoring settings."""

    top_k: int = field(default_factory=lambda: _env("RAG_TOP_K", 5, int))
    score_threshold: float = field(
        default_factory=lambda: _env("RAG_SCORE_THRESHOLD", 0.7, float)
    )
    # Used for a retrieved node that carries no confidence of its own.
    node_default_confidence: float = 0.5
    # Used when nothing was retrieved.
    empty_confidence: float = 0.5


@dataclass
class LoggingConfig:
    level: str = field(default_factory=lambda: _env("LOG_LEVEL", "INFO"))
    # human | json
    format: str = field(default_factory=lambda: _env("LOG_FORMAT", "human"))
    log_dir: str = field(default_factory=lambda: _env("LOG_DIR", "logs"))
    enable_file_logging: bool = field(
        default_factory=lambda: _env("ENABLE_FILE_LOGGING", False, bool)
    )


# ---------------------------------------------------------------------------
# Root configuration
# ---------------------------------------------------------------------------


@dataclass
class KGRagConfig:
    """Top-level configuration for the engine."""

    qdrant: QdrantConfig = field(default_factory=QdrantConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> None:
        """Raise ValueError for any invalid setting."""
        for name, dim in self.qdrant.namespace_dims.items():
            if dim <= 0:
                raise ValueError(f"Vector dimension for namespace '{name}' must be positive")
        for label, value in (
            ("INGEST_SIMILARITY_THRESHOLD", self.ingest.similarity_threshold),
            ("INGEST_DEFAULT_CONFIDENCE", self.ingest.default_confidence),
            ("RAG_SCORE_THRESHOLD", self.retrieval.score_threshold),
        ):
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{label} must be within [0, 1], got {value}")
        if self.ingest.min_segment_length < 1:
            raise ValueError("INGEST_MIN_SEGMENT_LENGTH must be at least 1")
        if self.ingest.max_segments < 1:
            raise ValueError("INGEST_MAX_SEGMENTS must be at least 1")
        if self.retrieval.top_k < 1:
            raise ValueError("RAG_TOP_K must be at least 1")
        if self.logging.format.lower() not in ("human", "json"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.logging.format}'. Must be 'human' or 'json'"
            )

    def ensure_directories(self) -> None:
        """Create runtime directories that must exist before the engine starts."""
        if self.graph.storage_path:
            Path(self.graph.storage_path).mkdir(parents=True, exist_ok=True)
        location = self.qdrant.location
        if location and location != ":memory:":
            Path(location).mkdir(parents=True, exist_ok=True)
