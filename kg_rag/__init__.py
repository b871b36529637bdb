"""
kg_rag - Knowledge-graph RAG engine (Graph + Vector retrieval, multi-provider generation).
"""

from .config import KGRagConfig
from .embeddings import EmbeddingGateway
from .engine import RAGEngine, create_engine
from .generation import GenerationGateway
from .graph_builder import SimilarityGraphBuilder
from .graph_store import GraphStore, KnowledgeNode, KnowledgeRelation
from .knowledge import KnowledgeService
from .orchestrator import ChatRequest, ChatResponse, RAGOrchestrator
from .providers import ProviderKind
from .vector_store import VectorIndex

__all__ = [
    "KGRagConfig",
    "EmbeddingGateway",
    "RAGEngine",
    "create_engine",
    "GenerationGateway",
    "SimilarityGraphBuilder",
    "GraphStore",
    "KnowledgeNode",
    "KnowledgeRelation",
    "KnowledgeService",
    "ChatRequest",
    "ChatResponse",
    "RAGOrchestrator",
    "ProviderKind",
    "VectorIndex",
]

__version__ = "1.0.0"
