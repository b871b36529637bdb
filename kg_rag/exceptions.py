"""
Error taxonomy for the engine.

Provider-level failures (ProviderError) never leave the gateways: they are
converted into the fallback path, and only when every tier has failed does an
EmbeddingUnavailable or GenerationUnavailable surface.
"""

from typing import List, Optional


class KGRagError(Exception):
    """Base class for all engine errors."""


class ProviderError(KGRagError):
    """A single embedding or generation backend call failed."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message


class EmbeddingUnavailable(KGRagError):
    """Neither the primary nor the fallback embedding provider produced a vector."""

    def __init__(self, errors: List[str]):
        super().__init__("Failed to generate embedding with any provider: " + "; ".join(errors))
        self.errors = errors


class GenerationUnavailable(KGRagError):
    """The selected provider and the local fallback both failed."""

    def __init__(self, primary_error: str, fallback_error: Optional[str] = None):
        if fallback_error is None:
            message = f"Generation failed: {primary_error}"
        else:
            message = (
                f"All AI providers failed. Primary: {primary_error}, "
                f"Local fallback: {fallback_error}"
            )
        super().__init__(message)
        self.primary_error = primary_error
        self.fallback_error = fallback_error


class VectorIndexError(KGRagError):
    """Schema, dimension or connectivity failure in the vector index."""


class GraphStoreError(KGRagError):
    """Document store failure or constraint violation."""


class DuplicateRelationError(GraphStoreError):
    """A relation for the same (tenant, source, target) already exists."""


class NodeNotFound(GraphStoreError):
    """
    The node does not exist for this tenant.

    Raised identically for a missing node and for a node owned by another
    tenant, so callers cannot probe for foreign ids.
    """

    def __init__(self, node_id: str):
        super().__init__(f"Knowledge node not found: {node_id}")
        self.node_id = node_id


class DocumentTooLarge(KGRagError):
    """A document produced more segments than the ingestion cap allows."""

    def __init__(self, segments: int, limit: int):
        super().__init__(
            f"Document has {segments} segments; the ingestion limit is {limit}"
        )
        self.segments = segments
        self.limit = limit


class QueryFailed(KGRagError):
    """Generic outward failure of a RAG query; the cause is chained."""
