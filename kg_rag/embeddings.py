"""
Embedding providers and the fallback gateway.

OpenAI is the primary provider; Ollama is the local secondary used when the
primary call fails and fallback is enabled.  Which named vector slot a result
belongs to is derived from the model that actually produced it, so a fallback
vector is never written into the primary family's slot.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np
import requests
from loguru import logger

from .config import EmbeddingConfig
from .exceptions import EmbeddingUnavailable, ProviderError
from .providers import ProviderKind


class EmbeddingNamespace(str, Enum):
    """Named vector slots in the index, one per embedding model family."""

    OPENAI = "openai"
    OLLAMA = "ollama"


# Model-name conventions per family, checked in order.
_NAMESPACE_CONVENTIONS: Tuple[Tuple[EmbeddingNamespace, Tuple[str, ...]], ...] = (
    (EmbeddingNamespace.OPENAI, ("text-embedding", "openai")),
    (EmbeddingNamespace.OLLAMA, ("nomic-embed", "mxbai-embed", "all-minilm", "ollama")),
)


def namespace_for_model(model: str) -> EmbeddingNamespace:
    """Map an embedding model name to its vector namespace (primary when unrecognised)."""
    name = (model or "").lower()
    for namespace, markers in _NAMESPACE_CONVENTIONS:
        if any(marker in name for marker in markers):
            return namespace
    logger.warning(
        "Embedding model '{}' matches no known family; storing under '{}'",
        model,
        EmbeddingNamespace.OPENAI.value,
    )
    return EmbeddingNamespace.OPENAI


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors; 0.0 when either is all zeros."""
    if len(a) != len(b):
        raise ValueError(
            f"Embeddings must have the same length ({len(a)} != {len(b)})"
        )
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


@dataclass
class EmbeddingResult:
    vector: List[float]
    model: str
    tokens: int
    provider: ProviderKind

    @property
    def namespace(self) -> EmbeddingNamespace:
        return namespace_for_model(self.model)


class BaseEmbeddingBackend(ABC):
    """Interface for a single embedding provider."""

    kind: ProviderKind

    @property
    @abstractmethod
    def default_model(self) -> str:
        """Model used when the caller gives no hint."""

    @abstractmethod
    async def embed(self, text: str, model: str) -> EmbeddingResult:
        """Return the embedding of one text; raise ProviderError on failure."""


class OpenAIEmbeddingBackend(BaseEmbeddingBackend):
    """OpenAI embedding provider using AsyncOpenAI client."""

    kind = ProviderKind.OPENAI

    def __init__(self, config: EmbeddingConfig):
        self._config = config
        self._client = None

    @property
    def _lazy_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(
                api_key=self._config.openai_api_key,
                base_url=self._config.openai_base_url,
                timeout=self._config.request_timeout,
            )
        return self._client

    @property
    def default_model(self) -> str:
        return self._config.openai_model

    async def embed(self, text: str, model: str) -> EmbeddingResult:
        if not self._config.openai_api_key:
            raise ProviderError(self.kind.value, "OPENAI_API_KEY is not configured")
        try:
            response = await self._lazy_client.embeddings.create(
                model=model,
                input=text,
                encoding_format="float",
            )
            vector = list(response.data[0].embedding)
            if not vector:
                raise ValueError("OpenAI returned an empty embedding")
        except Exception as exc:
            raise ProviderError(self.kind.value, str(exc)) from exc

        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", 0) or 0
        logger.debug("Generated OpenAI embedding with {} tokens", tokens)
        return EmbeddingResult(
            vector=vector,
            model=model,
            tokens=tokens,
            provider=self.kind,
        )


class OllamaEmbeddingBackend(BaseEmbeddingBackend):
    """Ollama local embedding provider (uses the /api/embeddings endpoint)."""

    kind = ProviderKind.OLLAMA

    def __init__(self, config: EmbeddingConfig):
        self._config = config

    @property
    def default_model(self) -> str:
        return self._config.ollama_model

    def _embed_sync(self, text: str, model: str) -> List[float]:
        response = requests.post(
            f"{self._config.ollama_base_url.rstrip('/')}/api/embeddings",
            json={"model": model, "prompt": text},
            timeout=self._config.request_timeout,
        )
        response.raise_for_status()
        vector = response.json().get("embedding")
        if not vector:
            raise ValueError("Ollama returned an empty embedding")
        return vector

    async def embed(self, text: str, model: str) -> EmbeddingResult:
        loop = asyncio.get_event_loop()
        try:
            vector = await loop.run_in_executor(
                None, lambda: self._embed_sync(text, model)
            )
        except Exception as exc:
            raise ProviderError(self.kind.value, str(exc)) from exc
        # Ollama does not report token usage for embeddings.
        return EmbeddingResult(vector=list(vector), model=model, tokens=0, provider=self.kind)


class EmbeddingGateway:
    """
    Converts text to a vector with at most one fallback attempt.

    The primary backend is tried with the hinted (or default) model.  On any
    provider error, and only when fallback is enabled, the secondary backend is
    tried once with its own default model.  No partial vector is ever returned.
    """

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        primary: Optional[BaseEmbeddingBackend] = None,
        secondary: Optional[BaseEmbeddingBackend] = None,
    ):
        self._config = config or EmbeddingConfig()
        self._primary = primary or OpenAIEmbeddingBackend(self._config)
        self._secondary = secondary or OllamaEmbeddingBackend(self._config)

    @property
    def fallback_enabled(self) -> bool:
        return self._config.fallback_enabled

    async def embed(self, text: str, model_hint: Optional[str] = None) -> EmbeddingResult:
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        model = model_hint or self._primary.default_model
        try:
            return await self._primary.embed(text, model)
        except ProviderError as primary_exc:
            logger.warning("{} embedding failed: {}", self._primary.kind.value, primary_exc.message)
            if not self.fallback_enabled:
                raise EmbeddingUnavailable([str(primary_exc)]) from primary_exc

            logger.info(
                "Attempting {} fallback for embedding generation", self._secondary.kind.value
            )
            try:
                return await self._secondary.embed(text, self._secondary.default_model)
            except ProviderError as secondary_exc:
                logger.error(
                    "Both {} and {} embedding failed",
                    self._primary.kind.value,
                    self._secondary.kind.value,
                )
                raise EmbeddingUnavailable(
                    [str(primary_exc), str(secondary_exc)]
                ) from secondary_exc
