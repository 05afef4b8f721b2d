"""Embedding service for dense vector generation.

Provides a provider-agnostic interface over LiteLLM's ``aembedding`` so the
knowledge table can be populated and queried with any embedding model
LiteLLM supports. Every provider failure surfaces as EmbeddingError; callers
decide whether that means "no context" (retrieval) or "skip" (extraction).
"""

from __future__ import annotations

import time
from typing import Any

import litellm
import structlog

from src.app.core.errors import EmbeddingError
from src.knowledge.config import KnowledgeBaseConfig

logger = structlog.get_logger(__name__)


class EmbeddingService:
    """Generates dense embeddings for knowledge base operations.

    Args:
        config: Knowledge base configuration with model and dimension settings.
    """

    def __init__(self, config: KnowledgeBaseConfig) -> None:
        self._config = config
        self._model = config.embedding_model
        self._dimensions = config.embedding_dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed_text(self, text: str) -> list[float]:
        """Generate a dense embedding for a single text.

        Args:
            text: Input text to embed.

        Returns:
            Vector of length ``embedding_dimensions``.

        Raises:
            EmbeddingError: If the provider call fails or the vector is unusable.
        """
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate dense embeddings for a batch of texts in one provider call.

        Args:
            texts: List of input texts to embed.

        Returns:
            List of vectors, one per input text, in input order.

        Raises:
            EmbeddingError: If the provider call fails or any vector is unusable.
        """
        if not texts:
            return []

        kwargs: dict[str, Any] = {
            "model": self._model,
            "input": texts,
            "dimensions": self._dimensions,
            "timeout": self._config.embedding_timeout,
        }
        if self._config.embedding_api_key:
            kwargs["api_key"] = self._config.embedding_api_key

        start = time.monotonic()
        try:
            response = await litellm.aembedding(**kwargs)
        except Exception as exc:
            logger.warning(
                "embedding.provider_failed",
                model=self._model,
                batch_size=len(texts),
                error=str(exc),
            )
            raise EmbeddingError(f"Embedding provider call failed: {exc}") from exc

        try:
            vectors = [self._extract_vector(item) for item in response.data]
        except (AttributeError, KeyError, TypeError) as exc:
            logger.warning(
                "embedding.malformed_response",
                model=self._model,
                error=f"{type(exc).__name__}: {exc}",
            )
            raise EmbeddingError(f"Embedding provider returned a malformed item: {exc!r}") from exc

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding provider returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        for vector in vectors:
            if len(vector) != self._dimensions:
                raise EmbeddingError(
                    f"Embedding dimension mismatch: expected {self._dimensions}, got {len(vector)}"
                )

        logger.debug(
            "embedding.completed",
            model=self._model,
            batch_size=len(texts),
            duration_ms=round((time.monotonic() - start) * 1000, 1),
        )
        return vectors

    @staticmethod
    def _extract_vector(item: Any) -> list[float]:
        """Read the vector from a LiteLLM embedding item (dict or object)."""
        if isinstance(item, dict):
            return list(item["embedding"])
        return list(item.embedding)
