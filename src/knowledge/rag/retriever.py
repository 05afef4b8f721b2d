"""Similarity retriever used to ground AI-drafted replies.

Embeds the customer's message, runs a cosine nearest-neighbor query over the
knowledge table and returns the entries that clear the similarity threshold.

Retrieval is best-effort enrichment: embedding failures, store failures,
dimension mismatches and an empty table all yield an empty list and a
warning log, never an exception.
"""

from __future__ import annotations

import structlog

from src.app.core.errors import EmbeddingError
from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.embeddings import EmbeddingService
from src.knowledge.models import RetrievedContext
from src.knowledge.store import KnowledgeStore

logger = structlog.get_logger(__name__)


class KnowledgeRetriever:
    """Top-K knowledge retrieval above a similarity threshold.

    Args:
        embedding_service: Produces the query vector.
        store: Knowledge table supporting ``nearest_neighbors``.
        config: Supplies the default top-k and threshold.
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        store: KnowledgeStore,
        config: KnowledgeBaseConfig | None = None,
    ) -> None:
        self._embedding_service = embedding_service
        self._store = store
        self._config = config or KnowledgeBaseConfig()

    async def retrieve(
        self,
        query: str,
        k: int | None = None,
        threshold: float | None = None,
    ) -> list[RetrievedContext]:
        """Retrieve entries with similarity strictly above ``threshold``.

        Args:
            query: Customer message to ground.
            k: Maximum number of entries (default from config, 5).
            threshold: Minimum exclusive similarity (default from config, 0.7).

        Returns:
            Entries ordered by descending similarity, at most ``k``.
        """
        k = self._config.default_top_k if k is None else k
        threshold = self._config.similarity_threshold if threshold is None else threshold

        if not query.strip() or k <= 0:
            return []

        try:
            vector = await self._embedding_service.embed_text(query)
        except EmbeddingError as exc:
            logger.warning("retrieval.embedding_failed", error=str(exc))
            return []

        try:
            results = await self._store.nearest_neighbors(vector, k, threshold)
        except Exception as exc:
            logger.warning(
                "retrieval.store_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return []

        # Threshold is exclusive.
        filtered = [r for r in results if r.similarity > threshold]
        filtered.sort(key=lambda r: r.similarity, reverse=True)
        filtered = filtered[:k]

        logger.debug(
            "retrieval.completed",
            k=k,
            threshold=threshold,
            result_count=len(filtered),
        )
        return filtered
