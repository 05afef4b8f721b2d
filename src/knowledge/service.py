"""Knowledge management service.

Wraps the knowledge store with embedding so callers work in terms of text:
adding an entry embeds it, changing an entry's content re-embeds it.
Used by the knowledge API, the approval workflow and the import tooling.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.app.core.errors import NotFoundError, ValidationError
from src.knowledge.embeddings import EmbeddingService
from src.knowledge.models import (
    KnowledgeEntry,
    KnowledgeSource,
    KnowledgeStats,
)
from src.knowledge.store import KnowledgeStore

logger = structlog.get_logger(__name__)


class KnowledgeService:
    """Text-level CRUD over the knowledge table.

    Args:
        embedding_service: Embeds entry content.
        store: Knowledge table.
    """

    def __init__(self, embedding_service: EmbeddingService, store: KnowledgeStore) -> None:
        self._embedding_service = embedding_service
        self._store = store

    @property
    def embedding_service(self) -> EmbeddingService:
        return self._embedding_service

    @property
    def store(self) -> KnowledgeStore:
        return self._store

    async def add_entry(
        self,
        content: str,
        source: KnowledgeSource = KnowledgeSource.MANUAL,
        source_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeEntry | None:
        """Embed and store an entry.

        Args:
            content: Entry text.
            source: Provenance tag.
            source_id: Optional opaque reference.
            metadata: Optional key/value map.

        Returns:
            The stored entry, or None if the (content, source_id) pair exists.

        Raises:
            ValidationError: If content is blank.
            EmbeddingError: If the embedding call fails.
        """
        content = content.strip()
        if not content:
            raise ValidationError("Knowledge content must not be empty")

        if await self._store.exists(content, source_id):
            logger.info("knowledge.duplicate_skipped", source=source.value, source_id=source_id)
            return None

        embedding = await self._embedding_service.embed_text(content)
        return await self._store.insert(
            KnowledgeEntry(
                content=content,
                source=source,
                source_id=source_id,
                embedding=embedding,
                metadata=metadata or {},
            )
        )

    async def update_entry(
        self,
        entry_id: str,
        *,
        content: str | None = None,
        source: KnowledgeSource | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeEntry:
        """Update an entry, re-embedding when the content actually changes.

        Raises:
            NotFoundError: If the entry does not exist.
            ValidationError: If the new content is blank or duplicates another entry.
            EmbeddingError: If re-embedding fails (nothing is changed).
        """
        existing = await self._store.get(entry_id)
        if existing is None:
            raise NotFoundError(f"Knowledge entry {entry_id} not found")

        embedding = None
        new_content = None
        if content is not None:
            stripped = content.strip()
            if not stripped:
                raise ValidationError("Knowledge content must not be empty")
            if stripped != existing.content:
                new_content = stripped
                embedding = await self._embedding_service.embed_text(stripped)

        updated = await self._store.update(
            entry_id,
            content=new_content,
            embedding=embedding,
            source=source,
            metadata=metadata,
        )
        if updated is None:
            raise NotFoundError(f"Knowledge entry {entry_id} not found")
        logger.info(
            "knowledge.entry_updated",
            entry_id=entry_id,
            re_embedded=embedding is not None,
        )
        return updated

    async def delete_entry(self, entry_id: str) -> None:
        if not await self._store.delete(entry_id):
            raise NotFoundError(f"Knowledge entry {entry_id} not found")
        logger.info("knowledge.entry_deleted", entry_id=entry_id)

    async def bulk_delete(self, entry_ids: list[str]) -> int:
        deleted = await self._store.bulk_delete(entry_ids)
        logger.info("knowledge.bulk_deleted", requested=len(entry_ids), deleted=deleted)
        return deleted

    async def get_entry(self, entry_id: str) -> KnowledgeEntry:
        entry = await self._store.get(entry_id)
        if entry is None:
            raise NotFoundError(f"Knowledge entry {entry_id} not found")
        return entry

    async def list_entries(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        source: KnowledgeSource | None = None,
        search: str | None = None,
    ) -> list[KnowledgeEntry]:
        return await self._store.list_entries(
            limit=limit, offset=offset, source=source, search=search
        )

    async def stats(self) -> KnowledgeStats:
        return await self._store.stats()
