"""pgvector-backed knowledge table and similarity search.

Provides:
- KnowledgeEntryModel: SQLAlchemy model with a native ``vector(N)`` column
- KnowledgeStore: Protocol implemented by the pgvector store and test doubles
- PgVectorKnowledgeStore: async CRUD plus cosine nearest-neighbor search

Similarity is ``1 - cosine_distance`` (pgvector ``<=>``). Duplicate
(content, source_id) pairs are suppressed by a unique constraint on
(content_hash, source_id) and ``INSERT ... ON CONFLICT DO NOTHING``.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any, Protocol

import structlog
from pgvector.sqlalchemy import Vector
from sqlalchemy import DateTime, String, Text, UniqueConstraint, delete, func, select, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base
from src.app.core.errors import ValidationError
from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.models import (
    KnowledgeEntry,
    KnowledgeSource,
    KnowledgeStats,
    RetrievedContext,
    content_hash,
)

logger = structlog.get_logger(__name__)

EMBEDDING_DIMENSIONS = KnowledgeBaseConfig().embedding_dimensions


# ── Model ───────────────────────────────────────────────────────────────────


class KnowledgeEntryModel(Base):
    """Embedded knowledge entry used to ground AI replies."""

    __tablename__ = "knowledge_entries"
    __table_args__ = (
        UniqueConstraint(
            "content_hash",
            "source_id",
            name="uq_knowledge_content_source",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    embedding: Mapped[list[float]] = mapped_column(
        Vector(EMBEDDING_DIMENSIONS), nullable=False
    )
    metadata_: Mapped[dict] = mapped_column(
        "metadata", JSONB, default=dict, server_default=text("'{}'::jsonb")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


def _model_to_entry(model: KnowledgeEntryModel) -> KnowledgeEntry:
    """Convert KnowledgeEntryModel to KnowledgeEntry schema (without embedding)."""
    return KnowledgeEntry(
        id=str(model.id),
        content=model.content,
        source=KnowledgeSource(model.source),
        source_id=model.source_id,
        metadata=model.metadata_ or {},
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


# ── Interface ───────────────────────────────────────────────────────────────


class KnowledgeStore(Protocol):
    """Storage operations the retriever, workflow and management API rely on."""

    dimensions: int

    async def insert(self, entry: KnowledgeEntry) -> KnowledgeEntry | None: ...

    async def exists(self, content: str, source_id: str | None) -> bool: ...

    async def nearest_neighbors(
        self, vector: list[float], k: int, threshold: float
    ) -> list[RetrievedContext]: ...

    async def get(self, entry_id: str) -> KnowledgeEntry | None: ...

    async def update(
        self,
        entry_id: str,
        *,
        content: str | None = None,
        embedding: list[float] | None = None,
        source: KnowledgeSource | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeEntry | None: ...

    async def delete(self, entry_id: str) -> bool: ...

    async def bulk_delete(self, entry_ids: list[str]) -> int: ...

    async def list_entries(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        source: KnowledgeSource | None = None,
        search: str | None = None,
    ) -> list[KnowledgeEntry]: ...

    async def stats(self) -> KnowledgeStats: ...

    async def count(self) -> int: ...


def _parse_id(entry_id: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(entry_id))
    except ValueError:
        return None


# ── pgvector Store ──────────────────────────────────────────────────────────


class PgVectorKnowledgeStore:
    """Knowledge table access over async SQLAlchemy sessions.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        dimensions: Expected vector length for inserts and queries.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        dimensions: int = EMBEDDING_DIMENSIONS,
    ) -> None:
        self._session_factory = session_factory
        self.dimensions = dimensions

    def _check_vector(self, vector: list[float]) -> None:
        if len(vector) != self.dimensions:
            raise ValidationError(
                f"Vector dimension mismatch: expected {self.dimensions}, got {len(vector)}"
            )

    async def insert(self, entry: KnowledgeEntry) -> KnowledgeEntry | None:
        """Insert an entry unless its (content, source_id) pair already exists.

        Args:
            entry: Entry with an embedding of the configured dimensionality.

        Returns:
            The stored entry, or None when the pair was already present.
        """
        if entry.embedding is None:
            raise ValidationError("Knowledge entry has no embedding")
        self._check_vector(entry.embedding)

        async for session in self._session_factory():
            stmt = (
                pg_insert(KnowledgeEntryModel)
                .values(
                    id=uuid.UUID(entry.id),
                    content=entry.content,
                    content_hash=entry.content_hash,
                    source=entry.source.value,
                    source_id=entry.source_id,
                    embedding=entry.embedding,
                    metadata_=entry.metadata,
                )
                .on_conflict_do_nothing(constraint="uq_knowledge_content_source")
                .returning(KnowledgeEntryModel.id)
            )
            result = await session.execute(stmt)
            inserted_id = result.scalar_one_or_none()
            await session.commit()

            if inserted_id is None:
                logger.info(
                    "knowledge.duplicate_skipped",
                    source=entry.source.value,
                    source_id=entry.source_id,
                )
                return None
            logger.info(
                "knowledge.entry_inserted",
                entry_id=str(inserted_id),
                source=entry.source.value,
            )
            return entry

    async def exists(self, content: str, source_id: str | None) -> bool:
        async for session in self._session_factory():
            stmt = select(KnowledgeEntryModel.id).where(
                KnowledgeEntryModel.content_hash == content_hash(content),
                KnowledgeEntryModel.source_id.is_(None)
                if source_id is None
                else KnowledgeEntryModel.source_id == source_id,
            )
            result = await session.execute(stmt.limit(1))
            return result.scalar_one_or_none() is not None

    async def nearest_neighbors(
        self, vector: list[float], k: int, threshold: float
    ) -> list[RetrievedContext]:
        """Cosine nearest-neighbor query.

        Args:
            vector: Query embedding.
            k: Maximum number of results.
            threshold: Results must have similarity strictly above this.

        Returns:
            Results ordered by descending similarity.

        Raises:
            ValidationError: If the query vector has the wrong dimensionality.
        """
        self._check_vector(vector)
        async for session in self._session_factory():
            distance = KnowledgeEntryModel.embedding.cosine_distance(vector)
            similarity = (1 - distance).label("similarity")
            stmt = (
                select(
                    KnowledgeEntryModel.content,
                    KnowledgeEntryModel.source,
                    KnowledgeEntryModel.source_id,
                    similarity,
                )
                .where(1 - distance > threshold)
                .order_by(distance)
                .limit(k)
            )
            result = await session.execute(stmt)
            return [
                RetrievedContext(
                    content=row.content,
                    source=row.source,
                    source_id=row.source_id,
                    similarity=float(row.similarity),
                )
                for row in result
            ]

    async def get(self, entry_id: str) -> KnowledgeEntry | None:
        parsed = _parse_id(entry_id)
        if parsed is None:
            return None
        async for session in self._session_factory():
            model = await session.get(KnowledgeEntryModel, parsed)
            return _model_to_entry(model) if model is not None else None

    async def update(
        self,
        entry_id: str,
        *,
        content: str | None = None,
        embedding: list[float] | None = None,
        source: KnowledgeSource | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeEntry | None:
        """Update mutable fields of an entry.

        A content change must be accompanied by a fresh embedding.

        Returns:
            The updated entry, or None if it does not exist.

        Raises:
            ValidationError: On missing/mismatched embedding or when the new
                content duplicates another entry with the same source_id.
        """
        if content is not None and embedding is None:
            raise ValidationError("Content changes require a new embedding")
        if embedding is not None:
            self._check_vector(embedding)

        parsed = _parse_id(entry_id)
        if parsed is None:
            return None
        async for session in self._session_factory():
            model = await session.get(KnowledgeEntryModel, parsed)
            if model is None:
                return None
            if content is not None:
                model.content = content
                model.content_hash = content_hash(content)
            if embedding is not None:
                model.embedding = embedding
            if source is not None:
                model.source = source.value
            if metadata is not None:
                model.metadata_ = metadata
            model.updated_at = datetime.now(timezone.utc)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ValidationError(
                    "An entry with the same content and source already exists"
                ) from exc
            await session.refresh(model)
            return _model_to_entry(model)

    async def delete(self, entry_id: str) -> bool:
        parsed = _parse_id(entry_id)
        if parsed is None:
            return False
        async for session in self._session_factory():
            result = await session.execute(
                delete(KnowledgeEntryModel).where(KnowledgeEntryModel.id == parsed)
            )
            await session.commit()
            return result.rowcount > 0

    async def bulk_delete(self, entry_ids: list[str]) -> int:
        parsed = [p for p in (_parse_id(i) for i in entry_ids) if p is not None]
        if not parsed:
            return 0
        async for session in self._session_factory():
            result = await session.execute(
                delete(KnowledgeEntryModel).where(KnowledgeEntryModel.id.in_(parsed))
            )
            await session.commit()
            return result.rowcount

    async def list_entries(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        source: KnowledgeSource | None = None,
        search: str | None = None,
    ) -> list[KnowledgeEntry]:
        async for session in self._session_factory():
            stmt = select(KnowledgeEntryModel)
            if source is not None:
                stmt = stmt.where(KnowledgeEntryModel.source == source.value)
            if search:
                stmt = stmt.where(KnowledgeEntryModel.content.ilike(f"%{search}%"))
            stmt = (
                stmt.order_by(KnowledgeEntryModel.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            result = await session.execute(stmt)
            return [_model_to_entry(m) for m in result.scalars().all()]

    async def stats(self) -> KnowledgeStats:
        async for session in self._session_factory():
            stmt = select(
                KnowledgeEntryModel.source, func.count(KnowledgeEntryModel.id)
            ).group_by(KnowledgeEntryModel.source)
            result = await session.execute(stmt)
            by_source = {row[0]: int(row[1]) for row in result}
            return KnowledgeStats(total=sum(by_source.values()), by_source=by_source)

    async def count(self) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                select(func.count(KnowledgeEntryModel.id))
            )
            return int(result.scalar_one())
