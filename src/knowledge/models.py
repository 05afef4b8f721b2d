"""Pydantic models for the Knowledge Base domain.

Defines the core types used across the knowledge base: stored entries with
their provenance, retrieval results, and the request/response contracts of
the knowledge management API. These models are the contract between
ingestion, storage, and retrieval layers.

Sources:
- approved_response: Q/A pair extracted when an agent approves an AI reply
- conversation_import: Q/A pair built from historical client -> agent turns
- manual: Entry typed in by an agent
- bulk_import: Entry loaded from a transcript export by the import script
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class KnowledgeSource(str, Enum):
    """Provenance tag of a knowledge entry."""

    APPROVED_RESPONSE = "approved_response"
    CONVERSATION_IMPORT = "conversation_import"
    MANUAL = "manual"
    BULK_IMPORT = "bulk_import"


def content_hash(content: str) -> str:
    """SHA-256 hex digest of entry content, used for duplicate suppression."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def build_qa_pair(question: str, answer: str) -> str:
    """Entry text for a customer question and the reply that answered it."""
    return f"Q: {question}\nA: {answer}"


# ── Knowledge Entry ─────────────────────────────────────────────────────────


class KnowledgeEntry(BaseModel):
    """A single unit of knowledge stored in the vector table.

    Attributes:
        id: Unique identifier (UUID4).
        content: Text content, typically ``Q: ...\\nA: ...``.
        source: Provenance tag.
        source_id: Optional opaque reference, e.g. originating conversation id.
        embedding: Dense vector; length must match the configured dimensions.
        metadata: Open key/value map.
        created_at: When this entry was first stored.
        updated_at: When this entry was last modified.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    content: str
    source: KnowledgeSource = KnowledgeSource.MANUAL
    source_id: str | None = None
    embedding: list[float] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def content_hash(self) -> str:
        return content_hash(self.content)


class RetrievedContext(BaseModel):
    """A knowledge entry returned by similarity search.

    Also the shape of the context snapshot stored on AI-drafted messages.
    """

    model_config = ConfigDict(populate_by_name=True)

    content: str
    source: str
    source_id: str | None = None
    similarity: float


# ── API Contracts ───────────────────────────────────────────────────────────


class KnowledgeEntryCreate(BaseModel):
    """Request body for adding a knowledge entry."""

    content: str = Field(..., min_length=1)
    source: KnowledgeSource = KnowledgeSource.MANUAL
    source_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class KnowledgeEntryUpdate(BaseModel):
    """Request body for updating a knowledge entry (content change re-embeds)."""

    content: str | None = Field(None, min_length=1)
    source: KnowledgeSource | None = None
    metadata: dict[str, Any] | None = None


class KnowledgeEntryResponse(BaseModel):
    """Knowledge entry without its embedding vector."""

    id: str
    content: str
    source: KnowledgeSource
    source_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entry(cls, entry: KnowledgeEntry) -> KnowledgeEntryResponse:
        return cls(
            id=entry.id,
            content=entry.content,
            source=entry.source,
            source_id=entry.source_id,
            metadata=entry.metadata,
            created_at=entry.created_at,
            updated_at=entry.updated_at,
        )


class BulkDeleteRequest(BaseModel):
    ids: list[str] = Field(..., min_length=1)


class KnowledgeStats(BaseModel):
    """Entry counts, total and per source."""

    total: int = 0
    by_source: dict[str, int] = Field(default_factory=dict)


class ImportResult(BaseModel):
    """Outcome of a knowledge import run."""

    imported: int = 0
    skipped: int = 0
    failed: int = 0
