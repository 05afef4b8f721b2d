"""Knowledge Base module for pgvector-backed storage and retrieval.

Provides the embedding service, the knowledge table, similarity retrieval
and the Pydantic models shared with the conversation ledger.
"""

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.embeddings import EmbeddingService
from src.knowledge.models import (
    KnowledgeEntry,
    KnowledgeSource,
    RetrievedContext,
)

__all__ = [
    "EmbeddingService",
    "KnowledgeBaseConfig",
    "KnowledgeEntry",
    "KnowledgeSource",
    "RetrievedContext",
]
