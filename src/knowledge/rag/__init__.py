"""Retrieval-augmented generation helpers.

Components:
- KnowledgeRetriever: Embeds a query and returns top-K entries above a threshold
- compose / format_history: Deterministic prompt assembly
"""

from src.knowledge.rag.prompts import compose, format_history
from src.knowledge.rag.retriever import KnowledgeRetriever

__all__ = [
    "KnowledgeRetriever",
    "compose",
    "format_history",
]
