"""Tests for prompt composition and threshold-bounded retrieval."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.embeddings import EmbeddingService
from src.knowledge.models import KnowledgeEntry, KnowledgeSource, RetrievedContext
from src.knowledge.rag.prompts import (
    INSTRUCTIONS,
    NO_CONTEXT_SENTINEL,
    PREAMBLE,
    START_OF_CONVERSATION_SENTINEL,
    compose,
    format_history,
)
from src.knowledge.rag.retriever import KnowledgeRetriever


# ── Prompt Composition ───────────────────────────────────────────────────────


def test_compose_without_context_or_history_uses_sentinels():
    prompt = compose("Where is my order?", [], [])
    assert prompt.startswith(PREAMBLE)
    assert NO_CONTEXT_SENTINEL in prompt
    assert START_OF_CONVERSATION_SENTINEL in prompt
    assert prompt.endswith(INSTRUCTIONS)
    assert "CURRENT USER MESSAGE:\nWhere is my order?\n" in prompt


def test_compose_section_order_and_context_format():
    context = [
        RetrievedContext(content="Q: refund?\nA: 5 days", source="approved_response", similarity=0.91234),
        RetrievedContext(content="Q: shipping?\nA: 3 days", source="manual", similarity=0.8),
    ]
    prompt = compose("Refund status?", ["Customer: hi", "Agent: hello"], context)

    assert "[Context 1] (Source: approved_response, Similarity: 0.91)\nQ: refund?\nA: 5 days" in prompt
    assert "[Context 2] (Source: manual, Similarity: 0.80)" in prompt
    assert "1. Customer: hi\n2. Agent: hello\n" in prompt
    assert NO_CONTEXT_SENTINEL not in prompt
    assert START_OF_CONVERSATION_SENTINEL not in prompt

    positions = [
        prompt.index(PREAMBLE),
        prompt.index("CONTEXT FROM PREVIOUS CONVERSATIONS:"),
        prompt.index("CONVERSATION HISTORY:"),
        prompt.index("CURRENT USER MESSAGE:"),
        prompt.index("INSTRUCTIONS:"),
    ]
    assert positions == sorted(positions)


def test_compose_is_deterministic():
    context = [RetrievedContext(content="A", source="manual", similarity=0.75)]
    first = compose("msg", ["Customer: a"], context)
    second = compose("msg", ["Customer: a"], context)
    assert first == second


def test_compose_keeps_last_ten_history_turns():
    history = [f"Customer: turn {i}" for i in range(15)]
    prompt = compose("now", history, [])
    assert "turn 4" not in prompt
    assert "1. Customer: turn 5\n" in prompt
    assert "10. Customer: turn 14\n" in prompt


def test_format_history_speaker_tags():
    messages = [
        SimpleNamespace(sender_kind="client", content="hello"),
        SimpleNamespace(sender_kind="agent", content="hi there"),
        SimpleNamespace(sender_kind="llm", content="draft"),
    ]
    assert format_history(messages) == [
        "Customer: hello",
        "Agent: hi there",
        "Assistant: draft",
    ]


# ── Retriever ────────────────────────────────────────────────────────────────


async def _seed(store, embedder, content, source=KnowledgeSource.MANUAL):
    entry = KnowledgeEntry(content=content, source=source, embedding=await embedder.embed_text(content))
    await store.insert(entry)
    return entry


@pytest.mark.asyncio
async def test_retrieve_returns_only_similar_entries(retriever, knowledge_store, embedder):
    await _seed(knowledge_store, embedder, "Q: How do refunds work?\nA: Five business days.")
    await _seed(knowledge_store, embedder, "Q: Shipping times?\nA: Three days.")

    results = await retriever.retrieve("I want a refund")

    assert len(results) == 1
    assert "refunds" in results[0].content
    assert results[0].similarity > 0.7


@pytest.mark.asyncio
async def test_retrieve_respects_k_and_orders_by_similarity(retriever, knowledge_store, embedder):
    for i in range(4):
        await _seed(knowledge_store, embedder, f"Refund policy note {i}")

    results = await retriever.retrieve("refund", k=2)

    assert len(results) == 2
    assert results[0].similarity >= results[1].similarity


@pytest.mark.asyncio
async def test_retrieve_threshold_is_exclusive(embedder):
    store = AsyncMock()
    store.nearest_neighbors.return_value = [
        RetrievedContext(content="exact", source="manual", similarity=0.7),
        RetrievedContext(content="above", source="manual", similarity=0.71),
    ]
    retriever = KnowledgeRetriever(embedder, store, KnowledgeBaseConfig(similarity_threshold=0.7))

    results = await retriever.retrieve("refund")

    assert [r.content for r in results] == ["above"]


@pytest.mark.asyncio
async def test_retrieve_degrades_on_embedding_failure(retriever, knowledge_store, embedder):
    await _seed(knowledge_store, embedder, "Refund policy")
    embedder.fail = True

    assert await retriever.retrieve("refund") == []


@pytest.mark.asyncio
async def test_retrieve_degrades_on_store_failure(embedder):
    store = AsyncMock()
    store.nearest_neighbors.side_effect = RuntimeError("connection reset")
    retriever = KnowledgeRetriever(embedder, store, KnowledgeBaseConfig())

    assert await retriever.retrieve("refund") == []


@pytest.mark.asyncio
async def test_retrieve_blank_query_skips_embedding(retriever, embedder):
    assert await retriever.retrieve("   ") == []
    assert embedder.calls == []



@pytest.mark.asyncio
async def test_retrieve_degrades_on_malformed_embedding_response(knowledge_store):
    config = KnowledgeBaseConfig(embedding_dimensions=3)
    retriever = KnowledgeRetriever(EmbeddingService(config), knowledge_store, config)
    response = SimpleNamespace(data=[{"object": "embedding"}])

    with patch("src.knowledge.embeddings.litellm.aembedding", AsyncMock(return_value=response)):
        assert await retriever.retrieve("Where is my order?") == []
