"""Shared test doubles and fixtures.

Provides:
- In-memory ledger, account repository and knowledge store that mirror the
  PostgreSQL repositories' contracts (idempotent inserts, conditional
  approval updates, delivery claims)
- Deterministic keyword embedder, scripted LLM and recording Chatra client
- A FastAPI app with every service on ``app.state`` built from the doubles
  and authentication overridden
"""

from __future__ import annotations

import math
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.app.conversations.schemas import (
    ApprovalState,
    ChatAccount,
    Conversation,
    ConversationStatus,
    ConversationSummary,
    DashboardStats,
    Message,
    MessageCreate,
    SenderKind,
)
from src.app.core.errors import EmbeddingError, GenerationError, NotFoundError
from src.knowledge.models import (
    KnowledgeEntry,
    KnowledgeSource,
    KnowledgeStats,
    RetrievedContext,
    content_hash,
)


class _Clock:
    """Strictly increasing UTC timestamps so ordering never ties."""

    def __init__(self) -> None:
        self._last = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        candidate = datetime.now(timezone.utc)
        if candidate <= self._last:
            candidate = self._last + timedelta(microseconds=1)
        self._last = candidate
        return candidate


# ── In-Memory Ledger ─────────────────────────────────────────────────────────


class InMemoryAccountRepository:
    """In-memory AccountRepository for testing without database."""

    def __init__(self) -> None:
        self._accounts: dict[uuid.UUID, ChatAccount] = {}

    async def list_active(self) -> list[ChatAccount]:
        return [a for a in self._accounts.values() if a.is_active]

    async def get(self, account_id: uuid.UUID) -> ChatAccount | None:
        return self._accounts.get(account_id)

    async def get_by_external_id(self, external_id: str) -> ChatAccount | None:
        return next((a for a in self._accounts.values() if a.external_id == external_id), None)

    async def create(
        self,
        *,
        name: str,
        external_id: str,
        api_key: str,
        webhook_secret: str,
        api_secret: str | None = None,
    ) -> ChatAccount:
        account = ChatAccount(
            id=uuid.uuid4(),
            name=name,
            external_id=external_id,
            api_key=api_key,
            api_secret=api_secret,
            webhook_secret=webhook_secret,
            created_at=datetime.now(timezone.utc),
        )
        self._accounts[account.id] = account
        return account

    def add(self, account: ChatAccount) -> ChatAccount:
        self._accounts[account.id] = account
        return account


class InMemoryConversationLedger:
    """In-memory ConversationLedger for testing without database."""

    def __init__(self, accounts: InMemoryAccountRepository | None = None) -> None:
        self._accounts = accounts
        self._conversations: dict[uuid.UUID, Conversation] = {}
        self._messages: dict[uuid.UUID, Message] = {}
        self._clock = _Clock()

    # Conversations

    async def upsert_conversation(
        self,
        account_id: uuid.UUID,
        external_id: str,
        *,
        client_name: str | None = None,
        client_email: str | None = None,
        status: ConversationStatus = ConversationStatus.ACTIVE,
    ) -> Conversation:
        existing = next(
            (
                c
                for c in self._conversations.values()
                if c.account_id == account_id and c.external_id == external_id
            ),
            None,
        )
        now = self._clock.now()
        if existing is None:
            conversation = Conversation(
                id=uuid.uuid4(),
                account_id=account_id,
                external_id=external_id,
                client_name=client_name,
                client_email=client_email,
                status=status,
                created_at=now,
                updated_at=now,
            )
        else:
            conversation = existing.model_copy(
                update={
                    "client_name": client_name or existing.client_name,
                    "client_email": client_email or existing.client_email,
                    "status": (
                        existing.status
                        if existing.status is ConversationStatus.RESOLVED
                        else status
                    ),
                    "updated_at": now,
                }
            )
        self._conversations[conversation.id] = conversation
        return conversation

    async def get_conversation(self, conversation_id: uuid.UUID) -> Conversation | None:
        return self._conversations.get(conversation_id)

    async def get_conversation_by_external_id(
        self, account_id: uuid.UUID, external_id: str
    ) -> Conversation | None:
        return next(
            (
                c
                for c in self._conversations.values()
                if c.account_id == account_id and c.external_id == external_id
            ),
            None,
        )

    async def mark_resolved(self, conversation_id: uuid.UUID) -> bool:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return False
        self._conversations[conversation_id] = conversation.model_copy(
            update={"status": ConversationStatus.RESOLVED}
        )
        return True

    async def touch_conversation(
        self, conversation_id: uuid.UUID, last_message_at: datetime
    ) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is not None:
            self._conversations[conversation_id] = conversation.model_copy(
                update={"last_message_at": last_message_at, "updated_at": self._clock.now()}
            )

    async def list_conversations(self, limit: int = 50) -> list[ConversationSummary]:
        ordered = sorted(
            self._conversations.values(),
            key=lambda c: c.last_message_at or c.updated_at,
            reverse=True,
        )[:limit]
        summaries = []
        for conversation in ordered:
            messages = await self.list_messages(conversation.id)
            summaries.append(
                ConversationSummary(
                    conversation=conversation,
                    last_message=messages[-1] if messages else None,
                    pending_count=sum(
                        1
                        for m in messages
                        if m.sender_kind is SenderKind.LLM
                        and m.approval is ApprovalState.PENDING
                    ),
                )
            )
        return summaries

    async def dashboard_stats(self) -> DashboardStats:
        accounts = await self._accounts.list_active() if self._accounts else []
        return DashboardStats(
            total_conversations=len(self._conversations),
            active_conversations=sum(
                1
                for c in self._conversations.values()
                if c.status is ConversationStatus.ACTIVE
            ),
            pending_responses=sum(
                1
                for m in self._messages.values()
                if m.sender_kind is SenderKind.LLM and m.approval is ApprovalState.PENDING
            ),
            total_accounts=len(accounts),
        )

    # Messages

    async def insert_message_if_absent(self, data: MessageCreate) -> Message | None:
        if data.external_id is not None and any(
            m.external_id == data.external_id for m in self._messages.values()
        ):
            return None
        return await self.create_message(data)

    async def create_message(self, data: MessageCreate) -> Message:
        now = self._clock.now()
        message = Message(
            id=uuid.uuid4(),
            conversation_id=data.conversation_id,
            external_id=data.external_id,
            content=data.content,
            sender_kind=data.sender_kind,
            sender_name=data.sender_name,
            retrieved_context=data.retrieved_context,
            confidence=data.confidence,
            approval=data.approval,
            created_at=data.created_at or now,
            updated_at=now,
        )
        self._messages[message.id] = message
        return message

    async def get_message(self, message_id: uuid.UUID) -> Message | None:
        return self._messages.get(message_id)

    async def list_messages(self, conversation_id: uuid.UUID) -> list[Message]:
        return sorted(
            (m for m in self._messages.values() if m.conversation_id == conversation_id),
            key=lambda m: m.created_at,
        )

    async def recent_messages(
        self,
        conversation_id: uuid.UUID,
        limit: int = 10,
        *,
        before: datetime | None = None,
        exclude_id: uuid.UUID | None = None,
    ) -> list[Message]:
        messages = [
            m
            for m in await self.list_messages(conversation_id)
            if (before is None or m.created_at <= before) and m.id != exclude_id
        ]
        return messages[-limit:] if limit > 0 else []

    async def find_preceding_client_message(
        self, conversation_id: uuid.UUID, before: datetime
    ) -> Message | None:
        candidates = [
            m
            for m in await self.list_messages(conversation_id)
            if m.sender_kind is SenderKind.CLIENT and m.created_at <= before
        ]
        return candidates[-1] if candidates else None

    async def messages_since(
        self, conversation_id: uuid.UUID, watermark: datetime
    ) -> list[Message]:
        return [
            m for m in await self.list_messages(conversation_id) if m.created_at > watermark
        ]

    async def set_approval(
        self, message_id: uuid.UUID, state: ApprovalState
    ) -> tuple[Message, bool]:
        message = self._messages.get(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        if message.approval is state:
            return message, False
        updated = message.model_copy(update={"approval": state, "updated_at": self._clock.now()})
        self._messages[message_id] = updated
        return updated, True

    async def update_content(self, message_id: uuid.UUID, content: str) -> Message | None:
        message = self._messages.get(message_id)
        if message is None or message.sender_kind is not SenderKind.LLM:
            return None
        if message.delivered_at is not None:
            return None
        updated = message.model_copy(update={"content": content, "updated_at": self._clock.now()})
        self._messages[message_id] = updated
        return updated

    async def mark_delivered(self, message_id: uuid.UUID) -> bool:
        message = self._messages.get(message_id)
        if message is None or message.delivered_at is not None:
            return False
        self._messages[message_id] = message.model_copy(
            update={"delivered_at": self._clock.now()}
        )
        return True

    async def clear_delivered(self, message_id: uuid.UUID) -> None:
        message = self._messages.get(message_id)
        if message is not None:
            self._messages[message_id] = message.model_copy(update={"delivered_at": None})

    async def list_client_agent_pairs(self) -> list[tuple[Conversation, Message, Message]]:
        pairs = []
        for conversation in self._conversations.values():
            messages = [
                m
                for m in await self.list_messages(conversation.id)
                if m.sender_kind in (SenderKind.CLIENT, SenderKind.AGENT) and m.content
            ]
            for question, answer in zip(messages, messages[1:]):
                if (
                    question.sender_kind is SenderKind.CLIENT
                    and answer.sender_kind is SenderKind.AGENT
                ):
                    pairs.append((conversation, question, answer))
        return pairs

    # Test helpers

    def all_messages(self) -> list[Message]:
        return sorted(self._messages.values(), key=lambda m: m.created_at)


# ── In-Memory Knowledge Store ────────────────────────────────────────────────


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryKnowledgeStore:
    """In-memory KnowledgeStore with brute-force cosine search."""

    def __init__(self, dimensions: int = 4) -> None:
        self.dimensions = dimensions
        self._entries: dict[str, KnowledgeEntry] = {}

    async def insert(self, entry: KnowledgeEntry) -> KnowledgeEntry | None:
        # NULL source ids never collide, as with the PostgreSQL unique constraint.
        if entry.source_id is not None and await self.exists(entry.content, entry.source_id):
            return None
        self._entries[entry.id] = entry
        return entry

    async def exists(self, content: str, source_id: str | None) -> bool:
        digest = content_hash(content)
        return any(
            e.content_hash == digest and e.source_id == source_id
            for e in self._entries.values()
        )

    async def nearest_neighbors(
        self, vector: list[float], k: int, threshold: float
    ) -> list[RetrievedContext]:
        scored = [
            RetrievedContext(
                content=e.content,
                source=e.source.value,
                source_id=e.source_id,
                similarity=_cosine(vector, e.embedding or []),
            )
            for e in self._entries.values()
        ]
        scored = [r for r in scored if r.similarity > threshold]
        scored.sort(key=lambda r: r.similarity, reverse=True)
        return scored[:k]

    async def get(self, entry_id: str) -> KnowledgeEntry | None:
        return self._entries.get(entry_id)

    async def update(
        self,
        entry_id: str,
        *,
        content: str | None = None,
        embedding: list[float] | None = None,
        source: KnowledgeSource | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeEntry | None:
        entry = self._entries.get(entry_id)
        if entry is None:
            return None
        changes: dict[str, Any] = {"updated_at": datetime.now(timezone.utc)}
        if content is not None:
            changes["content"] = content
        if embedding is not None:
            changes["embedding"] = embedding
        if source is not None:
            changes["source"] = source
        if metadata is not None:
            changes["metadata"] = metadata
        updated = entry.model_copy(update=changes)
        self._entries[entry_id] = updated
        return updated

    async def delete(self, entry_id: str) -> bool:
        return self._entries.pop(entry_id, None) is not None

    async def bulk_delete(self, entry_ids: list[str]) -> int:
        return sum(1 for entry_id in entry_ids if self._entries.pop(entry_id, None) is not None)

    async def list_entries(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        source: KnowledgeSource | None = None,
        search: str | None = None,
    ) -> list[KnowledgeEntry]:
        entries = sorted(self._entries.values(), key=lambda e: e.created_at, reverse=True)
        if source is not None:
            entries = [e for e in entries if e.source is source]
        if search:
            entries = [e for e in entries if search.lower() in e.content.lower()]
        return entries[offset : offset + limit]

    async def stats(self) -> KnowledgeStats:
        by_source: dict[str, int] = {}
        for entry in self._entries.values():
            by_source[entry.source.value] = by_source.get(entry.source.value, 0) + 1
        return KnowledgeStats(total=len(self._entries), by_source=by_source)

    async def count(self) -> int:
        return len(self._entries)

    def entries(self) -> list[KnowledgeEntry]:
        return list(self._entries.values())


# ── Provider Fakes ───────────────────────────────────────────────────────────


KEYWORDS = ("refund", "shipping", "password", "invoice")


class KeywordEmbeddingService:
    """Embeds text as keyword presence flags (plus a small bias term).

    Texts sharing a keyword score close to 1.0; texts sharing none score
    close to 0.0.
    """

    def __init__(self) -> None:
        self.dimensions = len(KEYWORDS)
        self.fail = False
        self.failures_remaining = 0
        self.calls: list[str] = []

    async def embed_text(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingError("embedding provider unavailable")
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise EmbeddingError("transient embedding failure")
        lowered = text.lower()
        return [1.0 if word in lowered else 0.01 for word in KEYWORDS]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed_text(t) for t in texts]


class ScriptedLLMService:
    """Returns a fixed reply and records every prompt."""

    def __init__(self, reply: str = "Thanks for reaching out! Here is what you need.") -> None:
        self.reply = reply
        self.fail_on: set[str] = set()
        self.prompts: list[str] = []
        self.available = True

    async def generate(self, prompt: str, metadata: dict | None = None) -> str:
        self.prompts.append(prompt)
        if any(marker in prompt for marker in self.fail_on):
            raise GenerationError("model call failed")
        return self.reply


class RecordingChatraClient:
    """Records outbound sends; ``ok`` controls the reported outcome."""

    def __init__(self) -> None:
        self.ok = True
        self.sent: list[dict[str, Any]] = []

    async def send(
        self,
        account: ChatAccount,
        external_conversation_id: str,
        text: str,
        sender_name: str | None = None,
    ) -> bool:
        self.sent.append(
            {
                "account": account.external_id,
                "conversation": external_conversation_id,
                "text": text,
                "sender_name": sender_name,
                "ok": self.ok,
            }
        )
        return self.ok


# ── Fixtures ─────────────────────────────────────────────────────────────────


WEBHOOK_SECRET = "whsec-test"


@pytest.fixture
def accounts() -> InMemoryAccountRepository:
    return InMemoryAccountRepository()


@pytest.fixture
def account(accounts) -> ChatAccount:
    return accounts.add(
        ChatAccount(
            id=uuid.uuid4(),
            name="Acme Support",
            external_id="acct-1",
            api_key="public-key",
            api_secret="secret-key",
            webhook_secret=WEBHOOK_SECRET,
            created_at=datetime.now(timezone.utc),
        )
    )


@pytest.fixture
def ledger(accounts) -> InMemoryConversationLedger:
    return InMemoryConversationLedger(accounts)


@pytest.fixture
def knowledge_store() -> InMemoryKnowledgeStore:
    return InMemoryKnowledgeStore(dimensions=len(KEYWORDS))


@pytest.fixture
def embedder() -> KeywordEmbeddingService:
    return KeywordEmbeddingService()


@pytest.fixture
def llm() -> ScriptedLLMService:
    return ScriptedLLMService()


@pytest.fixture
def chatra() -> RecordingChatraClient:
    return RecordingChatraClient()


@pytest.fixture
def knowledge_service(embedder, knowledge_store):
    from src.knowledge.service import KnowledgeService

    return KnowledgeService(embedder, knowledge_store)


@pytest.fixture
def retriever(embedder, knowledge_store):
    from src.knowledge.config import KnowledgeBaseConfig
    from src.knowledge.rag.retriever import KnowledgeRetriever

    return KnowledgeRetriever(
        embedder, knowledge_store, KnowledgeBaseConfig(default_top_k=5, similarity_threshold=0.7)
    )


@pytest.fixture
def generator(retriever, llm, ledger):
    from src.app.conversations.generator import ReplyGenerator

    return ReplyGenerator(retriever, llm, ledger)


@pytest.fixture
def pipeline(ledger, accounts, generator):
    from src.app.conversations.ingestion import WebhookIngestionPipeline

    return WebhookIngestionPipeline(ledger, accounts, generator, history_limit=10)


@pytest.fixture
def workflow(ledger, accounts, chatra, knowledge_service):
    from src.app.conversations.approval import ApprovalWorkflow

    return ApprovalWorkflow(ledger, accounts, chatra, knowledge_service)


@pytest.fixture
def importer(ledger, knowledge_service):
    from tenacity import wait_none

    from src.knowledge.ingestion.pipeline import ConversationKnowledgeImporter

    return ConversationKnowledgeImporter(ledger, knowledge_service, max_attempts=3, wait=wait_none())


# ── App Fixtures ─────────────────────────────────────────────────────────────


def make_user(role: str = "agent"):
    from src.app.models.user import User

    return User(
        id=uuid.uuid4(),
        email=f"{role}@example.com",
        name=f"Test {role.title()}",
        hashed_password=None,
        role=role,
        is_active=True,
    )


@pytest.fixture
def user_factory():
    return make_user


@pytest.fixture
def current_user():
    return make_user("agent")


@pytest.fixture
def app(ledger, accounts, pipeline, workflow, knowledge_service, importer, current_user):
    """FastAPI app with in-memory services and a signed-in agent."""
    from src.app.api.deps import get_current_user
    from src.app.main import create_app

    application = create_app()
    application.state.ledger = ledger
    application.state.accounts = accounts
    application.state.ingestion_pipeline = pipeline
    application.state.approval_workflow = workflow
    application.state.knowledge_service = knowledge_service
    application.state.knowledge_importer = importer

    async def _current_user():
        return current_user

    application.dependency_overrides[get_current_user] = _current_user
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
