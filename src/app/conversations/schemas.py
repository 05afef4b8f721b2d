"""Pydantic v2 schemas for the conversation ledger.

Defines the data contracts shared by the webhook ingestion pipeline, the
reply generator, the approval workflow and the dashboard API.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from src.knowledge.models import RetrievedContext


# ── Enums ────────────────────────────────────────────────────────────────────


class SenderKind(str, Enum):
    """Who authored a message."""

    CLIENT = "client"
    AGENT = "agent"
    LLM = "llm"


class ConversationStatus(str, Enum):
    """Lifecycle status of a conversation."""

    ACTIVE = "active"
    RESOLVED = "resolved"


class ApprovalState(str, Enum):
    """Review state of an AI-drafted reply.

    Persisted as a nullable boolean: NULL is pending, TRUE approved,
    FALSE rejected.
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @classmethod
    def from_column(cls, value: bool | None) -> ApprovalState:
        if value is None:
            return cls.PENDING
        return cls.APPROVED if value else cls.REJECTED

    def to_column(self) -> bool | None:
        if self is ApprovalState.PENDING:
            return None
        return self is ApprovalState.APPROVED


# ── Accounts ─────────────────────────────────────────────────────────────────


class ChatAccount(BaseModel):
    """Chatra account configuration consumed by ingestion and delivery."""

    id: uuid.UUID
    name: str
    external_id: str
    api_key: str
    api_secret: str | None = None
    webhook_secret: str
    is_active: bool = True
    created_at: datetime | None = None


# ── Ledger Entities ──────────────────────────────────────────────────────────


class Conversation(BaseModel):
    """A provider conversation as recorded in the ledger."""

    id: uuid.UUID
    account_id: uuid.UUID
    external_id: str
    client_name: str | None = None
    client_email: str | None = None
    status: ConversationStatus = ConversationStatus.ACTIVE
    last_message_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class Message(BaseModel):
    """A single ledger message.

    ``approval`` only carries meaning for ``llm`` messages; client and agent
    messages are implicitly approved.
    """

    id: uuid.UUID
    conversation_id: uuid.UUID
    external_id: str | None = None
    content: str
    sender_kind: SenderKind
    sender_name: str | None = None
    message_kind: str = "text"
    retrieved_context: list[RetrievedContext] | None = None
    confidence: float | None = Field(None, ge=0.0, le=1.0)
    approval: ApprovalState = ApprovalState.PENDING
    delivered_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_delivered(self) -> bool:
        return self.delivered_at is not None


class MessageCreate(BaseModel):
    """Fields for a new ledger message."""

    conversation_id: uuid.UUID
    content: str
    sender_kind: SenderKind
    sender_name: str | None = None
    external_id: str | None = None
    retrieved_context: list[RetrievedContext] | None = None
    confidence: float | None = Field(None, ge=0.0, le=1.0)
    approval: ApprovalState = ApprovalState.PENDING
    created_at: datetime | None = None


class ConversationDetail(BaseModel):
    """A conversation together with its full message list."""

    conversation: Conversation
    messages: list[Message] = Field(default_factory=list)


class ConversationSummary(BaseModel):
    """Dashboard row: conversation with its latest message and pending count."""

    conversation: Conversation
    last_message: Message | None = None
    pending_count: int = 0


class DashboardStats(BaseModel):
    """Aggregate counters shown above the conversation list."""

    total_conversations: int = 0
    active_conversations: int = 0
    pending_responses: int = 0
    total_accounts: int = 0


class ConversationListResponse(BaseModel):
    """Response for the dashboard conversation list."""

    conversations: list[ConversationSummary] = Field(default_factory=list)
    stats: DashboardStats = Field(default_factory=DashboardStats)


# ── Workflow Results ─────────────────────────────────────────────────────────


class GeneratedReply(BaseModel):
    """Candidate reply produced by the reply generator."""

    content: str
    confidence: float = Field(ge=0.0, le=1.0)
    retrieved_context: list[RetrievedContext] = Field(default_factory=list)


class ApprovalResult(BaseModel):
    """Outcome of an approve/reject decision.

    ``warning`` is set when the decision was recorded but a best-effort
    side effect (delivery, knowledge extraction) did not succeed.
    """

    message: Message
    changed: bool
    delivered: bool = False
    knowledge_entry_id: str | None = None
    warning: str | None = None


class AgentMessageResult(BaseModel):
    """Outcome of sending an agent-authored message."""

    message: Message
    delivered: bool
    warning: str | None = None


# ── Request Models ───────────────────────────────────────────────────────────


class ApproveRequest(BaseModel):
    """Request body for approving a drafted reply."""

    extract_to_knowledge: bool = True


class EditMessageRequest(BaseModel):
    """Request body for editing a drafted reply."""

    content: str = Field(..., min_length=1)


class AgentMessageRequest(BaseModel):
    """Request body for an agent-authored message."""

    content: str = Field(..., min_length=1)
