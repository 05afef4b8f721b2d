"""Ledger persistence models -- chat accounts, conversations and messages.

Three SQLAlchemy models:
- ChatAccountModel: Provider account configuration (credentials, webhook secret)
- ConversationModel: One row per provider conversation per account
- MessageModel: Customer, agent and AI-drafted messages

Uniqueness is enforced by constraints so that concurrent webhook
redeliveries resolve through INSERT ... ON CONFLICT instead of
application-level read-then-write checks.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


class ChatAccountModel(Base):
    """Chatra account whose webhooks are ingested and whose API delivers replies."""

    __tablename__ = "chat_accounts"
    __table_args__ = (
        UniqueConstraint("external_id", name="uq_chat_accounts_external_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    api_key: Mapped[str] = mapped_column(String(500), nullable=False)
    api_secret: Mapped[str | None] = mapped_column(String(500), nullable=True)
    webhook_secret: Mapped[str] = mapped_column(String(500), nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ConversationModel(Base):
    """A customer conversation mirrored from the chat provider.

    Keyed by (account_id, external_id). Status never leaves ``resolved``
    through ingestion; that rule lives in the upsert statement.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "external_id",
            name="uq_conversations_account_external",
        ),
        Index("ix_conversations_last_message_at", "last_message_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("chat_accounts.id"),
        nullable=False,
    )
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    client_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    client_email: Mapped[str | None] = mapped_column(String(300), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        default="active",
        server_default=text("'active'"),
    )
    last_message_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=True,
    )


class MessageModel(Base):
    """A single chat message.

    ``approval`` is the persisted tri-state (NULL pending, TRUE approved,
    FALSE rejected) and is only meaningful for ``llm`` messages.
    ``retrieved_context`` snapshots the knowledge used to draft a reply.
    """

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("external_id", name="uq_messages_external_id"),
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    external_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    sender_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    sender_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    message_kind: Mapped[str] = mapped_column(
        String(20), default="text", server_default=text("'text'")
    )
    retrieved_context: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    approval: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
