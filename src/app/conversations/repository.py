"""Conversation ledger -- async persistence for accounts, conversations and messages.

Provides ConversationLedger and AccountRepository with the session_factory
callable pattern. Handles serialization between Pydantic schemas and
SQLAlchemy models.

Idempotency and concurrency rules live in SQL, not in Python:
- Conversation upsert is INSERT ... ON CONFLICT (account_id, external_id)
  DO UPDATE; identity fields only take non-null incoming values and a
  resolved status is never reopened.
- Provider messages insert with ON CONFLICT (external_id) DO NOTHING.
- Approval changes are conditional UPDATEs (``approval IS DISTINCT FROM``)
  so only the caller that actually changed the state sees ``changed=True``.
- Delivery is claimed by setting ``delivered_at`` where it is still NULL.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import and_, case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.conversations.models import (
    ChatAccountModel,
    ConversationModel,
    MessageModel,
)
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
from src.app.core.errors import NotFoundError
from src.knowledge.models import RetrievedContext

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_account(model: ChatAccountModel) -> ChatAccount:
    """Convert ChatAccountModel to ChatAccount schema."""
    return ChatAccount(
        id=model.id,
        name=model.name,
        external_id=model.external_id,
        api_key=model.api_key,
        api_secret=model.api_secret,
        webhook_secret=model.webhook_secret,
        is_active=model.is_active,
        created_at=model.created_at,
    )


def _model_to_conversation(model: ConversationModel) -> Conversation:
    """Convert ConversationModel to Conversation schema."""
    return Conversation(
        id=model.id,
        account_id=model.account_id,
        external_id=model.external_id,
        client_name=model.client_name,
        client_email=model.client_email,
        status=ConversationStatus(model.status),
        last_message_at=model.last_message_at,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


def _model_to_message(model: MessageModel) -> Message:
    """Convert MessageModel to Message schema."""
    context = None
    if model.retrieved_context is not None:
        context = [RetrievedContext.model_validate(c) for c in model.retrieved_context]
    return Message(
        id=model.id,
        conversation_id=model.conversation_id,
        external_id=model.external_id,
        content=model.content,
        sender_kind=SenderKind(model.sender_kind),
        sender_name=model.sender_name,
        message_kind=model.message_kind or "text",
        retrieved_context=context,
        confidence=model.confidence,
        approval=ApprovalState.from_column(model.approval),
        delivered_at=model.delivered_at,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


def _message_values(data: MessageCreate) -> dict:
    values = {
        "conversation_id": data.conversation_id,
        "external_id": data.external_id,
        "content": data.content,
        "sender_kind": data.sender_kind.value,
        "sender_name": data.sender_name,
        "message_kind": "text",
        "retrieved_context": (
            [c.model_dump(mode="json") for c in data.retrieved_context]
            if data.retrieved_context is not None
            else None
        ),
        "confidence": data.confidence,
        "approval": data.approval.to_column(),
    }
    if data.created_at is not None:
        values["created_at"] = data.created_at
    return values


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Accounts ────────────────────────────────────────────────────────────────


class AccountRepository:
    """Read access to configured Chatra accounts.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def list_active(self) -> list[ChatAccount]:
        """Active accounts, oldest first."""
        async for session in self._session_factory():
            stmt = (
                select(ChatAccountModel)
                .where(ChatAccountModel.is_active.is_(True))
                .order_by(ChatAccountModel.created_at.asc())
            )
            result = await session.execute(stmt)
            return [_model_to_account(m) for m in result.scalars().all()]

    async def get(self, account_id: uuid.UUID) -> ChatAccount | None:
        async for session in self._session_factory():
            model = await session.get(ChatAccountModel, account_id)
            return _model_to_account(model) if model is not None else None

    async def get_by_external_id(self, external_id: str) -> ChatAccount | None:
        async for session in self._session_factory():
            stmt = select(ChatAccountModel).where(
                ChatAccountModel.external_id == external_id
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_account(model) if model is not None else None

    async def create(
        self,
        *,
        name: str,
        external_id: str,
        api_key: str,
        webhook_secret: str,
        api_secret: str | None = None,
    ) -> ChatAccount:
        """Register an account (used by the provisioning script)."""
        async for session in self._session_factory():
            model = ChatAccountModel(
                name=name,
                external_id=external_id,
                api_key=api_key,
                api_secret=api_secret,
                webhook_secret=webhook_secret,
                is_active=True,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_account(model)


# ── Ledger ──────────────────────────────────────────────────────────────────


class ConversationLedger:
    """Authoritative store of conversations and their messages.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Conversations ────────────────────────────────────────────────────

    async def upsert_conversation(
        self,
        account_id: uuid.UUID,
        external_id: str,
        *,
        client_name: str | None = None,
        client_email: str | None = None,
        status: ConversationStatus = ConversationStatus.ACTIVE,
    ) -> Conversation:
        """Create the conversation or refresh it in one statement.

        Args:
            account_id: Owning account.
            external_id: Provider conversation id.
            client_name: Incoming display name (None keeps the stored value).
            client_email: Incoming email (None keeps the stored value).
            status: Incoming status; ignored when the stored status is resolved.

        Returns:
            The conversation as stored after the upsert.
        """
        async for session in self._session_factory():
            stmt = pg_insert(ConversationModel).values(
                account_id=account_id,
                external_id=external_id,
                client_name=client_name,
                client_email=client_email,
                status=status.value,
            )
            excluded = stmt.excluded
            stmt = stmt.on_conflict_do_update(
                constraint="uq_conversations_account_external",
                set_={
                    "client_name": func.coalesce(
                        excluded.client_name, ConversationModel.client_name
                    ),
                    "client_email": func.coalesce(
                        excluded.client_email, ConversationModel.client_email
                    ),
                    "status": case(
                        (
                            ConversationModel.status == ConversationStatus.RESOLVED.value,
                            ConversationModel.status,
                        ),
                        else_=excluded.status,
                    ),
                    "updated_at": func.now(),
                },
            ).returning(ConversationModel)
            result = await session.scalars(
                stmt, execution_options={"populate_existing": True}
            )
            model = result.one()
            await session.commit()
            return _model_to_conversation(model)

    async def get_conversation(self, conversation_id: uuid.UUID) -> Conversation | None:
        async for session in self._session_factory():
            model = await session.get(ConversationModel, conversation_id)
            return _model_to_conversation(model) if model is not None else None

    async def get_conversation_by_external_id(
        self, account_id: uuid.UUID, external_id: str
    ) -> Conversation | None:
        async for session in self._session_factory():
            stmt = select(ConversationModel).where(
                ConversationModel.account_id == account_id,
                ConversationModel.external_id == external_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_conversation(model) if model is not None else None

    async def mark_resolved(self, conversation_id: uuid.UUID) -> bool:
        """Set status to resolved. Returns False if the conversation is unknown."""
        async for session in self._session_factory():
            result = await session.execute(
                update(ConversationModel)
                .where(ConversationModel.id == conversation_id)
                .values(status=ConversationStatus.RESOLVED.value, updated_at=func.now())
            )
            await session.commit()
            return result.rowcount > 0

    async def touch_conversation(
        self, conversation_id: uuid.UUID, last_message_at: datetime
    ) -> None:
        """Set last_message_at unconditionally and bump updated_at."""
        async for session in self._session_factory():
            await session.execute(
                update(ConversationModel)
                .where(ConversationModel.id == conversation_id)
                .values(last_message_at=last_message_at, updated_at=func.now())
            )
            await session.commit()

    async def list_conversations(self, limit: int = 50) -> list[ConversationSummary]:
        """Most recently active conversations with last message and pending count."""
        async for session in self._session_factory():
            activity = func.coalesce(
                ConversationModel.last_message_at, ConversationModel.updated_at
            )
            conv_result = await session.execute(
                select(ConversationModel).order_by(activity.desc().nulls_last()).limit(limit)
            )
            conversations = conv_result.scalars().all()
            if not conversations:
                return []
            ids = [c.id for c in conversations]

            last_result = await session.execute(
                select(MessageModel)
                .where(MessageModel.conversation_id.in_(ids))
                .distinct(MessageModel.conversation_id)
                .order_by(MessageModel.conversation_id, MessageModel.created_at.desc())
            )
            last_by_conv = {m.conversation_id: m for m in last_result.scalars().all()}

            pending_result = await session.execute(
                select(MessageModel.conversation_id, func.count(MessageModel.id))
                .where(
                    MessageModel.conversation_id.in_(ids),
                    MessageModel.sender_kind == SenderKind.LLM.value,
                    MessageModel.approval.is_(None),
                )
                .group_by(MessageModel.conversation_id)
            )
            pending_by_conv = {row[0]: int(row[1]) for row in pending_result}

            return [
                ConversationSummary(
                    conversation=_model_to_conversation(c),
                    last_message=(
                        _model_to_message(last_by_conv[c.id])
                        if c.id in last_by_conv
                        else None
                    ),
                    pending_count=pending_by_conv.get(c.id, 0),
                )
                for c in conversations
            ]

    async def dashboard_stats(self) -> DashboardStats:
        async for session in self._session_factory():
            total = await session.scalar(select(func.count(ConversationModel.id)))
            active = await session.scalar(
                select(func.count(ConversationModel.id)).where(
                    ConversationModel.status == ConversationStatus.ACTIVE.value
                )
            )
            pending = await session.scalar(
                select(func.count(MessageModel.id)).where(
                    MessageModel.sender_kind == SenderKind.LLM.value,
                    MessageModel.approval.is_(None),
                )
            )
            accounts = await session.scalar(
                select(func.count(ChatAccountModel.id)).where(
                    ChatAccountModel.is_active.is_(True)
                )
            )
            return DashboardStats(
                total_conversations=int(total or 0),
                active_conversations=int(active or 0),
                pending_responses=int(pending or 0),
                total_accounts=int(accounts or 0),
            )

    # ── Messages ─────────────────────────────────────────────────────────

    async def insert_message_if_absent(self, data: MessageCreate) -> Message | None:
        """Insert a provider message unless its external id is already stored.

        Returns:
            The new message, or None when it was a redelivery.
        """
        if data.external_id is None:
            return await self.create_message(data)
        async for session in self._session_factory():
            stmt = (
                pg_insert(MessageModel)
                .values(**_message_values(data))
                .on_conflict_do_nothing(index_elements=[MessageModel.external_id])
                .returning(MessageModel)
            )
            result = await session.scalars(stmt)
            model = result.first()
            await session.commit()
            return _model_to_message(model) if model is not None else None

    async def create_message(self, data: MessageCreate) -> Message:
        """Insert a message this system originates (drafts, agent messages)."""
        async for session in self._session_factory():
            model = MessageModel(**_message_values(data))
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_message(model)

    async def get_message(self, message_id: uuid.UUID) -> Message | None:
        async for session in self._session_factory():
            model = await session.get(MessageModel, message_id)
            return _model_to_message(model) if model is not None else None

    async def list_messages(self, conversation_id: uuid.UUID) -> list[Message]:
        """All messages of a conversation, oldest first."""
        async for session in self._session_factory():
            result = await session.execute(
                select(MessageModel)
                .where(MessageModel.conversation_id == conversation_id)
                .order_by(MessageModel.created_at.asc(), MessageModel.id)
            )
            return [_model_to_message(m) for m in result.scalars().all()]

    async def recent_messages(
        self,
        conversation_id: uuid.UUID,
        limit: int = 10,
        *,
        before: datetime | None = None,
        exclude_id: uuid.UUID | None = None,
    ) -> list[Message]:
        """Up to ``limit`` most recent messages, returned oldest first.

        Args:
            conversation_id: Conversation to read.
            limit: Maximum number of messages.
            before: Only messages created at or before this instant.
            exclude_id: Message to leave out (typically the one being answered).
        """
        async for session in self._session_factory():
            stmt = select(MessageModel).where(
                MessageModel.conversation_id == conversation_id
            )
            if before is not None:
                stmt = stmt.where(MessageModel.created_at <= before)
            if exclude_id is not None:
                stmt = stmt.where(MessageModel.id != exclude_id)
            stmt = stmt.order_by(MessageModel.created_at.desc()).limit(limit)
            result = await session.execute(stmt)
            models = list(result.scalars().all())
            models.reverse()
            return [_model_to_message(m) for m in models]

    async def find_preceding_client_message(
        self, conversation_id: uuid.UUID, before: datetime
    ) -> Message | None:
        """Nearest client message created at or before ``before``."""
        async for session in self._session_factory():
            stmt = (
                select(MessageModel)
                .where(
                    MessageModel.conversation_id == conversation_id,
                    MessageModel.sender_kind == SenderKind.CLIENT.value,
                    MessageModel.created_at <= before,
                )
                .order_by(MessageModel.created_at.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_message(model) if model is not None else None

    async def messages_since(
        self, conversation_id: uuid.UUID, watermark: datetime
    ) -> list[Message]:
        """Messages created strictly after ``watermark``, oldest first."""
        async for session in self._session_factory():
            result = await session.execute(
                select(MessageModel)
                .where(
                    MessageModel.conversation_id == conversation_id,
                    MessageModel.created_at > watermark,
                )
                .order_by(MessageModel.created_at.asc())
            )
            return [_model_to_message(m) for m in result.scalars().all()]

    async def set_approval(
        self, message_id: uuid.UUID, state: ApprovalState
    ) -> tuple[Message, bool]:
        """Atomically move a message to ``state``.

        Returns:
            (message, changed) where ``changed`` is False when the message
            was already in ``state``.

        Raises:
            NotFoundError: If the message does not exist.
        """
        target = state.to_column()
        async for session in self._session_factory():
            stmt = (
                update(MessageModel)
                .where(
                    MessageModel.id == message_id,
                    MessageModel.approval.is_distinct_from(target),
                )
                .values(approval=target, updated_at=func.now())
                .returning(MessageModel)
            )
            result = await session.scalars(
                stmt, execution_options={"synchronize_session": False}
            )
            model = result.first()
            await session.commit()
            if model is not None:
                return _model_to_message(model), True

            existing = await session.get(MessageModel, message_id)
            if existing is None:
                raise NotFoundError(f"Message {message_id} not found")
            return _model_to_message(existing), False

    async def update_content(
        self, message_id: uuid.UUID, content: str
    ) -> Message | None:
        """Replace the content of an undelivered llm message.

        Returns:
            The updated message, or None if no undelivered llm message with
            this id exists (the caller decides which error applies).
        """
        async for session in self._session_factory():
            stmt = (
                update(MessageModel)
                .where(
                    MessageModel.id == message_id,
                    MessageModel.sender_kind == SenderKind.LLM.value,
                    MessageModel.delivered_at.is_(None),
                )
                .values(content=content, updated_at=func.now())
                .returning(MessageModel)
            )
            result = await session.scalars(
                stmt, execution_options={"synchronize_session": False}
            )
            model = result.first()
            await session.commit()
            return _model_to_message(model) if model is not None else None

    async def mark_delivered(self, message_id: uuid.UUID) -> bool:
        """Claim delivery of a message.

        Returns:
            True if this call set ``delivered_at``; False if it was already set.
        """
        async for session in self._session_factory():
            result = await session.execute(
                update(MessageModel)
                .where(
                    MessageModel.id == message_id,
                    MessageModel.delivered_at.is_(None),
                )
                .values(delivered_at=_now(), updated_at=func.now())
            )
            await session.commit()
            return result.rowcount > 0

    async def clear_delivered(self, message_id: uuid.UUID) -> None:
        """Release a delivery claim after the provider refused the message."""
        async for session in self._session_factory():
            await session.execute(
                update(MessageModel)
                .where(MessageModel.id == message_id)
                .values(delivered_at=None, updated_at=func.now())
            )
            await session.commit()

    async def list_client_agent_pairs(
        self,
    ) -> list[tuple[Conversation, Message, Message]]:
        """Consecutive client -> agent message pairs across all conversations.

        Both messages must have non-empty content. Used by the knowledge
        importer to turn human answers into Q/A entries.
        """
        async for session in self._session_factory():
            conv_result = await session.execute(select(ConversationModel))
            conversations = {c.id: _model_to_conversation(c) for c in conv_result.scalars()}

            msg_result = await session.execute(
                select(MessageModel)
                .where(
                    MessageModel.sender_kind.in_(
                        [SenderKind.CLIENT.value, SenderKind.AGENT.value]
                    ),
                    and_(MessageModel.content.is_not(None), MessageModel.content != ""),
                )
                .order_by(MessageModel.conversation_id, MessageModel.created_at.asc())
            )

            pairs: list[tuple[Conversation, Message, Message]] = []
            previous: MessageModel | None = None
            for model in msg_result.scalars():
                if (
                    previous is not None
                    and previous.conversation_id == model.conversation_id
                    and previous.sender_kind == SenderKind.CLIENT.value
                    and model.sender_kind == SenderKind.AGENT.value
                ):
                    pairs.append(
                        (
                            conversations[model.conversation_id],
                            _model_to_message(previous),
                            _model_to_message(model),
                        )
                    )
                previous = model
            return pairs
