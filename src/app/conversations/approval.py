"""Approval workflow for AI-drafted replies.

States (persisted as a nullable boolean):

    PENDING --approve--> APPROVED
    PENDING --reject---> REJECTED
    APPROVED <--------> REJECTED   (re-decision)

Delivery to Chatra happens only when an ``llm`` message transitions into
APPROVED and has never been delivered. Staying approved, or coming back to
approved after a delivered message was rejected, sends nothing.

The local ledger is authoritative: a failed delivery or a failed knowledge
extraction leaves the approval in place and is reported as a warning.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog

from src.app.conversations.repository import AccountRepository, ConversationLedger
from src.app.conversations.schemas import (
    AgentMessageResult,
    ApprovalResult,
    ApprovalState,
    Conversation,
    Message,
    MessageCreate,
    SenderKind,
)
from src.app.core.errors import (
    AlreadyDeliveredError,
    EmbeddingError,
    NotFoundError,
    ValidationError,
)
from src.app.core.monitoring import approval_decisions_total
from src.app.services.chatra import ChatraClient
from src.knowledge.models import KnowledgeSource, build_qa_pair
from src.knowledge.service import KnowledgeService

logger = structlog.get_logger(__name__)

DELIVERY_WARNING_APPROVED = (
    "Message approved but not sent to Chatra; the customer may not have received it"
)
DELIVERY_WARNING_AGENT = "Message saved but not sent to Chatra"
EXTRACTION_WARNING = "Message approved but could not be added to the knowledge base"


class ApprovalWorkflow:
    """Applies human decisions to drafted replies.

    Args:
        ledger: Conversation ledger.
        accounts: Account lookups for delivery credentials.
        chatra: Outbound delivery adapter.
        knowledge: Knowledge service for Q/A extraction.
        default_sender_name: Name shown to the customer when no approver name is given.
    """

    def __init__(
        self,
        ledger: ConversationLedger,
        accounts: AccountRepository,
        chatra: ChatraClient,
        knowledge: KnowledgeService,
        default_sender_name: str = "AI Assistant",
    ) -> None:
        self._ledger = ledger
        self._accounts = accounts
        self._chatra = chatra
        self._knowledge = knowledge
        self._default_sender_name = default_sender_name

    # ── Delivery ─────────────────────────────────────────────────────────

    async def _deliver(
        self, conversation: Conversation, message: Message, sender_name: str
    ) -> bool:
        """Claim, send and (on failure) release delivery of one message."""
        account = await self._accounts.get(conversation.account_id)
        if account is None:
            logger.error(
                "approval.account_missing",
                conversation_id=str(conversation.id),
                account_id=str(conversation.account_id),
            )
            return False

        if not await self._ledger.mark_delivered(message.id):
            logger.info("approval.already_delivered", message_id=str(message.id))
            return False

        ok = await self._chatra.send(
            account,
            conversation.external_id,
            message.content,
            sender_name=sender_name,
        )
        if not ok:
            await self._ledger.clear_delivered(message.id)
        return ok

    async def _conversation_for(self, message: Message) -> Conversation:
        conversation = await self._ledger.get_conversation(message.conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {message.conversation_id} not found")
        return conversation

    # ── Knowledge Extraction ─────────────────────────────────────────────

    async def _extract(self, conversation: Conversation, message: Message) -> str | None:
        """Store the approved answer with its question; returns the entry id."""
        question = await self._ledger.find_preceding_client_message(
            conversation.id, before=message.created_at
        )
        if question is None or not question.content.strip():
            logger.info("approval.no_client_question", message_id=str(message.id))
            return None

        entry = await self._knowledge.add_entry(
            build_qa_pair(question.content, message.content),
            source=KnowledgeSource.APPROVED_RESPONSE,
            source_id=str(conversation.id),
            metadata={
                "conversation_id": str(conversation.id),
                "client_message_id": str(question.id),
                "approved_message_id": str(message.id),
                "client_name": conversation.client_name,
                "client_email": conversation.client_email,
                "approved_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        return entry.id if entry is not None else None

    # ── Decisions ────────────────────────────────────────────────────────

    async def approve(
        self,
        message_id: uuid.UUID,
        extract_to_knowledge: bool = True,
        approver_name: str | None = None,
    ) -> ApprovalResult:
        """Approve a message, delivering and extracting as applicable.

        Args:
            message_id: Message to approve.
            extract_to_knowledge: Whether to add the Q/A pair to the knowledge base.
            approver_name: Sender name shown to the customer.

        Returns:
            ApprovalResult; ``warning`` is set if delivery or extraction failed.

        Raises:
            NotFoundError: If the message (or its conversation) does not exist.
        """
        message, changed = await self._ledger.set_approval(message_id, ApprovalState.APPROVED)
        approval_decisions_total.labels(decision="approve", changed=str(changed).lower()).inc()
        log = logger.bind(message_id=str(message_id), changed=changed)

        result = ApprovalResult(message=message, changed=changed)
        if message.sender_kind is not SenderKind.LLM:
            log.info("approval.approved_non_llm", sender_kind=message.sender_kind.value)
            return result

        conversation = await self._conversation_for(message)
        warnings: list[str] = []

        if changed and message.delivered_at is None:
            result.delivered = await self._deliver(
                conversation,
                message,
                approver_name or self._default_sender_name,
            )
            if not result.delivered:
                warnings.append(DELIVERY_WARNING_APPROVED)
                log.warning("approval.delivery_failed")

        if extract_to_knowledge:
            try:
                result.knowledge_entry_id = await self._extract(conversation, message)
            except EmbeddingError as exc:
                warnings.append(EXTRACTION_WARNING)
                log.warning("approval.extraction_failed", error=str(exc))

        refreshed = await self._ledger.get_message(message_id)
        result.message = refreshed or message
        result.warning = "; ".join(warnings) or None
        log.info(
            "approval.approved",
            delivered=result.delivered,
            knowledge_entry_id=result.knowledge_entry_id,
        )
        return result

    async def reject(self, message_id: uuid.UUID) -> ApprovalResult:
        """Reject a message. No delivery, no extraction.

        Raises:
            NotFoundError: If the message does not exist.
        """
        message, changed = await self._ledger.set_approval(message_id, ApprovalState.REJECTED)
        approval_decisions_total.labels(decision="reject", changed=str(changed).lower()).inc()
        logger.info("approval.rejected", message_id=str(message_id), changed=changed)
        return ApprovalResult(message=message, changed=changed)

    async def edit(self, message_id: uuid.UUID, new_content: str) -> Message:
        """Replace the text of an undelivered AI draft.

        Editing does not change approval state.

        Raises:
            ValidationError: Blank content, or the message is not an AI draft.
            AlreadyDeliveredError: The message was already sent to Chatra.
            NotFoundError: The message does not exist.
        """
        content = new_content.strip()
        if not content:
            raise ValidationError("Message content must not be empty")

        updated = await self._ledger.update_content(message_id, content)
        if updated is not None:
            logger.info("approval.edited", message_id=str(message_id))
            return updated

        existing = await self._ledger.get_message(message_id)
        if existing is None:
            raise NotFoundError(f"Message {message_id} not found")
        if existing.sender_kind is not SenderKind.LLM:
            raise ValidationError("Only AI-drafted messages can be edited")
        raise AlreadyDeliveredError("Message was already delivered and can no longer be edited")

    async def send_agent_message(
        self,
        conversation_id: uuid.UUID,
        content: str,
        agent_name: str | None = None,
    ) -> AgentMessageResult:
        """Record an agent-authored message, then try to deliver it.

        The ledger write never depends on delivery succeeding.

        Raises:
            ValidationError: Blank content.
            NotFoundError: Unknown conversation.
        """
        text = content.strip()
        if not text:
            raise ValidationError("Message content must not be empty")

        conversation = await self._ledger.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")

        sender_name = agent_name or "Agent"
        message = await self._ledger.create_message(
            MessageCreate(
                conversation_id=conversation.id,
                content=text,
                sender_kind=SenderKind.AGENT,
                sender_name=sender_name,
                approval=ApprovalState.APPROVED,
            )
        )
        await self._ledger.touch_conversation(conversation.id, message.created_at)

        delivered = await self._deliver(conversation, message, sender_name)
        warning = None
        if not delivered:
            warning = DELIVERY_WARNING_AGENT
            logger.warning(
                "agent_message.delivery_failed",
                conversation_id=str(conversation.id),
                message_id=str(message.id),
            )

        refreshed = await self._ledger.get_message(message.id)
        return AgentMessageResult(
            message=refreshed or message,
            delivered=delivered,
            warning=warning,
        )
