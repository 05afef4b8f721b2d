"""Reply generator -- retrieval, prompt composition and drafting.

Orchestrates KnowledgeRetriever -> compose -> LLMService to produce a
candidate reply, and persists it as a pending ``llm`` message.

Retrieval failures degrade to an empty context. Generation failures
propagate as GenerationError; the ingestion pipeline is the recovery
boundary, not this module.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence

import structlog

from src.app.conversations.repository import ConversationLedger
from src.app.conversations.schemas import (
    ApprovalState,
    GeneratedReply,
    Message,
    MessageCreate,
    SenderKind,
)
from src.app.services.llm import LLMService, sanitize_text
from src.knowledge.rag.prompts import compose, format_history
from src.knowledge.rag.retriever import KnowledgeRetriever

logger = structlog.get_logger(__name__)

CONFIDENCE_WITH_CONTEXT = 0.8
CONFIDENCE_WITHOUT_CONTEXT = 0.6


class ReplyGenerator:
    """Drafts grounded replies to customer messages.

    Args:
        retriever: Knowledge retriever (never raises).
        llm_service: Generation client.
        ledger: Where drafts are persisted.
        sender_name: Display name stored on drafts.
    """

    def __init__(
        self,
        retriever: KnowledgeRetriever,
        llm_service: LLMService,
        ledger: ConversationLedger,
        sender_name: str = "AI Assistant",
    ) -> None:
        self._retriever = retriever
        self._llm = llm_service
        self._ledger = ledger
        self._sender_name = sender_name

    async def generate(
        self,
        user_message: str,
        history: Sequence[str],
        use_retrieval: bool = True,
    ) -> GeneratedReply:
        """Produce a candidate reply.

        Args:
            user_message: Customer text being answered.
            history: Prior turns, oldest first, speaker-tagged.
            use_retrieval: Whether to ground the prompt in the knowledge base.

        Returns:
            GeneratedReply with content, placeholder confidence and context.

        Raises:
            GenerationError: If the language model call fails.
        """
        context = []
        if use_retrieval:
            context = await self._retriever.retrieve(user_message)

        prompt = compose(
            sanitize_text(user_message),
            [sanitize_text(turn) for turn in history],
            context,
        )
        content = await self._llm.generate(prompt)

        confidence = CONFIDENCE_WITH_CONTEXT if context else CONFIDENCE_WITHOUT_CONTEXT
        logger.info(
            "reply.generated",
            context_count=len(context),
            confidence=confidence,
            content_length=len(content),
        )
        return GeneratedReply(
            content=content,
            confidence=confidence,
            retrieved_context=context,
        )

    async def draft_reply(
        self,
        conversation_id: uuid.UUID,
        user_message: str,
        history: Sequence[Message],
    ) -> Message:
        """Generate a reply and store it as a pending ``llm`` message.

        Raises:
            GenerationError: If the language model call fails.
        """
        reply = await self.generate(user_message, format_history(history))
        draft = await self._ledger.create_message(
            MessageCreate(
                conversation_id=conversation_id,
                content=reply.content,
                sender_kind=SenderKind.LLM,
                sender_name=self._sender_name,
                retrieved_context=reply.retrieved_context or None,
                confidence=reply.confidence,
                approval=ApprovalState.PENDING,
            )
        )
        logger.info(
            "reply.drafted",
            conversation_id=str(conversation_id),
            message_id=str(draft.id),
        )
        return draft
