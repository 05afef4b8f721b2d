"""Knowledge import from recorded conversations and transcript exports.

Two flows feed the knowledge base outside the approval path:

    ConversationLedger.list_client_agent_pairs() -> Q/A pair
    -> KnowledgeService.add_entry(source=conversation_import)

    transcript JSON -> consecutive client/agent turns -> Q/A pair
    -> KnowledgeService.add_entry(source=bulk_import)

Pairs already present (same content and source id) are skipped. Embedding
calls are retried with exponential backoff; a pair that still fails is
counted and the run continues.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.app.core.errors import EmbeddingError, ValidationError
from src.knowledge.models import ImportResult, KnowledgeSource, build_qa_pair
from src.knowledge.service import KnowledgeService

if TYPE_CHECKING:
    from src.app.conversations.repository import ConversationLedger

logger = structlog.get_logger(__name__)

CLIENT_SENDERS = frozenset({"client", "customer", "visitor", "user"})
AGENT_SENDERS = frozenset({"agent", "operator", "support"})


# ── Transcript Parsing ────────────────────────────────────────────────────


def load_transcripts(path: str | Path) -> list[dict[str, Any]]:
    """Read a transcript export.

    Accepts either a JSON list of conversations or an object with a
    ``conversations`` list. Each conversation has an ``id``, a ``messages``
    list of ``{sender, content, timestamp}`` and optional ``metadata``.

    Raises:
        ValidationError: If the file is not JSON or has neither shape.
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Cannot read transcripts from {path}: {exc}") from exc

    if isinstance(data, dict):
        data = data.get("conversations")
    if not isinstance(data, list):
        raise ValidationError("Transcript export must be a list of conversations")
    return [c for c in data if isinstance(c, dict)]


def transcript_pairs(transcript: dict[str, Any]) -> list[tuple[dict, dict]]:
    """Consecutive (client, agent) turns with non-empty text."""
    messages = [m for m in transcript.get("messages") or [] if isinstance(m, dict)]
    pairs = []
    for question, answer in zip(messages, messages[1:]):
        q_sender = str(question.get("sender", "")).lower()
        a_sender = str(answer.get("sender", "")).lower()
        if q_sender not in CLIENT_SENDERS or a_sender not in AGENT_SENDERS:
            continue
        if not str(question.get("content") or "").strip():
            continue
        if not str(answer.get("content") or "").strip():
            continue
        pairs.append((question, answer))
    return pairs


# ── Importer ──────────────────────────────────────────────────────────────


class ConversationKnowledgeImporter:
    """Turns human-answered customer questions into knowledge entries.

    Args:
        ledger: Source of recorded client -> agent pairs.
        knowledge: Service that embeds and stores entries.
        max_attempts: Embedding attempts per pair before giving up.
        wait: tenacity wait strategy between attempts.
    """

    def __init__(
        self,
        ledger: ConversationLedger,
        knowledge: KnowledgeService,
        max_attempts: int = 3,
        wait: wait_base | None = None,
    ) -> None:
        self._ledger = ledger
        self._knowledge = knowledge
        self._max_attempts = max_attempts
        self._wait = wait or wait_exponential(multiplier=1, min=1, max=10)

    async def _add_with_retry(
        self,
        content: str,
        source: KnowledgeSource,
        source_id: str,
        metadata: dict[str, Any],
    ) -> bool:
        """Store one pair. Returns False when it already existed."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(EmbeddingError),
            stop=stop_after_attempt(self._max_attempts),
            wait=self._wait,
            reraise=True,
        ):
            with attempt:
                entry = await self._knowledge.add_entry(
                    content, source=source, source_id=source_id, metadata=metadata
                )
        return entry is not None

    async def _record(
        self,
        result: ImportResult,
        content: str,
        source: KnowledgeSource,
        source_id: str,
        metadata: dict[str, Any],
    ) -> None:
        try:
            added = await self._add_with_retry(content, source, source_id, metadata)
        except EmbeddingError as exc:
            result.failed += 1
            logger.warning("knowledge_import.pair_failed", source_id=source_id, error=str(exc))
            return
        if added:
            result.imported += 1
        else:
            result.skipped += 1

    async def import_conversations(self) -> ImportResult:
        """Import every recorded client -> agent pair from the ledger."""
        result = ImportResult()
        pairs = await self._ledger.list_client_agent_pairs()
        for conversation, question, answer in pairs:
            await self._record(
                result,
                build_qa_pair(question.content, answer.content),
                KnowledgeSource.CONVERSATION_IMPORT,
                str(conversation.id),
                {
                    "conversation_id": str(conversation.id),
                    "client_message_id": str(question.id),
                    "agent_message_id": str(answer.id),
                    "client_name": conversation.client_name,
                    "agent_name": answer.sender_name,
                },
            )
        logger.info(
            "knowledge_import.conversations_done",
            pairs=len(pairs),
            imported=result.imported,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result

    async def import_transcripts(self, transcripts: list[dict[str, Any]]) -> ImportResult:
        """Import Q/A pairs from exported transcripts (see ``load_transcripts``)."""
        result = ImportResult()
        for index, transcript in enumerate(transcripts):
            transcript_id = str(transcript.get("id") or f"transcript-{index}")
            extra = transcript.get("metadata") if isinstance(transcript.get("metadata"), dict) else {}
            for question, answer in transcript_pairs(transcript):
                await self._record(
                    result,
                    build_qa_pair(
                        str(question["content"]).strip(), str(answer["content"]).strip()
                    ),
                    KnowledgeSource.BULK_IMPORT,
                    transcript_id,
                    {
                        **extra,
                        "transcript_id": transcript_id,
                        "question_timestamp": question.get("timestamp"),
                        "answer_timestamp": answer.get("timestamp"),
                    },
                )
        logger.info(
            "knowledge_import.transcripts_done",
            transcripts=len(transcripts),
            imported=result.imported,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result
