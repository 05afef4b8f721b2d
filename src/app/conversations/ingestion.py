"""Webhook ingestion pipeline.

Takes a normalized provider event and records it in the ledger:

1. Resolve the account (explicit id, then signature match, then first
   active account) and enforce the signature policy.
2. Upsert the conversation (resolved conversations stay resolved).
3. Insert each message idempotently, in payload order.
4. Collect a draft request for every newly inserted, non-empty client message.
5. Set the conversation's last_message_at to the last payload message.

Drafting runs separately via ``run_drafts`` so the HTTP boundary can run it
inline or after the response. Draft failures are isolated per message.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

import structlog

from src.app.config import SignatureMode
from src.app.conversations.generator import ReplyGenerator
from src.app.conversations.payloads import (
    ChatResolved,
    ChatStarted,
    MessagesReceived,
)
from src.app.conversations.repository import AccountRepository, ConversationLedger
from src.app.conversations.schemas import (
    ApprovalState,
    ChatAccount,
    Conversation,
    ConversationStatus,
    Message,
    MessageCreate,
    SenderKind,
)
from src.app.conversations.signature import verify_signature
from src.app.core.errors import AuthorizationError, GenerationError, NotFoundError
from src.app.core.monitoring import messages_ingested_total, reply_drafts_total

logger = structlog.get_logger(__name__)

ProviderEventType = ChatStarted | MessagesReceived | ChatResolved


@dataclass
class DraftRequest:
    """A new customer message that should receive an AI draft."""

    conversation_id: uuid.UUID
    message_id: uuid.UUID
    text: str
    history: list[Message] = field(default_factory=list)


@dataclass
class IngestionResult:
    """What one webhook delivery changed in the ledger."""

    conversation: Conversation
    event_kind: str
    inserted: int = 0
    duplicates: int = 0
    drafts: list[DraftRequest] = field(default_factory=list)


@dataclass
class DraftRunResult:
    drafted: int = 0
    failed: int = 0


class WebhookIngestionPipeline:
    """Records provider events in the ledger and drafts replies.

    Args:
        ledger: Conversation ledger.
        accounts: Account lookups for webhook routing.
        generator: Reply generator used by ``run_drafts``.
        history_limit: Prior messages passed as history for each draft.
    """

    def __init__(
        self,
        ledger: ConversationLedger,
        accounts: AccountRepository,
        generator: ReplyGenerator,
        history_limit: int = 10,
    ) -> None:
        self._ledger = ledger
        self._accounts = accounts
        self._generator = generator
        self._history_limit = history_limit

    # ── Account Resolution ───────────────────────────────────────────────

    async def resolve_account(
        self,
        event: ProviderEventType,
        body: bytes,
        signature: str | None,
        mode: SignatureMode = SignatureMode.strict,
        account_hint: str | None = None,
    ) -> ChatAccount:
        """Pick the account a webhook belongs to and apply the signature policy.

        Resolution order: explicit account id (payload, then ``account_hint``),
        then the active account whose webhook secret verifies the signature,
        then the first active account (logged as ambiguous).

        Raises:
            NotFoundError: No active account, or the explicit id is unknown.
            AuthorizationError: Signature missing/invalid in strict mode.
        """
        accounts = await self._accounts.list_active()
        if not accounts:
            raise NotFoundError("No active accounts configured")

        explicit_id = event.account_external_id or account_hint
        account: ChatAccount | None = None
        verified = False

        if explicit_id:
            account = next((a for a in accounts if a.external_id == explicit_id), None)
            if account is None:
                raise NotFoundError(f"Unknown account: {explicit_id}")
            verified = verify_signature(body, signature, account.webhook_secret)
        elif signature:
            account = next(
                (a for a in accounts if verify_signature(body, signature, a.webhook_secret)),
                None,
            )
            verified = account is not None

        if account is None:
            account = accounts[0]
            if len(accounts) > 1:
                logger.warning(
                    "webhook.account_ambiguous",
                    chosen_account=account.external_id,
                    active_accounts=len(accounts),
                )

        if not verified:
            if mode is SignatureMode.strict:
                logger.warning(
                    "webhook.signature_rejected",
                    account=account.external_id,
                    signature_present=bool(signature),
                )
                raise AuthorizationError("Invalid webhook signature")
            logger.warning(
                "webhook.signature_unverified",
                account=account.external_id,
                signature_present=bool(signature),
            )

        return account

    # ── Ingestion ────────────────────────────────────────────────────────

    async def ingest(self, event: ProviderEventType, account: ChatAccount) -> IngestionResult:
        """Record one normalized event.

        Args:
            event: Normalized provider event.
            account: Resolved owning account.

        Returns:
            IngestionResult with insert counts and pending draft requests.
        """
        status = (
            ConversationStatus.RESOLVED
            if isinstance(event, ChatResolved)
            else ConversationStatus.ACTIVE
        )
        conversation = await self._ledger.upsert_conversation(
            account.id,
            event.conversation_external_id,
            client_name=event.client.name,
            client_email=event.client.email,
            status=status,
        )
        result = IngestionResult(conversation=conversation, event_kind=event.kind)
        log = logger.bind(
            conversation_id=str(conversation.id),
            external_conversation=event.conversation_external_id,
            event_kind=event.kind,
        )

        messages = getattr(event, "messages", [])
        wants_drafts = isinstance(event, MessagesReceived)

        for provider_message in messages:
            stored = await self._ledger.insert_message_if_absent(
                MessageCreate(
                    conversation_id=conversation.id,
                    external_id=provider_message.external_id,
                    content=provider_message.text,
                    sender_kind=provider_message.sender_kind,
                    sender_name=provider_message.sender_name,
                    approval=ApprovalState.APPROVED,
                    created_at=provider_message.sent_at,
                )
            )
            if stored is None:
                result.duplicates += 1
                messages_ingested_total.labels(
                    sender_kind=provider_message.sender_kind.value, outcome="duplicate"
                ).inc()
                log.debug("webhook.message_duplicate", message_id=provider_message.external_id)
                continue

            result.inserted += 1
            messages_ingested_total.labels(
                sender_kind=provider_message.sender_kind.value, outcome="inserted"
            ).inc()

            if (
                wants_drafts
                and stored.sender_kind is SenderKind.CLIENT
                and stored.content.strip()
            ):
                history = await self._ledger.recent_messages(
                    conversation.id,
                    self._history_limit,
                    before=stored.created_at,
                    exclude_id=stored.id,
                )
                result.drafts.append(
                    DraftRequest(
                        conversation_id=conversation.id,
                        message_id=stored.id,
                        text=stored.content,
                        history=history,
                    )
                )

        if messages:
            await self._ledger.touch_conversation(conversation.id, messages[-1].sent_at)

        log.info(
            "webhook.ingested",
            inserted=result.inserted,
            duplicates=result.duplicates,
            drafts_pending=len(result.drafts),
        )
        return result

    async def run_drafts(self, drafts: list[DraftRequest]) -> DraftRunResult:
        """Draft a reply for each request; one failure never stops the rest."""
        outcome = DraftRunResult()
        for draft in drafts:
            log = logger.bind(
                conversation_id=str(draft.conversation_id),
                message_id=str(draft.message_id),
            )
            try:
                await self._generator.draft_reply(
                    draft.conversation_id, draft.text, draft.history
                )
            except GenerationError as exc:
                outcome.failed += 1
                reply_drafts_total.labels(outcome="generation_failed").inc()
                log.warning("webhook.draft_failed", error=str(exc))
                continue
            except Exception:
                outcome.failed += 1
                reply_drafts_total.labels(outcome="error").inc()
                log.exception("webhook.draft_error")
                continue
            outcome.drafted += 1
            reply_drafts_total.labels(outcome="drafted").inc()
        return outcome
