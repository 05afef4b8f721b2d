"""Async HTTP client for the Chatra REST messages API.

Delivers approved replies and agent messages into the customer's chat.

Authentication is attempted in two tiers:
1. ``Chatra.Simple <api_key>:<api_secret>`` (REST API key pair)
2. On a 401, exactly one retry with HTTP Basic ``api_key:webhook_secret``

No other retry happens here: timeouts, connection errors and non-401
failures return False immediately. ``send`` never raises for provider-side
failures; callers turn a False into a user-visible warning.
"""

from __future__ import annotations

import base64

import httpx
import structlog

from src.app.conversations.schemas import ChatAccount
from src.app.core.errors import DeliveryFailure
from src.app.core.monitoring import deliveries_total

logger = structlog.get_logger(__name__)

MESSAGES_PATH = "/api/v1/messages"


def simple_auth_header(account: ChatAccount) -> str | None:
    """Primary ``Chatra.Simple`` header, or None when no API secret is set."""
    if not account.api_secret:
        return None
    return f"Chatra.Simple {account.api_key}:{account.api_secret}"


def basic_auth_header(account: ChatAccount) -> str:
    """Fallback Basic header built from the API key and webhook secret."""
    token = base64.b64encode(
        f"{account.api_key}:{account.webhook_secret}".encode("utf-8")
    ).decode("ascii")
    return f"Basic {token}"


class ChatraClient:
    """Outbound delivery adapter for Chatra.

    Args:
        base_url: Chatra API origin (default https://app.chatra.io).
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str = "https://app.chatra.io",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}{MESSAGES_PATH}"
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client for one delivery."""
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def send(
        self,
        account: ChatAccount,
        external_conversation_id: str,
        text: str,
        sender_name: str | None = None,
    ) -> bool:
        """Post a message into a Chatra conversation.

        Args:
            account: Account whose credentials authorize the call.
            external_conversation_id: Chatra conversation id.
            text: Message text as the customer will see it.
            sender_name: Display name of the sending agent.

        Returns:
            True if Chatra accepted the message, False otherwise.
        """
        body: dict[str, str] = {
            "conversation_id": external_conversation_id,
            "text": text,
            "sender_type": "agent",
        }
        if sender_name:
            body["sender_name"] = sender_name

        log = logger.bind(
            account_id=str(account.id),
            conversation=external_conversation_id,
        )

        attempts: list[tuple[str, str]] = []
        primary = simple_auth_header(account)
        if primary is not None:
            attempts.append(("simple", primary))
        attempts.append(("basic", basic_auth_header(account)))

        async with self._client() as client:
            try:
                for index, (scheme, header) in enumerate(attempts):
                    response = await self._post(client, scheme, header, body)
                    if response.is_success:
                        log.info(
                            "chatra.message_delivered",
                            auth_scheme=scheme,
                            status_code=response.status_code,
                        )
                        deliveries_total.labels(outcome="delivered", auth_scheme=scheme).inc()
                        return True

                    if response.status_code == 401 and index < len(attempts) - 1:
                        log.info("chatra.auth_fallback", from_scheme=scheme)
                        continue

                    log.warning(
                        "chatra.delivery_rejected",
                        auth_scheme=scheme,
                        status_code=response.status_code,
                        body=response.text[:500],
                    )
                    raise DeliveryFailure(
                        f"Chatra rejected the message (HTTP {response.status_code})",
                        auth_scheme=scheme,
                        status_code=response.status_code,
                    )
            except DeliveryFailure as exc:
                if exc.status_code is None:
                    log.warning("chatra.delivery_error", auth_scheme=exc.auth_scheme, error=str(exc))
                    outcome = "error"
                else:
                    outcome = "rejected"
                deliveries_total.labels(outcome=outcome, auth_scheme=exc.auth_scheme).inc()
                return False

        return False

    async def _post(
        self,
        client: httpx.AsyncClient,
        scheme: str,
        header: str,
        body: dict[str, str],
    ) -> httpx.Response:
        """Send one authorization attempt; transport errors become DeliveryFailure."""
        try:
            return await client.post(
                self._url,
                json=body,
                headers={
                    "Authorization": header,
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as exc:
            raise DeliveryFailure(
                f"{type(exc).__name__}: {exc}", auth_scheme=scheme
            ) from exc
