"""Error taxonomy shared by the ingestion, retrieval and approval paths.

Infrastructure-adjacent failures (EmbeddingError, DeliveryFailure) are
recovered close to their cause. ValidationError, NotFoundError and
AuthorizationError stop the operation and surface at the API boundary.
"""

from __future__ import annotations


class SupportHubError(Exception):
    """Base class for all domain errors."""


class ValidationError(SupportHubError):
    """Malformed or unparseable input (HTTP 400)."""


class AlreadyDeliveredError(ValidationError):
    """The message was already delivered to the provider and can no longer change (HTTP 409)."""


class EmbeddingError(SupportHubError):
    """The embedding provider call failed or returned an unusable vector."""


class GenerationError(SupportHubError):
    """The language-model call failed or returned no text."""


class DeliveryFailure(SupportHubError):
    """Outbound delivery to the chat provider failed.

    Never raised past ChatraClient.send, which reports it as False.
    """

    def __init__(
        self,
        message: str,
        *,
        auth_scheme: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.auth_scheme = auth_scheme
        self.status_code = status_code


class NotFoundError(SupportHubError):
    """A referenced conversation, message, entry or account does not exist (HTTP 404)."""


class AuthorizationError(SupportHubError):
    """The caller lacks a valid session or the required role (HTTP 401/403)."""

    def __init__(self, message: str = "Not authenticated", *, forbidden: bool = False) -> None:
        super().__init__(message)
        self.forbidden = forbidden
