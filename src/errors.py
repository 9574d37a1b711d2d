"""Error taxonomy for the webhook gateway."""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all gateway errors."""


class ConfigurationError(GatewayError):
    """Raised when required configuration is missing or invalid."""


class AuthenticationFailure(GatewayError):
    """Raised when an inbound request fails signature verification."""


class MalformedPayload(GatewayError):
    """Raised when a verified body cannot be parsed into an event."""


class RawBodyReadError(GatewayError):
    """Raised when the inbound request body cannot be read in full."""


class TokenRefreshError(GatewayError):
    """Raised when the token endpoint rejects a refresh or cannot be reached.

    ``status_code`` is ``None`` for transport-level failures.
    """

    def __init__(self, status_code: int | None, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Token refresh failed (status={status_code}): {body[:200]}")


class DispatchFailure(GatewayError):
    """Raised when an outbound reply could not be delivered."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Dispatch failed (status={status_code}): {detail}")


class ReplyGenerationError(GatewayError):
    """Raised when the reply collaborator fails to produce text."""
