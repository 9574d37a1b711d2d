"""Shared test fixtures for the Avito webhook gateway."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from src.audit.logger import AuditLogger
from src.config import GatewayConfig

WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


# --- Factory functions for test data ---


def make_config(**kwargs: Any) -> GatewayConfig:
    """Factory for GatewayConfig with a complete, valid set of credentials."""
    defaults: dict[str, Any] = {
        "webhook_secret": WEBHOOK_SECRET,
        "client_id": "client-id",
        "client_secret": "client-secret",
        "account_id": "42",
        "refresh_token": "refresh-1",
        "api_base": "https://api.avito.test",
    }
    defaults.update(kwargs)
    return GatewayConfig(**defaults)


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def make_message_body(
    text: str | None = "hello",
    direction: str | None = "in",
    chat_id: str | int | None = "chat-1",
) -> bytes:
    """Serialized v3-style message webhook."""
    value: dict[str, Any] = {"id": "msg-1", "author_id": 1001, "type": "text"}
    if chat_id is not None:
        value["chat_id"] = chat_id
    if direction is not None:
        value["direction"] = direction
    if text is not None:
        value["content"] = {"text": text}
    return json.dumps({"event": "message", "payload": {"type": "message", "value": value}}).encode()


def make_token_response(
    access_token: str = "access-1",
    refresh_token: str | None = None,
    expires_in: int = 86400,
    status_code: int = 200,
) -> httpx.Response:
    body: dict[str, Any] = {"access_token": access_token, "expires_in": expires_in}
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    return httpx.Response(status_code, json=body)


def install_mock_client(mock_client_cls: MagicMock) -> AsyncMock:
    """Wire a patched httpx.AsyncClient class to return one AsyncMock client."""
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client_cls.return_value = mock_client
    return mock_client
