"""Reply text collaborators used by the webhook controller."""

from __future__ import annotations

import json
import logging
from typing import Protocol

import httpx

from src.config import GatewayConfig
from src.errors import ReplyGenerationError
from src.models import MessageEvent

logger = logging.getLogger(__name__)


class ReplyGenerator(Protocol):
    async def generate(self, event: MessageEvent) -> str: ...


class StaticReplyGenerator:
    """Answers every message with the same text."""

    def __init__(self, text: str) -> None:
        self._text = text

    async def generate(self, event: MessageEvent) -> str:
        return self._text


class UpstreamReplyGenerator:
    """Asks an OpenAI-compatible chat completion endpoint for the reply."""

    def __init__(self, upstream_url: str, upstream_token: str, timeout: float = 15.0) -> None:
        self._upstream_url = upstream_url
        self._upstream_token = upstream_token
        self._timeout = timeout

    def to_request(self, event: MessageEvent) -> dict[str, object]:
        return {
            "model": "default",
            "messages": [{"role": "user", "content": event.text or ""}],
            "metadata": {"source": "avito", "chat_id": event.conversation_id},
        }

    async def generate(self, event: MessageEvent) -> str:
        url = f"{self._upstream_url.rstrip('/')}/v1/chat/completions"
        headers = {"Content-Type": "application/json"}
        if self._upstream_token:
            headers["Authorization"] = f"Bearer {self._upstream_token}"

        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    url, json=self.to_request(event), headers=headers, timeout=self._timeout,
                )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise ReplyGenerationError("Reply upstream unavailable") from exc

        if resp.status_code != 200:
            raise ReplyGenerationError(f"Reply upstream returned {resp.status_code}")
        try:
            text = resp.json()["choices"][0]["message"]["content"]
        except (json.JSONDecodeError, IndexError, KeyError, TypeError) as exc:
            raise ReplyGenerationError("Reply upstream returned an unexpected body") from exc
        if not isinstance(text, str) or not text.strip():
            raise ReplyGenerationError("Reply upstream returned empty text")
        return text


def reply_generator_from_config(config: GatewayConfig) -> ReplyGenerator | None:
    """Pick the upstream generator when configured, else static text, else none."""
    if config.reply_upstream_url:
        return UpstreamReplyGenerator(
            config.reply_upstream_url,
            config.reply_upstream_token,
            timeout=config.reply_timeout_seconds,
        )
    if config.reply_text:
        return StaticReplyGenerator(config.reply_text)
    logger.info("No reply generator configured; incoming messages will not be answered")
    return None
