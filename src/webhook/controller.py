"""Webhook request handling: method check, raw body, signature, classify, reply.

Stages run in a fixed order and the first terminal stage wins:

1. Method check (POST only; the body is never read otherwise)
2. Raw body capture
3. Signature verification (before any parsing)
4. Classification
5. Ping acknowledgment
6. Skip outgoing/unknown-direction or empty messages
7. Generate and dispatch a reply to incoming messages
8. Acknowledge every other event kind

Downstream failures in stage 7 are reported in the body of a 200 response:
the platform redelivers webhooks on any non-2xx status.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from src.audit.logger import AuditLogger
from src.avito.dispatcher import OutboundDispatcher
from src.errors import MalformedPayload, RawBodyReadError, ReplyGenerationError
from src.models import (
    AuditEventType,
    DispatchResult,
    HttpMethod,
    InboundRequest,
    MessageDirection,
    MessageEvent,
    OtherEvent,
    PingEvent,
    RiskLevel,
)
from src.webhook.events import classify
from src.webhook.replies import ReplyGenerator
from src.webhook.signature import SignatureVerifier

logger = logging.getLogger(__name__)

BodyReader = Callable[[], Awaitable[bytes]]


@dataclass
class WebhookOutcome:
    """Response the HTTP layer renders as JSON."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


class WebhookController:
    def __init__(
        self,
        verifier: SignatureVerifier,
        dispatcher: OutboundDispatcher,
        reply_generator: ReplyGenerator | None = None,
        audit_logger: AuditLogger | None = None,
        allow_unsigned: bool = False,
        reply_timeout: float = 15.0,
    ) -> None:
        self._verifier = verifier
        self._dispatcher = dispatcher
        self._replies = reply_generator
        self._audit = audit_logger
        self._allow_unsigned = allow_unsigned
        self._reply_timeout = reply_timeout

    async def handle(
        self,
        method: str,
        headers: Mapping[str, str],
        read_body: BodyReader,
        source_ip: str | None = None,
    ) -> WebhookOutcome:
        if HttpMethod.parse(method) is not HttpMethod.POST:
            return WebhookOutcome(405, {"ok": False, "error": "Method Not Allowed"})

        try:
            raw_body = await read_body()
        except RawBodyReadError as exc:
            logger.error("Failed to read webhook body: %s", exc)
            return WebhookOutcome(500, {"ok": False, "error": "internal"})

        request = InboundRequest.capture(method, headers, raw_body)

        if not self._verifier.is_configured():
            if not self._allow_unsigned:
                logger.error("WEBHOOK_SECRET is not configured; rejecting webhook")
                self._record(
                    AuditEventType.CONFIG_ERROR, "verify", "failure", source_ip,
                    RiskLevel.CRITICAL, {"reason": "missing_secret"},
                )
                return WebhookOutcome(500, {"ok": False, "error": "Server misconfigured"})
            logger.warning("Accepting unsigned webhook: ALLOW_UNSIGNED_WEBHOOKS is enabled")
        elif not self._verifier.verify(request.headers, request.raw_body):
            reason = (
                "missing_header" if request.header(self._verifier.header_name) is None
                else "mismatch"
            )
            self._record(
                AuditEventType.SIGNATURE_FAILURE, "verify", "failure", source_ip,
                RiskLevel.HIGH, {"reason": reason},
            )
            return WebhookOutcome(401, {"ok": False, "error": "Unauthorized"})

        try:
            event = classify(request.raw_body)
        except MalformedPayload as exc:
            self._record(
                AuditEventType.PAYLOAD_REJECTED, "classify", "failure", source_ip,
                RiskLevel.LOW, {"reason": str(exc)},
            )
            return WebhookOutcome(400, {"ok": False, "error": "Invalid JSON"})

        self._record(
            AuditEventType.WEBHOOK_RECEIVED, event.kind, "success", source_ip,
            RiskLevel.INFO, _describe(event),
        )

        if isinstance(event, PingEvent):
            return WebhookOutcome(200, {"ok": True, "pong": int(time.time() * 1000)})

        if isinstance(event, OtherEvent):
            body: dict[str, Any] = {"ok": True, "received": event.raw_kind}
            if event.unroutable:
                body["skipped"] = "unroutable"
            return WebhookOutcome(200, body)

        skip = _skip_reason(event)
        if skip:
            return WebhookOutcome(200, {"ok": True, "received": "message", "skipped": skip})

        return await self._reply(event, source_ip)

    async def _reply(self, event: MessageEvent, source_ip: str | None) -> WebhookOutcome:
        body: dict[str, Any] = {"ok": True, "received": "message"}
        if self._replies is None:
            body["skipped"] = "no_reply_configured"
            return WebhookOutcome(200, body)

        try:
            text = await asyncio.wait_for(
                self._replies.generate(event), timeout=self._reply_timeout,
            )
        except (ReplyGenerationError, TimeoutError) as exc:
            detail = str(exc) or "Reply generation timed out"
            logger.warning("Reply generation failed for chat %s: %s", event.conversation_id, detail)
            return self._generation_failed(event, source_ip, detail, body)
        except Exception as exc:  # third-party collaborators may raise anything
            logger.exception("Reply generator crashed for chat %s", event.conversation_id)
            return self._generation_failed(event, source_ip, type(exc).__name__, body)

        try:
            result = await self._dispatcher.send(event.conversation_id, text)
        except Exception as exc:  # transport layers may raise outside httpx.HTTPError
            logger.exception("Dispatch crashed for chat %r", event.conversation_id)
            result = DispatchResult(success=False, http_status=0, error_detail=type(exc).__name__)

        if result.success:
            self._record(
                AuditEventType.REPLY_DISPATCHED, "dispatch", "success", source_ip,
                RiskLevel.INFO,
                {"chat_id": event.conversation_id, "attempts": result.attempts,
                 "refreshed": result.refreshed},
            )
            body["replied"] = True
        else:
            self._record(
                AuditEventType.DISPATCH_FAILURE, "dispatch", "failure", source_ip,
                RiskLevel.MEDIUM,
                {"chat_id": event.conversation_id, "http_status": result.http_status,
                 "attempts": result.attempts},
            )
            body.update(replied=False, error=result.error_detail or f"HTTP {result.http_status}")
        return WebhookOutcome(200, body)

    def _generation_failed(
        self,
        event: MessageEvent,
        source_ip: str | None,
        detail: str,
        body: dict[str, Any],
    ) -> WebhookOutcome:
        self._record(
            AuditEventType.DISPATCH_FAILURE, "generate", "failure", source_ip,
            RiskLevel.MEDIUM, {"chat_id": event.conversation_id, "error": detail},
        )
        body.update(replied=False, error=detail)
        return WebhookOutcome(200, body)

    def _record(
        self,
        event_type: AuditEventType,
        action: str,
        result: str,
        source_ip: str | None,
        risk_level: RiskLevel,
        details: dict[str, object],
    ) -> None:
        if self._audit:
            self._audit.record(
                event_type, action=action, result=result, risk_level=risk_level,
                source_ip=source_ip, details=details,
            )


def _skip_reason(event: MessageEvent) -> str | None:
    # Unknown direction is treated like outgoing so echoed messages never loop.
    if event.direction is not MessageDirection.INCOMING:
        return event.direction.value
    if not event.text or not event.text.strip():
        return "empty_text"
    return None


def _describe(event: PingEvent | MessageEvent | OtherEvent) -> dict[str, object]:
    if isinstance(event, MessageEvent):
        return {
            "chat_id": event.conversation_id,
            "direction": event.direction.value,
            "message_id": event.message_id,
        }
    if isinstance(event, OtherEvent):
        return {"raw_kind": event.raw_kind, "unroutable": event.unroutable}
    return {}
