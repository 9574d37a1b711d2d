"""FastAPI application wiring for the Avito webhook gateway."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from src.audit.logger import AuditLogger
from src.avito.dispatcher import OutboundDispatcher
from src.avito.token_manager import TokenManager
from src.config import GatewayConfig
from src.webhook.body import read_raw_body
from src.webhook.controller import WebhookController
from src.webhook.replies import ReplyGenerator, reply_generator_from_config
from src.webhook.signature import SignatureVerifier

_ALL_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    config = GatewayConfig.from_env()
    audit_logger = AuditLogger.from_config(config) if config.audit_log_path else None
    return create_app(config, audit_logger=audit_logger)


def create_app(
    config: GatewayConfig,
    token_manager: TokenManager | None = None,
    reply_generator: ReplyGenerator | None = None,
    audit_logger: AuditLogger | None = None,
) -> FastAPI:
    """Compose the gateway. The TokenManager is shared by every request of this app."""
    app = FastAPI(docs_url=None, redoc_url=None)

    tokens = token_manager or TokenManager.from_config(config, audit_logger=audit_logger)
    controller = WebhookController(
        verifier=SignatureVerifier(lambda: config.webhook_secret, config.signature_header),
        dispatcher=OutboundDispatcher.from_config(config, tokens),
        reply_generator=reply_generator or reply_generator_from_config(config),
        audit_logger=audit_logger,
        allow_unsigned=config.allow_unsigned_webhooks,
        reply_timeout=config.reply_timeout_seconds,
    )
    app.state.config = config
    app.state.token_manager = tokens
    app.state.controller = controller

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/diag")
    async def diag(request: Request) -> dict[str, Any]:
        return {
            "ok": True,
            "ts": datetime.now(UTC).isoformat(),
            "method": request.method,
            "env": config.presence(),
        }

    @app.api_route(config.webhook_path, methods=_ALL_METHODS)
    async def webhook(request: Request) -> Response:
        outcome = await controller.handle(
            request.method,
            request.headers,
            lambda: read_raw_body(request, max_bytes=config.max_body_bytes),
            source_ip=request.client.host if request.client else None,
        )
        return JSONResponse(outcome.body, status_code=outcome.status_code)

    return app
