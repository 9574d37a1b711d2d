"""Shared Pydantic data models for the Avito webhook gateway."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, method: str) -> HttpMethod:
        try:
            return cls(method.upper())
        except ValueError:
            return cls.OTHER


class MessageDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"
    UNKNOWN = "unknown"


class AuditEventType(str, Enum):
    WEBHOOK_RECEIVED = "webhook_received"
    SIGNATURE_FAILURE = "signature_failure"
    PAYLOAD_REJECTED = "payload_rejected"
    REPLY_DISPATCHED = "reply_dispatched"
    DISPATCH_FAILURE = "dispatch_failure"
    TOKEN_REFRESH = "token_refresh"
    CONFIG_ERROR = "config_error"


class RiskLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# --- Inbound request ---


class InboundRequest(BaseModel):
    """A captured webhook request. Header names are stored lowercased."""

    model_config = ConfigDict(frozen=True)

    method: HttpMethod
    headers: dict[str, str]
    raw_body: bytes

    @classmethod
    def capture(
        cls, method: str, headers: Mapping[str, str], raw_body: bytes,
    ) -> InboundRequest:
        return cls(
            method=HttpMethod.parse(method),
            headers={k.lower(): v for k, v in headers.items()},
            raw_body=raw_body,
        )

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


# --- Events ---


class PingEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["ping"] = "ping"


class MessageEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["message"] = "message"
    conversation_id: str = Field(min_length=1)
    direction: MessageDirection = MessageDirection.UNKNOWN
    text: str | None = None
    message_id: str | None = None
    author_id: str | None = None


class OtherEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["other"] = "other"
    raw_kind: str = ""
    unroutable: bool = False


Event = PingEvent | MessageEvent | OtherEvent


# --- Outbound dispatch ---


class DispatchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    http_status: int
    error_detail: str | None = None
    attempts: int = Field(default=1, ge=0)
    refreshed: bool = False


# --- Audit Models ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    source_ip: str | None = None
    action: str
    result: str  # "success" | "failure" | "skipped"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
