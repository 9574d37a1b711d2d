"""Gateway configuration loaded once from environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, ValidationError

from src.errors import ConfigurationError

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class GatewayConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    webhook_secret: str = ""
    allow_unsigned_webhooks: bool = False
    webhook_path: str = "/webhook"
    signature_header: str = "x-avito-signature"
    max_body_bytes: int = 1_048_576

    client_id: str = ""
    client_secret: str = ""
    account_id: str = ""
    refresh_token: str = ""
    access_token: str = ""
    api_base: str = "https://api.avito.ru"
    http_timeout_seconds: float = 10.0

    reply_text: str = ""
    reply_upstream_url: str = ""
    reply_upstream_token: str = ""
    reply_timeout_seconds: float = 15.0

    audit_log_path: str = ""
    audit_log_max_bytes: int = 10_485_760
    audit_log_backup_count: int = 5

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> GatewayConfig:
        """Build config from the environment. Raises ConfigurationError on bad values."""
        env = os.environ if environ is None else environ
        raw = {
            "webhook_secret": env.get("WEBHOOK_SECRET", ""),
            "allow_unsigned_webhooks": _parse_bool(
                "ALLOW_UNSIGNED_WEBHOOKS", env.get("ALLOW_UNSIGNED_WEBHOOKS", ""),
            ),
            "webhook_path": env.get("WEBHOOK_PATH", "/webhook"),
            "signature_header": env.get("WEBHOOK_SIGNATURE_HEADER", "x-avito-signature"),
            "max_body_bytes": env.get("MAX_BODY_BYTES", "1048576"),
            "client_id": env.get("AVITO_CLIENT_ID", ""),
            "client_secret": env.get("AVITO_CLIENT_SECRET", ""),
            "account_id": env.get("AVITO_USER_ID", ""),
            "refresh_token": env.get("AVITO_REFRESH_TOKEN", ""),
            "access_token": env.get("AVITO_ACCESS_TOKEN", ""),
            "api_base": env.get("AVITO_API_BASE", "https://api.avito.ru"),
            "http_timeout_seconds": env.get("HTTP_TIMEOUT_SECONDS", "10"),
            "reply_text": env.get("REPLY_TEXT", ""),
            "reply_upstream_url": env.get("REPLY_UPSTREAM_URL", ""),
            "reply_upstream_token": env.get("REPLY_UPSTREAM_TOKEN", ""),
            "reply_timeout_seconds": env.get("REPLY_TIMEOUT_SECONDS", "15"),
            "audit_log_path": env.get("AUDIT_LOG_PATH", ""),
            "audit_log_max_bytes": env.get("AUDIT_LOG_MAX_BYTES", "10485760"),
            "audit_log_backup_count": env.get("AUDIT_LOG_BACKUP_COUNT", "5"),
        }
        try:
            config = cls.model_validate(raw)
        except ValidationError as exc:
            fields = sorted({str(err["loc"][0]) for err in exc.errors()})
            raise ConfigurationError(f"Invalid configuration values: {fields}") from exc

        if not config.webhook_path.startswith("/"):
            raise ConfigurationError("WEBHOOK_PATH must start with '/'")
        if config.http_timeout_seconds <= 0 or config.reply_timeout_seconds <= 0:
            raise ConfigurationError("Timeouts must be positive")
        return config

    @property
    def has_client_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def presence(self) -> dict[str, bool]:
        """Which settings are present, without exposing their values."""
        return {
            "WEBHOOK_SECRET": bool(self.webhook_secret),
            "AVITO_CLIENT_ID": bool(self.client_id),
            "AVITO_CLIENT_SECRET": bool(self.client_secret),
            "AVITO_USER_ID": bool(self.account_id),
            "AVITO_REFRESH_TOKEN": bool(self.refresh_token),
        }


def _parse_bool(name: str, value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")
