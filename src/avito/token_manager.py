"""Avito OAuth token lifecycle.

Holds the access/refresh token pair for one process and serves a usable
access token to concurrent request handlers. Refreshes are single-flight:
while one exchange with the token endpoint is running, every other caller
awaits that same exchange instead of starting its own.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from src.audit.logger import AuditLogger
from src.config import GatewayConfig
from src.errors import ConfigurationError, TokenRefreshError
from src.models import AuditEventType, RiskLevel

logger = logging.getLogger(__name__)

GRANT_REFRESH_TOKEN = "refresh_token"
GRANT_CLIENT_CREDENTIALS = "client_credentials"

_DEFAULT_REFRESH_SKEW = timedelta(seconds=60)


@dataclass(frozen=True)
class TokenState:
    access_token: str = ""
    refresh_token: str = ""
    expires_at: datetime | None = None

    def is_usable(self, now: datetime, skew: timedelta = _DEFAULT_REFRESH_SKEW) -> bool:
        if not self.access_token:
            return False
        if self.expires_at is None:
            return True
        return self.expires_at - skew > now


class TokenManager:
    """Single owner of the process-wide TokenState."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        refresh_token: str = "",
        access_token: str = "",
        timeout: float = 10.0,
        refresh_skew: timedelta = _DEFAULT_REFRESH_SKEW,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout
        self._refresh_skew = refresh_skew
        self._audit = audit_logger
        self._state = TokenState(access_token=access_token, refresh_token=refresh_token)
        self._inflight: asyncio.Task[str] | None = None
        self.refresh_count = 0

    @classmethod
    def from_config(
        cls, config: GatewayConfig, audit_logger: AuditLogger | None = None,
    ) -> TokenManager:
        return cls(
            token_url=f"{config.api_base.rstrip('/')}/token",
            client_id=config.client_id,
            client_secret=config.client_secret,
            refresh_token=config.refresh_token,
            access_token=config.access_token,
            timeout=config.http_timeout_seconds,
            audit_logger=audit_logger,
        )

    def snapshot(self) -> TokenState:
        return replace(self._state)

    async def get_token(self) -> str:
        """Return the cached token if still usable, refreshing otherwise."""
        if self._state.is_usable(datetime.now(UTC), self._refresh_skew):
            return self._state.access_token
        return await self.force_refresh()

    async def force_refresh(self, stale_token: str | None = None) -> str:
        """Exchange credentials for a new access token.

        ``stale_token`` is the token a caller just saw rejected; if the cache
        already holds a different token, that one is returned without a call
        to the token endpoint. Joins an in-flight refresh when there is one.
        """
        current = self._state.access_token
        if stale_token is not None and current and current != stale_token:
            return current

        task = self._inflight
        if task is None:
            task = asyncio.create_task(self._refresh())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task
        # A cancelled waiter must not cancel the exchange others are awaiting.
        return await asyncio.shield(task)

    def _clear_inflight(self, task: asyncio.Task[str]) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # Mark the exception retrieved; waiters re-raise it themselves.
            task.exception()

    async def _refresh(self) -> str:
        form = self._grant_form()
        self.refresh_count += 1
        logger.info("Refreshing Avito access token (grant=%s)", form["grant_type"])

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._token_url, data=form)
        except httpx.HTTPError as exc:
            self._record_failure(None, type(exc).__name__)
            raise TokenRefreshError(None, f"{type(exc).__name__}: {exc}") from exc

        tokens = _json_or_empty(response)
        rotated = tokens.get("refresh_token")
        if isinstance(rotated, str) and rotated and rotated != self._state.refresh_token:
            # Apply a rotated refresh token even if the rest of the exchange fails:
            # the old one may already be revoked upstream.
            self._state = replace(self._state, refresh_token=rotated)
            logger.info("Avito refresh token rotated")

        access_token = tokens.get("access_token")
        if response.status_code != 200 or not isinstance(access_token, str) or not access_token:
            self._record_failure(response.status_code, "rejected")
            logger.warning("Avito token refresh failed with status %s", response.status_code)
            raise TokenRefreshError(response.status_code, response.text)

        self._state = replace(
            self._state,
            access_token=access_token,
            expires_at=_expiry(tokens.get("expires_in")),
        )
        if self._audit:
            self._audit.record(
                AuditEventType.TOKEN_REFRESH,
                action="token_refresh",
                result="success",
                details={"grant_type": form["grant_type"]},
            )
        return access_token

    def _grant_form(self) -> dict[str, str]:
        if not self._client_id or not self._client_secret:
            raise ConfigurationError("AVITO_CLIENT_ID and AVITO_CLIENT_SECRET are required")
        form = {"client_id": self._client_id, "client_secret": self._client_secret}
        if self._state.refresh_token:
            form["grant_type"] = GRANT_REFRESH_TOKEN
            form["refresh_token"] = self._state.refresh_token
        else:
            form["grant_type"] = GRANT_CLIENT_CREDENTIALS
        return form

    def _record_failure(self, status_code: int | None, reason: str) -> None:
        if self._audit:
            self._audit.record(
                AuditEventType.TOKEN_REFRESH,
                action="token_refresh",
                result="failure",
                risk_level=RiskLevel.MEDIUM,
                details={"status_code": status_code, "reason": reason},
            )


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _expiry(expires_in: object) -> datetime | None:
    if isinstance(expires_in, bool) or not isinstance(expires_in, int | float):
        return None
    return datetime.now(UTC) + timedelta(seconds=expires_in)
