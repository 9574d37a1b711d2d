"""Outbound message delivery to the Avito messenger API."""

from __future__ import annotations

import logging
import re
from urllib.parse import quote

import httpx

from src.avito.token_manager import TokenManager
from src.config import GatewayConfig
from src.errors import ConfigurationError, TokenRefreshError
from src.models import DispatchResult

logger = logging.getLogger(__name__)

_AUTH_FAILURE_STATUSES = frozenset({401, 403})
_CONVERSATION_ID = re.compile(r"[A-Za-z0-9_~.:-]+")


class OutboundDispatcher:
    """Sends text replies into a conversation with a bearer token.

    An authorization failure triggers one forced token refresh and one
    retry. Nothing else is retried.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        api_base: str,
        account_id: str,
        timeout: float = 10.0,
    ) -> None:
        self._tokens = token_manager
        self._api_base = api_base.rstrip("/")
        self._account_id = account_id
        self._timeout = timeout

    @classmethod
    def from_config(
        cls, config: GatewayConfig, token_manager: TokenManager,
    ) -> OutboundDispatcher:
        return cls(
            token_manager=token_manager,
            api_base=config.api_base,
            account_id=config.account_id,
            timeout=config.http_timeout_seconds,
        )

    def message_url(self, conversation_id: str) -> str:
        return (
            f"{self._api_base}/messenger/v1/accounts/{self._account_id}"
            f"/chats/{quote(conversation_id, safe='')}/messages"
        )

    async def send(self, conversation_id: str, text: str) -> DispatchResult:
        if not conversation_id:
            return DispatchResult(
                success=False, http_status=0, error_detail="Empty conversation id", attempts=0,
            )
        if not is_valid_conversation_id(conversation_id):
            return DispatchResult(
                success=False, http_status=0, error_detail="Invalid conversation id", attempts=0,
            )
        if not self._account_id:
            return DispatchResult(
                success=False, http_status=0, error_detail="AVITO_USER_ID is not configured",
                attempts=0,
            )

        try:
            token = await self._tokens.get_token()
        except (TokenRefreshError, ConfigurationError) as exc:
            return DispatchResult(
                success=False, http_status=_status_of(exc), error_detail=str(exc), attempts=0,
            )

        url = self.message_url(conversation_id)
        payload = {"message": {"type": "text", "text": text}}

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            first = await self._post(client, url, payload, token)
            if isinstance(first, DispatchResult):
                return first
            if first.status_code not in _AUTH_FAILURE_STATUSES:
                return _result(first, attempts=1)

            logger.info(
                "Avito rejected token with %s; refreshing and retrying once",
                first.status_code,
            )
            try:
                token = await self._tokens.force_refresh(stale_token=token)
            except (TokenRefreshError, ConfigurationError) as exc:
                return DispatchResult(
                    success=False,
                    http_status=first.status_code,
                    error_detail=f"Token refresh failed: {exc}",
                    attempts=1,
                )

            second = await self._post(client, url, payload, token)
            if isinstance(second, DispatchResult):
                return second.model_copy(update={"attempts": 2, "refreshed": True})
            return _result(second, attempts=2, refreshed=True)

    async def _post(
        self,
        client: httpx.AsyncClient,
        url: str,
        payload: dict[str, object],
        token: str,
    ) -> httpx.Response | DispatchResult:
        headers = {"Authorization": f"Bearer {token}"}
        try:
            return await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException:
            return DispatchResult(success=False, http_status=504, error_detail="Upstream timeout")
        except httpx.InvalidURL as exc:
            return DispatchResult(success=False, http_status=0, error_detail=f"Invalid URL: {exc}")
        except httpx.HTTPError as exc:
            return DispatchResult(
                success=False, http_status=502, error_detail=f"Upstream unavailable: {exc}",
            )


def is_valid_conversation_id(conversation_id: str) -> bool:
    """Chat ids are path segments: plain characters only, no dot traversal."""
    return bool(_CONVERSATION_ID.fullmatch(conversation_id)) and ".." not in conversation_id


def _result(response: httpx.Response, attempts: int, refreshed: bool = False) -> DispatchResult:
    if 200 <= response.status_code < 300:
        return DispatchResult(
            success=True, http_status=response.status_code, attempts=attempts, refreshed=refreshed,
        )
    logger.warning("Avito send failed with status %s", response.status_code)
    return DispatchResult(
        success=False,
        http_status=response.status_code,
        error_detail=response.text[:500] or f"HTTP {response.status_code}",
        attempts=attempts,
        refreshed=refreshed,
    )


def _status_of(exc: Exception) -> int:
    if isinstance(exc, TokenRefreshError) and exc.status_code is not None:
        return exc.status_code
    return 0
