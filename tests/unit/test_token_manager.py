"""Tests for the Avito OAuth token manager."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from src.avito.token_manager import TokenManager, TokenState
from src.errors import ConfigurationError, TokenRefreshError
from tests.conftest import install_mock_client, make_config, make_token_response


def _make_manager(**kwargs: Any) -> TokenManager:
    defaults: dict[str, Any] = {
        "token_url": "https://api.avito.test/token",
        "client_id": "cid",
        "client_secret": "csecret",
        "refresh_token": "refresh-1",
    }
    defaults.update(kwargs)
    return TokenManager(**defaults)


class TestGetToken:
    @pytest.mark.asyncio
    async def test_uninitialized_manager_refreshes(self) -> None:
        manager = _make_manager()
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post.return_value = make_token_response("access-1")

            assert await manager.get_token() == "access-1"
            client.post.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cached_token_reused(self) -> None:
        manager = _make_manager()
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post.return_value = make_token_response("access-1")

            await manager.get_token()
            await manager.get_token()
            assert client.post.await_count == 1

    @pytest.mark.asyncio
    async def test_seeded_token_without_expiry_used_as_is(self) -> None:
        manager = _make_manager(access_token="seeded")
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            assert await manager.get_token() == "seeded"
            mock_client_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_expiring_token_refreshed(self) -> None:
        manager = _make_manager()
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post.side_effect = [
                make_token_response("short-lived", expires_in=10),
                make_token_response("access-2"),
            ]
            assert await manager.get_token() == "short-lived"
            # 10s left is inside the refresh skew
            assert await manager.get_token() == "access-2"
            assert client.post.await_count == 2


class TestForceRefresh:
    @pytest.mark.asyncio
    async def test_refresh_token_grant(self) -> None:
        manager = _make_manager()
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post.return_value = make_token_response()

            await manager.force_refresh()

            mock_client_cls.assert_called_once_with(timeout=10.0)
            args, kwargs = client.post.call_args
            assert args[0] == "https://api.avito.test/token"
            assert kwargs["data"] == {
                "grant_type": "refresh_token",
                "refresh_token": "refresh-1",
                "client_id": "cid",
                "client_secret": "csecret",
            }

    @pytest.mark.asyncio
    async def test_client_credentials_grant_without_refresh_token(self) -> None:
        manager = _make_manager(refresh_token="")
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post.return_value = make_token_response()

            await manager.force_refresh()

            data = client.post.call_args.kwargs["data"]
            assert data["grant_type"] == "client_credentials"
            assert "refresh_token" not in data

    @pytest.mark.asyncio
    async def test_replaces_pair_and_sets_expiry(self) -> None:
        manager = _make_manager()
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post.return_value = make_token_response("access-2", refresh_token="refresh-2")

            await manager.force_refresh()

        state = manager.snapshot()
        assert state.access_token == "access-2"
        assert state.refresh_token == "refresh-2"
        assert state.expires_at is not None

    @pytest.mark.asyncio
    async def test_stale_token_short_circuits(self) -> None:
        manager = _make_manager(access_token="already-new")
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            assert await manager.force_refresh(stale_token="old") == "already-new"
            mock_client_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_matching_stale_token_refreshes(self) -> None:
        manager = _make_manager(access_token="old")
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post.return_value = make_token_response("access-2")
            assert await manager.force_refresh(stale_token="old") == "access-2"

    @pytest.mark.asyncio
    async def test_missing_client_credentials(self) -> None:
        manager = _make_manager(client_id="")
        with pytest.raises(ConfigurationError):
            await manager.get_token()


class TestRefreshFailures:
    @pytest.mark.asyncio
    async def test_rejection_raises_and_keeps_cache(self) -> None:
        manager = _make_manager(access_token="good")
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post.return_value = httpx.Response(400, json={"error": "invalid_grant"})

            with pytest.raises(TokenRefreshError) as exc_info:
                await manager.force_refresh()

        assert exc_info.value.status_code == 400
        assert "invalid_grant" in exc_info.value.body
        assert manager.snapshot() == TokenState(access_token="good", refresh_token="refresh-1")

    @pytest.mark.asyncio
    async def test_rotation_applied_even_on_failure(self) -> None:
        manager = _make_manager(access_token="good")
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post.return_value = httpx.Response(200, json={"refresh_token": "refresh-2"})

            with pytest.raises(TokenRefreshError):
                await manager.force_refresh()

        state = manager.snapshot()
        assert state.refresh_token == "refresh-2"
        assert state.access_token == "good"

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        manager = _make_manager()
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post.side_effect = httpx.ConnectTimeout("timed out")

            with pytest.raises(TokenRefreshError) as exc_info:
                await manager.force_refresh()

        assert exc_info.value.status_code is None
        assert manager.snapshot().access_token == ""

    @pytest.mark.asyncio
    async def test_non_json_body(self) -> None:
        manager = _make_manager()
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post.return_value = httpx.Response(502, text="<html>bad gateway</html>")

            with pytest.raises(TokenRefreshError) as exc_info:
                await manager.force_refresh()
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_next_call_retries_after_failure(self) -> None:
        manager = _make_manager()
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post.side_effect = [
                httpx.Response(500, json={}),
                make_token_response("access-2"),
            ]
            with pytest.raises(TokenRefreshError):
                await manager.get_token()
            assert await manager.get_token() == "access-2"

    @pytest.mark.asyncio
    async def test_failure_audited(self, mock_audit_logger: MagicMock) -> None:
        manager = _make_manager(audit_logger=mock_audit_logger)
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post.return_value = httpx.Response(401, json={})
            with pytest.raises(TokenRefreshError):
                await manager.force_refresh()

        mock_audit_logger.record.assert_called_once()
        assert mock_audit_logger.record.call_args.kwargs["result"] == "failure"


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self) -> None:
        manager = _make_manager()

        async def slow_post(*args: Any, **kwargs: Any) -> httpx.Response:
            await asyncio.sleep(0.01)
            return make_token_response("shared")

        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post = AsyncMock(side_effect=slow_post)

            results = await asyncio.gather(*(manager.get_token() for _ in range(10)))

        assert results == ["shared"] * 10
        assert client.post.await_count == 1
        assert manager.refresh_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_force_refresh_collapsed(self) -> None:
        manager = _make_manager(access_token="old")

        async def slow_post(*args: Any, **kwargs: Any) -> httpx.Response:
            await asyncio.sleep(0.01)
            return make_token_response("new")

        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post = AsyncMock(side_effect=slow_post)

            results = await asyncio.gather(
                *(manager.force_refresh(stale_token="old") for _ in range(5)),
            )

        assert set(results) == {"new"}
        assert client.post.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_all_see_failure(self) -> None:
        manager = _make_manager()

        async def failing_post(*args: Any, **kwargs: Any) -> httpx.Response:
            await asyncio.sleep(0.01)
            return httpx.Response(401, json={"error": "invalid_grant"})

        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post = AsyncMock(side_effect=failing_post)

            results = await asyncio.gather(
                *(manager.get_token() for _ in range(4)), return_exceptions=True,
            )

        assert all(isinstance(r, TokenRefreshError) for r in results)
        assert client.post.await_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_refresh(self) -> None:
        manager = _make_manager()
        started = asyncio.Event()

        async def slow_post(*args: Any, **kwargs: Any) -> httpx.Response:
            started.set()
            await asyncio.sleep(0.02)
            return make_token_response("survivor")

        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post = AsyncMock(side_effect=slow_post)

            first = asyncio.create_task(manager.get_token())
            await started.wait()
            second = asyncio.create_task(manager.get_token())
            await asyncio.sleep(0)
            first.cancel()

            assert await second == "survivor"
        assert client.post.await_count == 1

    @pytest.mark.asyncio
    async def test_independent_managers_refresh_independently(self) -> None:
        with patch("src.avito.token_manager.httpx.AsyncClient") as mock_client_cls:
            client = install_mock_client(mock_client_cls)
            client.post.return_value = make_token_response("fresh")

            a, b = _make_manager(), _make_manager()
            assert await a.get_token() == await b.get_token() == "fresh"
            assert client.post.await_count == 2


def test_from_config() -> None:
    manager = TokenManager.from_config(make_config(access_token="seed"))
    state = manager.snapshot()
    assert state.access_token == "seed"
    assert state.refresh_token == "refresh-1"
    assert manager._token_url == "https://api.avito.test/token"
