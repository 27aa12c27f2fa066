"""Tests for services/network.py - the reachability probe."""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import aiohttp
import pytest

from arch_bootstrap.services.network import NetworkProbe
from arch_bootstrap.storage.exceptions import NetworkUnreachableError, TransientError


def _session_with_head(head):
    mock_session = AsyncMock()
    mock_session.head = head

    mock_session_cm = AsyncMock()
    mock_session_cm.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session_cm.__aexit__ = AsyncMock(return_value=None)
    return mock_session_cm


def _head_returning(status):
    mock_response = AsyncMock()
    mock_response.status = status

    mock_head_cm = AsyncMock()
    mock_head_cm.__aenter__ = AsyncMock(return_value=mock_response)
    mock_head_cm.__aexit__ = AsyncMock(return_value=None)
    return Mock(return_value=mock_head_cm)


class TestNetworkProbe:
    """Tests for NetworkProbe.probe()."""

    @pytest.mark.asyncio
    async def test_reachable(self):
        head = _head_returning(200)
        probe = NetworkProbe("https://archlinux.org", timeout_seconds=2)

        with patch("aiohttp.ClientSession", return_value=_session_with_head(head)) as session:
            status = await probe.probe()

        assert status == 200
        head.assert_called_once_with("https://archlinux.org", allow_redirects=True)
        assert session.call_args[1]["timeout"].total == 2

    @pytest.mark.asyncio
    async def test_error_status_still_reachable(self):
        probe = NetworkProbe("https://archlinux.org")

        with patch("aiohttp.ClientSession", return_value=_session_with_head(_head_returning(503))):
            assert await probe.probe() == 503

    @pytest.mark.asyncio
    async def test_connection_error(self):
        head = Mock(side_effect=aiohttp.ClientConnectionError("Connection refused"))
        probe = NetworkProbe("https://archlinux.org")

        with patch("aiohttp.ClientSession", return_value=_session_with_head(head)):
            with pytest.raises(NetworkUnreachableError, match="Connection refused"):
                await probe.probe()

    @pytest.mark.asyncio
    async def test_timeout(self):
        head = Mock(side_effect=asyncio.TimeoutError())
        probe = NetworkProbe("https://archlinux.org")

        with patch("aiohttp.ClientSession", return_value=_session_with_head(head)):
            with pytest.raises(NetworkUnreachableError, match="timed out"):
                await probe.probe()

    def test_unreachable_is_transient(self):
        assert issubclass(NetworkUnreachableError, TransientError)


class TestCheck:
    """Tests for the blocking NetworkProbe.check()."""

    def test_check_returns_status(self):
        probe = NetworkProbe("https://archlinux.org")

        with patch.object(NetworkProbe, "probe", new=AsyncMock(return_value=204)):
            assert probe.check() == 204

    def test_check_propagates_unreachable(self):
        probe = NetworkProbe("https://archlinux.org")
        failing = AsyncMock(side_effect=NetworkUnreachableError("https://archlinux.org", "dns"))

        with patch.object(NetworkProbe, "probe", new=failing):
            with pytest.raises(NetworkUnreachableError):
                probe.check()
