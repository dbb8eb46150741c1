"""Tests for VolaWsClient Engine.IO wrapper."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from websockets.exceptions import ConnectionClosed
from websockets.frames import Close

from vola_room_core.errors import VolaConnectionError, VolaProtocolError
from vola_room_core.transport.ws_client import (
    VolaWsClient,
    VolaWsMessage,
    VolaWsMessageType,
)

WS_URL = "wss://volafile.org/api/?EIO=3&transport=websocket&room=abc123"


class AsyncIteratorMock:
    """Helper class to create a proper async iterator mock."""

    def __init__(self, items: list, *, raise_on_iter: Exception | None = None):
        self._items = items
        self._index = 0
        self._raise_on_iter = raise_on_iter
        self.close = AsyncMock()
        self.send = AsyncMock()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._index >= len(self._items):
            if self._raise_on_iter is not None:
                raise self._raise_on_iter
            raise StopAsyncIteration
        item = self._items[self._index]
        self._index += 1
        return item


async def connected_client(mock_ws) -> VolaWsClient:
    with patch(
        "vola_room_core.transport.ws_client.connect_websocket",
        return_value=mock_ws,
    ):
        client = VolaWsClient()
        await client.connect(WS_URL)
    return client


class TestVolaWsMessage:
    """Tests for VolaWsMessage dataclass."""

    def test_defaults(self):
        """Test data defaults to None."""
        msg = VolaWsMessage(type=VolaWsMessageType.CLOSED)
        assert msg.data is None

    def test_message_is_frozen(self):
        """Test that messages are immutable."""
        msg = VolaWsMessage(type=VolaWsMessageType.TEXT, data="test")
        with pytest.raises(AttributeError):
            msg.data = "modified"  # type: ignore[misc]


class TestVolaWsClientConnect:
    """Tests for VolaWsClient.connect()."""

    async def test_connect_passes_headers(self):
        """Test handshake headers are forwarded."""
        mock_ws = AsyncMock()
        with patch(
            "vola_room_core.transport.ws_client.connect_websocket",
            return_value=mock_ws,
        ) as mock_connect:
            client = VolaWsClient()
            await client.connect(
                WS_URL,
                headers={"Cookie": "allow-download=1"},
                origin="https://volafile.org",
                user_agent="ua",
            )

        mock_connect.assert_called_once_with(
            WS_URL,
            headers={"Cookie": "allow-download=1"},
            origin="https://volafile.org",
            user_agent="ua",
            timeout=15.0,
        )
        assert client.connected

    async def test_connect_propagates_errors(self):
        """Test connection errors propagate."""
        with patch(
            "vola_room_core.transport.ws_client.connect_websocket",
            side_effect=VolaConnectionError("Connection failed"),
        ):
            client = VolaWsClient()
            with pytest.raises(VolaConnectionError, match="Connection failed"):
                await client.connect(WS_URL)
        assert not client.connected


class TestVolaWsClientSend:
    """Tests for outbound packets."""

    async def test_send_message_prefix(self):
        """Test messages get the Engine.IO message prefix."""
        mock_ws = AsyncMock()
        client = await connected_client(mock_ws)
        await client.send_message("[4]")
        mock_ws.send.assert_called_once_with("4[4]")

    async def test_send_ping(self):
        """Test pings are a bare ping packet."""
        mock_ws = AsyncMock()
        client = await connected_client(mock_ws)
        await client.send_ping()
        mock_ws.send.assert_called_once_with("2")

    async def test_send_not_connected(self):
        """Test sending raises when not connected."""
        client = VolaWsClient()
        with pytest.raises(VolaConnectionError, match="not connected"):
            await client.send_message("[1]")

    async def test_send_failure_mapped(self):
        """Test transport failures become connection errors."""
        mock_ws = AsyncMock()
        mock_ws.send.side_effect = ConnectionClosed(None, None)
        client = await connected_client(mock_ws)
        with pytest.raises(VolaConnectionError, match="send failed"):
            await client.send_message("[1]")


class TestVolaWsClientClose:
    """Tests for VolaWsClient.close()."""

    async def test_close_connected(self):
        """Test closing sends a close packet and closes the socket."""
        mock_ws = AsyncMock()
        client = await connected_client(mock_ws)
        await client.close()
        mock_ws.send.assert_called_once_with("1")
        mock_ws.close.assert_called_once()
        assert not client.connected

    async def test_close_when_peer_gone(self):
        """Test closing tolerates an already closed peer."""
        mock_ws = AsyncMock()
        mock_ws.send.side_effect = ConnectionClosed(None, None)
        client = await connected_client(mock_ws)
        await client.close()
        mock_ws.close.assert_called_once()

    async def test_close_not_connected(self):
        """Test closing when not connected (no error)."""
        await VolaWsClient().close()


class TestVolaWsClientIteration:
    """Tests for VolaWsClient async iteration."""

    async def test_iter_not_connected(self):
        """Test iteration raises when not connected."""
        client = VolaWsClient()
        with pytest.raises(VolaConnectionError, match="not connected"):
            client.__aiter__()

    async def test_open_packet_applied(self):
        """Test the open packet sets session id and ping timing."""
        mock_ws = AsyncIteratorMock(
            ['0{"sid":"abc","pingInterval":25000,"pingTimeout":60000}']
        )
        client = await connected_client(mock_ws)
        messages = [msg async for msg in client]
        assert messages[0].type is VolaWsMessageType.OPEN
        assert client.sid == "abc"
        assert client.ping_interval == 25.0
        assert client.ping_timeout == 60.0

    async def test_text_messages(self):
        """Test message packets are unwrapped."""
        mock_ws = AsyncIteratorMock(['4{"version":7}', "4[0]"])
        client = await connected_client(mock_ws)
        messages = [msg async for msg in client]
        assert [m.data for m in messages if m.type is VolaWsMessageType.TEXT] == [
            '{"version":7}',
            "[0]",
        ]
        assert messages[-1].type is VolaWsMessageType.CLOSED

    async def test_server_ping_answered(self):
        """Test server pings are answered with a pong and surfaced."""
        mock_ws = AsyncIteratorMock(["2keepalive"])
        client = await connected_client(mock_ws)
        messages = [msg async for msg in client]
        mock_ws.send.assert_called_once_with("3keepalive")
        assert messages[0] == VolaWsMessage(VolaWsMessageType.PING, "keepalive")

    async def test_pong_surfaced(self):
        """Test pongs are surfaced for keepalive tracking."""
        mock_ws = AsyncIteratorMock(["3"])
        client = await connected_client(mock_ws)
        messages = [msg async for msg in client]
        assert messages[0].type is VolaWsMessageType.PONG

    async def test_close_packet_ends_iteration(self):
        """Test a close packet stops iteration."""
        mock_ws = AsyncIteratorMock(["1", "4[0]"])
        client = await connected_client(mock_ws)
        messages = [msg async for msg in client]
        assert len(messages) == 1
        assert messages[0].type is VolaWsMessageType.CLOSED

    async def test_noop_and_binary_skipped(self):
        """Test noop packets and binary frames are skipped."""
        mock_ws = AsyncIteratorMock(["6", b"\x00\x01", "4[1]"])
        client = await connected_client(mock_ws)
        messages = [msg async for msg in client]
        assert [m.type for m in messages] == [
            VolaWsMessageType.TEXT,
            VolaWsMessageType.CLOSED,
        ]

    async def test_unknown_packet_dropped(self):
        """Test unknown packet types are dropped."""
        mock_ws = AsyncIteratorMock(["9what", "4[1]"])
        client = await connected_client(mock_ws)
        messages = [msg async for msg in client]
        assert messages[0].data == "[1]"

    async def test_clean_close(self):
        """Test a normal close code is a close, not an error."""
        mock_ws = AsyncIteratorMock([], raise_on_iter=ConnectionClosed(None, None))
        client = await connected_client(mock_ws)
        messages = [msg async for msg in client]
        assert len(messages) == 1
        assert messages[0].type is VolaWsMessageType.CLOSED

    async def test_abnormal_close(self):
        """Test an abnormal close code is an error."""
        mock_ws = AsyncIteratorMock(
            [], raise_on_iter=ConnectionClosed(Close(1011, "internal error"), None)
        )
        client = await connected_client(mock_ws)
        messages = [msg async for msg in client]
        assert messages[0].type is VolaWsMessageType.ERROR

    async def test_unexpected_error(self):
        """Test iteration handles unexpected errors."""
        mock_ws = AsyncIteratorMock([], raise_on_iter=RuntimeError("Unexpected"))
        client = await connected_client(mock_ws)
        messages = [msg async for msg in client]
        assert len(messages) == 1
        assert messages[0].type is VolaWsMessageType.ERROR


class TestDecodePacket:
    """Tests for VolaWsClient.decode_packet()."""

    def test_empty(self):
        assert VolaWsClient.decode_packet("") is None

    def test_invalid_open(self):
        """Test a broken open packet is a protocol error."""
        with pytest.raises(VolaProtocolError):
            VolaWsClient.decode_packet("0{broken")

    def test_upgrade_ignored(self):
        assert VolaWsClient.decode_packet("5") is None
