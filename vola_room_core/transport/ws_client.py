"""WebSocket client speaking Engine.IO v3 packet framing."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import VolaConnectionError, VolaProtocolError
from .ws import connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

_LOGGER = logging.getLogger(__name__)

PACKET_OPEN = "0"
PACKET_CLOSE = "1"
PACKET_PING = "2"
PACKET_PONG = "3"
PACKET_MESSAGE = "4"
PACKET_UPGRADE = "5"
PACKET_NOOP = "6"


class VolaWsMessageType(Enum):
    """Normalized transport events."""

    OPEN = "open"
    TEXT = "text"
    PING = "ping"
    PONG = "pong"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class VolaWsMessage:
    """Normalized transport event payload."""

    type: VolaWsMessageType
    data: str | dict[str, Any] | None = None


class VolaWsClient:
    """Duplex transport: open, message, ping/pong, error, close and send."""

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None
        self.sid: str | None = None
        self.ping_interval: float | None = None
        self.ping_timeout: float | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        origin: str | None = None,
        user_agent: str | None = None,
        timeout: float = 15.0,
    ) -> None:
        """Connect to the room websocket."""
        self._ws = await connect_websocket(
            url,
            headers=headers,
            origin=origin,
            user_agent=user_agent,
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is None:
            return
        ws, self._ws = self._ws, None
        try:
            await ws.send(PACKET_CLOSE)
        except (ConnectionClosed, WebSocketException, OSError):
            pass
        await ws.close()

    async def send_message(self, data: str) -> None:
        """Send one Engine.IO message packet."""
        await self._send(PACKET_MESSAGE + data)

    async def send_ping(self) -> None:
        await self._send(PACKET_PING)

    async def _send(self, packet: str) -> None:
        if self._ws is None:
            raise VolaConnectionError("WebSocket is not connected")
        try:
            await self._ws.send(packet)
        except (ConnectionClosed, WebSocketException, OSError) as err:
            raise VolaConnectionError(f"WebSocket send failed: {err}") from err

    def __aiter__(self) -> AsyncIterator[VolaWsMessage]:
        if self._ws is None:
            raise VolaConnectionError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[VolaWsMessage]:
        if self._ws is None:
            raise VolaConnectionError("WebSocket is not connected")
        ws = self._ws

        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    normalized = self.decode_packet(raw)
                except VolaProtocolError as err:
                    _LOGGER.warning("Dropping packet: %s", err)
                    continue
                if normalized is None:
                    continue
                if normalized.type is VolaWsMessageType.OPEN:
                    self._apply_open(normalized.data)
                elif normalized.type is VolaWsMessageType.PING:
                    # Server-initiated liveness check
                    await ws.send(PACKET_PONG + (normalized.data or ""))
                yield normalized
                if normalized.type is VolaWsMessageType.CLOSED:
                    return
        except ConnectionClosed as err:
            if err.rcvd is not None and err.rcvd.code not in (1000, 1001):
                yield VolaWsMessage(VolaWsMessageType.ERROR, str(err))
            else:
                yield VolaWsMessage(VolaWsMessageType.CLOSED, str(err))
        except Exception as err:
            yield VolaWsMessage(VolaWsMessageType.ERROR, str(err))
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield VolaWsMessage(VolaWsMessageType.CLOSED)

    def _apply_open(self, data: Any) -> None:
        if not isinstance(data, dict):
            return
        self.sid = data.get("sid")
        if data.get("pingInterval"):
            self.ping_interval = data["pingInterval"] / 1000
        if data.get("pingTimeout"):
            self.ping_timeout = data["pingTimeout"] / 1000

    @staticmethod
    def decode_packet(raw: str) -> VolaWsMessage | None:
        """Map one Engine.IO text packet onto a transport event."""
        if not raw:
            return None
        kind, body = raw[0], raw[1:]
        if kind == PACKET_MESSAGE:
            return VolaWsMessage(VolaWsMessageType.TEXT, body)
        if kind == PACKET_PING:
            return VolaWsMessage(VolaWsMessageType.PING, body or None)
        if kind == PACKET_PONG:
            return VolaWsMessage(VolaWsMessageType.PONG, body or None)
        if kind == PACKET_OPEN:
            try:
                return VolaWsMessage(VolaWsMessageType.OPEN, json.loads(body or "{}"))
            except ValueError as err:
                raise VolaProtocolError("Invalid open packet") from err
        if kind == PACKET_CLOSE:
            return VolaWsMessage(VolaWsMessageType.CLOSED, "server close")
        if kind in (PACKET_NOOP, PACKET_UPGRADE):
            return None
        raise VolaProtocolError(f"Unknown packet type {kind!r}")
