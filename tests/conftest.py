"""Pytest configuration and fixtures for vola_room_core tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from vola_room_core.config import SessionOptions
from vola_room_core.http import VolaHttpClient
from vola_room_core.room import VolaRoom
from vola_room_core.transport import VolaWsMessage, VolaWsMessageType

ROOM_CONFIG = {
    "room_id": "abc123",
    "custom_room_id": "abc123",
    "checksum2": "cs2",
    "name": "Test Room",
    "motd": "",
    "chat_max_message_length": 300,
    "chat_max_alias_length": 12,
    "janitors": ["Jan"],
    "password": "",
}


@pytest.fixture
async def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession with a real cookie jar."""
    import aiohttp

    session = MagicMock(spec=aiohttp.ClientSession)
    session.cookie_jar = aiohttp.CookieJar()
    return session


def create_mock_response(
    status: int = 200,
    json_data: Any = None,
    text_data: str | None = None,
) -> AsyncMock:
    """Create a configured mock response usable as an async context manager.

    Args:
        status: HTTP status code
        json_data: Data to return from json() call
        text_data: Data to return from text() call
    """
    response = AsyncMock()
    response.status = status

    if json_data is not None:
        response.json.return_value = json_data
    if text_data is not None:
        response.text.return_value = text_data

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response


class FakeWsClient:
    """In-memory stand-in for VolaWsClient.

    Tests push server packets with ``feed`` and inspect ``sent`` frames.
    """

    instances: list[FakeWsClient] = []

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.pings = 0
        self.closed = False
        self.url: str | None = None
        self.connect_kwargs: dict[str, Any] = {}
        self.ping_interval: float | None = None
        self.ping_timeout: float | None = None
        self._inbox: asyncio.Queue[VolaWsMessage | None] = asyncio.Queue()
        FakeWsClient.instances.append(self)

    async def connect(self, url: str, **kwargs: Any) -> None:
        self.url = url
        self.connect_kwargs = kwargs

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(None)

    async def send_message(self, data: str) -> None:
        self.sent.append(data)

    async def send_ping(self) -> None:
        self.pings += 1

    def feed(self, frame: Any) -> None:
        """Queue a server message (JSON-encoded unless already a string)."""
        raw = frame if isinstance(frame, str) else json.dumps(frame)
        self._inbox.put_nowait(VolaWsMessage(VolaWsMessageType.TEXT, raw))

    def feed_event(self, msg_type: VolaWsMessageType, data: Any = None) -> None:
        self._inbox.put_nowait(VolaWsMessage(msg_type, data))

    @property
    def frames(self) -> list[Any]:
        return [json.loads(raw) for raw in self.sent]

    @property
    def calls(self) -> list[tuple[str, list[Any]]]:
        """(fn, args) of every call frame sent so far."""
        result = []
        for frame in self.frames:
            if len(frame) == 2 and frame[1][0][0] == 0:
                call = frame[1][0][1][1]
                result.append((call["fn"], call["args"]))
        return result

    def __aiter__(self) -> AsyncIterator[VolaWsMessage]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[VolaWsMessage]:
        while True:
            msg = await self._inbox.get()
            if msg is None:
                return
            yield msg


@pytest.fixture
def fake_ws() -> Any:
    """Patch the room's transport with FakeWsClient instances."""
    FakeWsClient.instances = []
    with patch("vola_room_core.room.VolaWsClient", FakeWsClient):
        yield FakeWsClient


@pytest.fixture
def mock_http() -> MagicMock:
    """REST client double answering getRoomConfig with a plain room."""
    http = MagicMock(spec=VolaHttpClient)
    http.cookie_header = "allow-download=1"
    http.get_room_config = AsyncMock(return_value=dict(ROOM_CONFIG))
    http.login = AsyncMock(return_value={"session": "acct-session", "nick": "Tester"})
    http.set_room_config = AsyncMock(return_value={"ok": True})
    http.get_upload_key = AsyncMock()
    http.upload = AsyncMock(return_value=None)
    return http


@pytest.fixture
def options() -> SessionOptions:
    return SessionOptions(
        callback_timeout=0.2,
        close_timeout=0.5,
        connect_retry_delay=0.01,
        ready_timeout=1.0,
        ping_interval=60.0,
        wait_file_timeout=0.2,
    )


@pytest.fixture
async def room(
    mock_http: MagicMock, options: SessionOptions, fake_ws: Any
) -> AsyncIterator[VolaRoom]:
    room = VolaRoom("abc123", "tester", options=options, http=mock_http)
    yield room
    await room.close()


async def settle(rounds: int = 10) -> None:
    """Let background tasks process queued events."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for_transport() -> FakeWsClient:
    """Wait until a FakeWsClient completed its connect."""
    while not FakeWsClient.instances or FakeWsClient.instances[-1].url is None:
        await asyncio.sleep(0)
    return FakeWsClient.instances[-1]


async def connect_room(
    room: VolaRoom,
    *,
    handshake: dict[str, Any] | None = None,
    files: list[Any] | None = None,
) -> FakeWsClient:
    """Connect ``room`` against a FakeWsClient, completing the handshake."""
    task = asyncio.create_task(room.connect())
    ws = await wait_for_transport()
    ws.feed(handshake or {"version": 7, "session": "s1", "ack": 0})
    ws.feed([0, [[0, ["files", {"set": True, "files": files or []}]], 0]])
    await task
    return ws
