"""WebSocket helpers for the room transport."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidStatus,
    InvalidURI,
    WebSocketException,
)

from ..errors import (
    VolaConnectionError,
    VolaHandshakeError,
    VolaTimeout,
)


def _handshake_status(err: InvalidHandshake) -> int | None:
    """HTTP status of a refused upgrade, when the server sent one."""
    if isinstance(err, InvalidStatus):
        return err.response.status_code
    return None


async def connect_websocket(
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    origin: str | None = None,
    user_agent: str | None = None,
    ping_interval: float | None = None,
    timeout: float = 15.0,
) -> ClientConnection:
    """Connect to a WebSocket endpoint.

    Args:
        url: Full ``ws://`` or ``wss://`` URL including the query string
        headers: Extra handshake headers (cookies, referer)
        origin: Origin header value
        user_agent: User-Agent header value
        ping_interval: Interval for websocket-level ping frames (None disables)
        timeout: Connection timeout
    """
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                additional_headers=dict(headers or {}),
                origin=origin,
                user_agent_header=user_agent,
                ping_interval=ping_interval,
                close_timeout=5,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise VolaTimeout("WebSocket connection timed out") from err
    except InvalidURI as err:
        raise VolaHandshakeError(f"Invalid websocket URL: {err}") from err
    except InvalidHandshake as err:
        status = _handshake_status(err)
        raise VolaHandshakeError(
            f"WebSocket handshake failed: {err}", status=status
        ) from err
    except (OSError, WebSocketException) as err:
        raise VolaConnectionError("WebSocket connection failed") from err
