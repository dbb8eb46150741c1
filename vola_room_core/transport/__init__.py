"""Transport layer for Vola rooms.

Components:
- ws: WebSocket connection setup and error mapping
- ws_client: Engine.IO packet framing and message iteration
"""

from .ws import connect_websocket
from .ws_client import VolaWsClient, VolaWsMessage, VolaWsMessageType

__all__ = [
    "VolaWsClient",
    "VolaWsMessage",
    "VolaWsMessageType",
    "connect_websocket",
]
