"""Async client engine for Vola rooms."""

__version__ = "0.1.0"

from .bus import EventBus
from .callbacks import CallbackRegistry
from .config import RoomConfig, SessionOptions
from .dispatcher import Dispatcher
from .errors import (
    VolaCallbackError,
    VolaCallbackTimeout,
    VolaClosedError,
    VolaConnectionError,
    VolaError,
    VolaHandshakeError,
    VolaPrivilegeError,
    VolaProtocolError,
    VolaRateLimitError,
    VolaResponseError,
    VolaTimeout,
    VolaValidationError,
)
from .file import File, derive_file
from .http import VolaHttpClient
from .many import VolaRooms
from .message import Message, MessageFlags, Role, derive_message
from .protocol import (
    build_ack_frame,
    build_call_frame,
    build_close_frame,
    parse_call_frame,
    parse_frame,
)
from .room import ConnectionState, RoleFlags, UploadKey, UploadResult, VolaRoom
from .sequencer import Sequencer
from .transport import VolaWsClient, VolaWsMessage, VolaWsMessageType

__all__ = [
    "CallbackRegistry",
    "ConnectionState",
    "Dispatcher",
    "EventBus",
    "File",
    "Message",
    "MessageFlags",
    "Role",
    "RoleFlags",
    "RoomConfig",
    "Sequencer",
    "SessionOptions",
    "UploadKey",
    "UploadResult",
    "VolaCallbackError",
    "VolaCallbackTimeout",
    "VolaClosedError",
    "VolaConnectionError",
    "VolaError",
    "VolaHandshakeError",
    "VolaHttpClient",
    "VolaPrivilegeError",
    "VolaProtocolError",
    "VolaRateLimitError",
    "VolaResponseError",
    "VolaRoom",
    "VolaRooms",
    "VolaTimeout",
    "VolaValidationError",
    "VolaWsClient",
    "VolaWsMessage",
    "VolaWsMessageType",
    "__version__",
    "build_ack_frame",
    "build_call_frame",
    "build_close_frame",
    "derive_file",
    "derive_message",
    "parse_call_frame",
    "parse_frame",
]
