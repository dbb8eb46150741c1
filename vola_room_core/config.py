"""Client tunables and the server-supplied room configuration."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .util import MAX_NICK

DEFAULT_SITE = "volafile.org"
USER_AGENT = "vola-room-core/0.1.0"
DEFAULT_MAX_MESSAGE_LENGTH = 300


@dataclass(frozen=True)
class SessionOptions:
    """Tunables for a room session.

    Attributes:
        site: Host serving the REST API and the websocket endpoint
        ack_threshold: Unacknowledged server envelopes before an ack is flushed
        callback_timeout: Seconds before a callback call fails (no response)
        close_timeout: Seconds to wait for the close frame to go out
        connect_retry_delay: Linear backoff base for 5xx handshake failures
        rest_retry_delay: Linear backoff base for 5xx REST responses
        rest_max_attempts: REST attempts before giving up (None retries forever)
        ready_timeout: Seconds to wait for the initial file list (None waits forever)
        ping_interval: Keepalive interval used until the server announces one
        pong_timeout: Seconds to wait for a pong before the session is dropped
        wait_file_timeout: Default timeout for ``wait_file``
        user_agent: User-Agent sent with every request
    """

    site: str = DEFAULT_SITE
    ack_threshold: int = 10
    callback_timeout: float = 30.0
    close_timeout: float = 10.0
    connect_retry_delay: float = 0.2
    rest_retry_delay: float = 0.1
    rest_max_attempts: int | None = None
    ready_timeout: float | None = 30.0
    ping_interval: float = 25.0
    pong_timeout: float = 20.0
    wait_file_timeout: float = 10.0
    user_agent: str = USER_AGENT


class RoomConfig:
    """Room configuration as reported by ``getRoomConfig`` and config envelopes."""

    def __init__(self, site: str = DEFAULT_SITE) -> None:
        self._values: dict[str, Any] = {"site": site}
        self.loaded = False
        self.janitors: set[str] = set()

    def update(self, config: Mapping[str, Any] | None = None) -> None:
        config = dict(config or {})
        if not config.get("password"):
            # The server reports an empty password for unprotected rooms
            config.pop("password", None)
        self._values.update(config)
        if "janitors" in config:
            self.janitors = {str(j).lower() for j in config["janitors"] or ()}
        self.loaded = True

    @property
    def site(self) -> str:
        return self._values["site"]

    @property
    def room_id(self) -> str | None:
        return self._values.get("room_id")

    @property
    def custom_room_id(self) -> str | None:
        return self._values.get("custom_room_id")

    @property
    def checksum(self) -> str | None:
        return self._values.get("checksum2")

    @property
    def name(self) -> str | None:
        return self._values.get("name")

    @property
    def motd(self) -> str | None:
        return self._values.get("motd")

    @property
    def adult(self) -> bool:
        return bool(self._values.get("adult", False))

    @property
    def disabled(self) -> bool:
        return bool(self._values.get("disabled", False))

    @property
    def file_ttl(self) -> Any:
        return self._values.get("file_ttl")

    @property
    def max_message_length(self) -> int:
        return int(self._values.get("chat_max_message_length") or DEFAULT_MAX_MESSAGE_LENGTH)

    @property
    def max_alias_length(self) -> int:
        return int(self._values.get("chat_max_alias_length") or MAX_NICK)
