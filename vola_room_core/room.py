"""Room session manager.

A VolaRoom owns one websocket session to one room. It handles:
- Connection lifecycle, including retries of overloaded handshakes
- Sequencing of outbound calls and acknowledgement of inbound envelopes
- Routing of inbound envelopes to session state and observers
- Correlated calls (``call_with_result``)
- Room operations: chat, moderation, config changes, uploads

Observers subscribe through ``room.on(event, handler)``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import itertools
import json
import logging
import random
import time
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

import aiohttp

from .bus import EventBus, Handler
from .callbacks import CallbackRegistry
from .config import RoomConfig, SessionOptions
from .dispatcher import Dispatcher
from .errors import (
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
from .http import (
    ACCESS_DENIED,
    OK,
    UPLOAD_CHUNK_SIZE,
    ProgressCallback,
    VolaHttpClient,
    response_error,
)
from .message import derive_message
from .protocol import InitialPayload, encode_frame
from .sequencer import Sequencer
from .transport import VolaWsClient, VolaWsMessageType
from .util import minutes_to_seconds, parse_room_id, to_ban_spec, to_id_list, verify_nick

_LOGGER = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle of a room session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    SUBSCRIBED = "subscribed"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"
    ERRORED = "errored"


_STATE_EVENTS = {
    ConnectionState.OPEN: "open",
    ConnectionState.SUBSCRIBED: "subscribed",
    ConnectionState.CONNECTED: "connected",
}

_CALLABLE_STATES = (ConnectionState.SUBSCRIBED, ConnectionState.CONNECTED)
_FINAL_STATES = (
    ConnectionState.CLOSING,
    ConnectionState.CLOSED,
    ConnectionState.ERRORED,
)


@dataclass(frozen=True)
class RoleFlags:
    """Roles the server granted to this session."""

    owner: bool = False
    admin: bool = False
    staff: bool = False
    janitor: bool = False

    @property
    def privileged(self) -> bool:
        """Janitor-level: may delete files and time users out."""
        return self.owner or self.admin or self.janitor

    @property
    def owner_level(self) -> bool:
        """May change protected config, ownership and janitors."""
        return self.owner or self.admin


@dataclass(frozen=True)
class UploadKey:
    """Authorization to upload one file."""

    key: str
    server: str
    file_id: str


@dataclass(frozen=True)
class UploadResult:
    """Id assigned by the server and the local md5 of the uploaded body."""

    id: str
    checksum: str


async def _read_chunks(path: Path, checksum: Any) -> AsyncIterator[bytes]:
    """Read ``path`` in upload-sized chunks off the event loop, feeding ``checksum``."""
    with path.open("rb") as fp:
        while True:
            chunk = await asyncio.to_thread(fp.read, UPLOAD_CHUNK_SIZE)
            if not chunk:
                return
            checksum.update(chunk)
            yield chunk


class VolaRoom:
    """Session with a single room.

    Usage:
        async with VolaRoom("BEEPi", "mynick") as room:
            room.on("chat", print)
            room.chat("hello")
            await room.run()
    """

    def __init__(
        self,
        room: str,
        nick: str | None = None,
        *,
        password: str | None = None,
        key: str | None = None,
        options: SessionOptions | None = None,
        other: VolaRoom | None = None,
        http: VolaHttpClient | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            room: Room id, ``/r/<id>`` path or full room URL
            nick: Nickname to chat with (taken from ``other`` when given)
            password: Room password
            key: Room key, used when no password is given
            options: Session tunables
            other: Room to share login state and the HTTP client with
            http: REST client to use instead of creating one
        """
        room_id = parse_room_id(room)
        if not room_id:
            raise VolaValidationError("No room id provided")

        self.options = options or SessionOptions()
        self.id = self.alias = room_id
        self.nick = verify_nick((other.nick if other else None) or nick)
        self.password = password or None
        self.key = key or None
        self.config = RoomConfig(self.options.site)

        self.bus = EventBus(room_id)
        self.sequencer = Sequencer(self.options.ack_threshold)
        self.callbacks = CallbackRegistry(self.options.callback_timeout)
        self.dispatcher = Dispatcher(
            room_id,
            self.sequencer,
            self.bus,
            on_initial=self._handle_initial,
            on_close=self._handle_close_envelope,
            flush_ack=self._flush_ack,
        )
        self._register_handlers()

        # Session state
        self.roles = RoleFlags()
        self.user_info: dict[str, Any] = {}
        self.session: str | None = other.session if other else None
        self.logged_in = False
        self.version: Any = None
        self.time_delta = 0.0
        self.users = 0
        self.error: BaseException | None = None
        self._files: dict[str, File] = {}
        self._file_waiters: set[asyncio.Future[Any]] = set()
        self._upload_count = 0
        self._config_counter = itertools.count()

        # HTTP
        self._other = other
        self._http = http
        self._http_session: aiohttp.ClientSession | None = None

        # Connection
        self._state = ConnectionState.DISCONNECTED
        self._handshaken = False
        self._ws: VolaWsClient | None = None
        self._outbox: asyncio.Queue[str] | None = None
        self._pong = asyncio.Event()
        self._writer_task: asyncio.Task[None] | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._closing_task: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[None] | None = None
        self._closed = asyncio.Event()

    def __str__(self) -> str:
        return f"<Room({self.id} ({self.alias}), {self.nick})>"

    # -------------------------------------------------------------------------
    # Public API: State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def closed(self) -> bool:
        return self._state is ConnectionState.CLOSED

    @property
    def url(self) -> str:
        return f"https://{self.config.site}/r/{self.alias}"

    @property
    def owner(self) -> bool:
        return self.roles.owner

    @property
    def admin(self) -> bool:
        return self.roles.admin

    @property
    def staff(self) -> bool:
        return self.roles.staff

    @property
    def janitor(self) -> bool:
        return self.roles.janitor

    @property
    def privileged(self) -> bool:
        return self.roles.privileged

    @property
    def http(self) -> VolaHttpClient:
        """REST client, shared with ``other`` when one was given."""
        if self._http is None:
            if self._other is not None:
                self._http = self._other.http
            else:
                self._http_session = aiohttp.ClientSession()
                self._http = VolaHttpClient(
                    self._http_session,
                    self.options.site,
                    user_agent=self.options.user_agent,
                    retry_delay=self.options.rest_retry_delay,
                    max_attempts=self.options.rest_max_attempts,
                )
        return self._http

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe to a room event. Returns a function removing the handler."""
        return self.bus.on(event, handler)

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect and wait until the initial file list arrived."""
        if self._state in _FINAL_STATES:
            raise VolaClosedError("Room is closed")
        if self._state is not ConnectionState.DISCONNECTED:
            raise VolaConnectionError("Room is already connecting")

        self._ready = asyncio.get_running_loop().create_future()
        for attempt in itertools.count(1):
            try:
                await self._open_connection()
                break
            except VolaHandshakeError as err:
                if not err.transient or self._closing:
                    await self._fail_connect(err)
                    raise
                delay = self.options.connect_retry_delay * attempt
                _LOGGER.warning(
                    "[%s] Server overloaded (%s), retrying in %.1fs (attempt %d)",
                    self.id,
                    err.status,
                    delay,
                    attempt,
                )
                # close() cuts the backoff short
                try:
                    await asyncio.wait_for(self._closed.wait(), delay)
                except TimeoutError:
                    continue
            except VolaError as err:
                await self._fail_connect(err)
                raise

        try:
            await asyncio.wait_for(self._ready, self.options.ready_timeout)
        except TimeoutError as err:
            _LOGGER.error("[%s] Room did not become ready in time", self.id)
            await self.close()
            raise VolaTimeout("Timed out waiting for the initial file list") from err
        _LOGGER.info("[%s] Connected as %s", self.id, self.nick)

    async def close(self) -> None:
        """Gracefully close the session."""
        if self._state is ConnectionState.CLOSED:
            return
        await asyncio.shield(self._begin_close())

    async def run(self) -> None:
        """Wait until the session closes, re-raising the error that closed it."""
        await self._closed.wait()
        if self.error is not None:
            raise self.error

    async def __aenter__(self) -> VolaRoom:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def ensure_config(self) -> None:
        """Fetch the room config once."""
        if self.config.loaded:
            return
        data = await self.http.get_room_config(self.id, referer=self.url)
        self._update_config(data)
        verify_nick(self.nick, self.config.max_alias_length)

    async def login(self, password: str) -> None:
        """Log in with the current nick and adopt the account session."""
        await self.ensure_config()
        data = await self.http.login(self.nick, password, referer=self.url)
        self.session = data.get("session")
        self.nick = data.get("nick") or self.nick
        _LOGGER.info("[%s] Logged in as %s", self.id, self.nick)
        if self._state in _CALLABLE_STATES:
            self.call("useSession", self.session)

    # -------------------------------------------------------------------------
    # Public API: Calls
    # -------------------------------------------------------------------------

    def call(self, fn: str, *args: Any) -> None:
        """Send a one-way call."""
        self._ensure_callable()
        frame = self.sequencer.next_call_frame(fn, list(args))
        _LOGGER.debug("[%s] Calling %s", self.id, fn)
        self._enqueue(frame)

    async def call_with_result(
        self, fn: str, *args: Any, timeout: float | None = None
    ) -> Any:
        """Send a call carrying a callback id and wait for its ``callback`` envelope."""
        self._ensure_callable()
        callback_id, future = self.callbacks.register(fn, timeout)
        try:
            self.call(fn, *args, callback_id)
        except VolaError:
            self.callbacks.discard(callback_id)
            raise
        return await future

    async def flush(self) -> None:
        """Wait until every queued frame was handed to the transport."""
        if self._outbox is not None:
            await self._outbox.join()

    # -------------------------------------------------------------------------
    # Public API: Chat
    # -------------------------------------------------------------------------

    def change_nick(self, nick: str) -> None:
        verify_nick(nick, self.config.max_alias_length)
        self.call("command", self.nick, "nick", nick)

    def chat(self, text: str, *, me: bool = False, admin: bool = False) -> None:
        """Say something, optionally as ``/me`` or as an admin chat."""
        if not isinstance(text, str):
            raise VolaValidationError("Not a string message")
        if not text:
            raise VolaValidationError("Empty message")
        if len(text) > self.config.max_message_length:
            raise VolaValidationError("Message too long")
        if admin:
            if not self.roles.admin and not self.roles.staff:
                raise VolaPrivilegeError("Cannot /achat")
            self.call("command", self.nick, "a", text)
        elif me:
            self.call("command", self.nick, "me", text)
        else:
            self.call("chat", self.nick, text)

    def report(self, reason: str = "") -> None:
        """Report this room."""
        self.call("submitReport", {"reason": reason})

    # -------------------------------------------------------------------------
    # Public API: Moderation
    # -------------------------------------------------------------------------

    def delete_files(self, ids: str | Iterable[str]) -> None:
        self._require_privileged()
        self.call("deleteFiles", to_id_list(ids))

    def whitelist_files(self, ids: str | Iterable[str]) -> None:
        self._require_admin()
        self.call("whitelistFiles", to_id_list(ids))

    def blacklist_files(
        self,
        ids: str | Iterable[str],
        *,
        hours: float,
        reason: str = "",
        ban: bool = False,
        hellban: bool = False,
        mute: bool = False,
    ) -> None:
        self._require_admin()
        if not hours or hours <= 0:
            raise VolaValidationError("Invalid BL duration")
        options = {
            "hours": hours,
            "reason": reason,
            "ban": ban,
            "hellban": hellban,
            "mute": mute,
        }
        self.call("blacklistFiles", to_id_list(ids), options)

    def remove_messages(self, ids: str | Iterable[str]) -> None:
        self._require_admin()
        self.call("removeMessages", to_id_list(ids))

    def ban(
        self,
        spec: Any,
        *,
        hours: float,
        reason: str = "",
        purge_files: bool = False,
        ban: bool = False,
        hellban: bool = False,
        mute: bool = False,
    ) -> None:
        """Ban users by ``{"user": ..., "ip": ...}`` spec, an ip or a list of specs."""
        self._require_admin()
        specs = to_ban_spec(spec)
        if not hours or hours <= 0:
            raise VolaValidationError("Invalid ban duration")
        if not (ban or hellban or mute or purge_files):
            raise VolaValidationError("You gotta do something to a moron")
        options = {
            "hours": hours,
            "reason": reason,
            "purgeFiles": purge_files,
            "ban": ban,
            "hellban": hellban,
            "mute": mute,
        }
        self.call("banUser", specs, options)

    def unban(
        self,
        spec: Any,
        *,
        reason: str = "",
        ban: bool = False,
        hellban: bool = False,
        mute: bool = False,
        timeout: bool = False,
    ) -> None:
        self._require_admin()
        specs = to_ban_spec(spec)
        if not (ban or hellban or mute or timeout):
            raise VolaValidationError("You gotta do something to a moron")
        options = {
            "reason": reason,
            "ban": ban,
            "hellban": hellban,
            "mute": mute,
            "timeout": timeout,
        }
        self.call("unbanUser", specs, options)

    def timeout_chat(self, message_id: str | None, minutes: float) -> None:
        """Time out the author of a chat message."""
        self._require_privileged()
        if not message_id:
            raise VolaValidationError("No message id")
        self.call("timeoutChat", message_id, minutes_to_seconds(minutes))

    def timeout_file(self, file_id: str, minutes: float) -> None:
        """Time out the uploader of a file, keeping the file."""
        self._require_privileged()
        if not file_id:
            raise VolaValidationError("No file id")
        self.call("timeoutFile", file_id, minutes_to_seconds(minutes))

    # -------------------------------------------------------------------------
    # Public API: Room Config
    # -------------------------------------------------------------------------

    async def set_config(self, key: str, value: Any) -> dict[str, Any]:
        """Change one room config value through the REST API."""
        self._require_privileged()
        return await self.http.set_room_config(
            self.id,
            self.session,
            json.dumps({key: value}),
            next(self._config_counter),
            referer=self.url,
        )

    async def set_motd(self, motd: str) -> dict[str, Any]:
        return await self.set_config("motd", motd)

    async def set_name(self, name: str) -> dict[str, Any]:
        return await self.set_config("name", name)

    async def set_adult(self, adult: bool) -> dict[str, Any]:
        return await self.set_config("adult", bool(adult))

    async def set_disabled(self, disabled: bool) -> dict[str, Any]:
        self._require_owner()
        return await self.set_config("disabled", bool(disabled))

    async def set_file_ttl(self, ttl: int) -> dict[str, Any]:
        self._require_owner()
        return await self.set_config("file_ttl", ttl)

    async def transfer_owner(self, new_owner: str) -> None:
        self._require_owner()
        new_owner = self._normalize_account(new_owner, "new_owner")
        await self.set_config("owner", new_owner)

    async def add_janitor(self, janitor: str) -> None:
        self._require_owner()
        janitor = self._normalize_account(janitor, "janitor")
        if janitor in self.config.janitors:
            return
        await self.set_config("janitors", sorted(self.config.janitors | {janitor}))
        self.config.janitors.add(janitor)

    async def remove_janitor(self, janitor: str) -> None:
        self._require_owner()
        janitor = self._normalize_account(janitor, "janitor")
        if janitor not in self.config.janitors:
            return
        await self.set_config("janitors", sorted(self.config.janitors - {janitor}))
        self.config.janitors.discard(janitor)

    # -------------------------------------------------------------------------
    # Public API: Files
    # -------------------------------------------------------------------------

    @property
    def files(self) -> list[File]:
        """Live files, without expired ones."""
        self._expire_files()
        return list(self._files.values())

    def get_file(self, file_id: str) -> File | None:
        file = self._files.get(file_id)
        if file is not None and file.expired:
            del self._files[file_id]
            return None
        return file

    async def wait_file(self, file_id: str, timeout: float | None = None) -> File | None:
        """Return a live file, waiting up to ``timeout`` seconds for it to appear.

        Returns None for a known but expired file. Raises VolaTimeout when the
        file does not show up in time; the session itself is unaffected.
        """
        file = self._files.get(file_id)
        if file is not None:
            if not file.expired:
                return file
            del self._files[file_id]
            return None
        if self._state in _FINAL_STATES:
            raise VolaClosedError("Room is closed")

        waiter = self.bus.wait_for(f"file-{file_id}")
        self._file_waiters.add(waiter)
        timeout = self.options.wait_file_timeout if timeout is None else timeout
        try:
            file, _snapshot = await asyncio.wait_for(waiter, timeout)
        except TimeoutError as err:
            raise VolaTimeout(f"File {file_id} did not appear within {timeout}s") from err
        finally:
            self._file_waiters.discard(waiter)
        return file

    async def file_info(self, file: File | str, *, force: bool = False) -> dict[str, Any]:
        """Extended file info (checksum, media details), cached on the file."""
        if isinstance(file, str):
            found = self.get_file(file)
            if found is None:
                raise VolaValidationError(f"Unknown file {file}")
            file = found
        if file.infos is not None and not force:
            return file.infos
        infos = dict(await self.call_with_result("getFileinfo", file.id) or {})
        infos.pop("id", None)
        file.infos = infos
        self.bus.emit("fileinfo", file, infos)
        self.bus.emit(f"fileinfo-{file.id}", file, infos)
        return infos

    # -------------------------------------------------------------------------
    # Public API: Uploads
    # -------------------------------------------------------------------------

    async def get_upload_key(self) -> UploadKey:
        """Acquire an upload key, sleeping through flood protection."""
        await self.ensure_config()
        while True:
            self._upload_count += 1
            params: dict[str, Any] = {
                "name": self.nick,
                "room": self.id,
                "c": self._upload_count,
            }
            if self.password:
                params["password"] = self.password
            elif self.key:
                params["roomKey"] = self.key
            data = await self.http.get_upload_key(params, referer=self.url)
            if not isinstance(data, dict):
                raise VolaResponseError(OK, "getUploadKey: unexpected response")
            if data.get("key") and data.get("server") and data.get("file_id"):
                return UploadKey(data["key"], data["server"], data["file_id"])

            error = response_error(data) or {}
            timeout = (error.get("info") or {}).get("timeout")
            if timeout:
                _LOGGER.info("[%s] Upload blocked for %sms", self.id, timeout)
                self.bus.emit("upload_blocked", timeout)
                await asyncio.sleep(timeout / 1000)
                continue
            message = (
                f"Failed to get upload key: {error.get('name')} / {error.get('message')}"
            )
            if error.get("code") == ACCESS_DENIED:
                raise VolaPrivilegeError(message, data=error)
            raise VolaResponseError(OK, message, code=error.get("code"))

    async def upload_file(
        self,
        data: bytes | str | None = None,
        *,
        path: str | Path | None = None,
        name: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> UploadResult:
        """Upload ``data`` (or the file at ``path``) to this room.

        Files are streamed from disk. ``progress`` is called as
        ``progress(delta, sent, total, server)`` while the body goes out.
        """
        if data is None and path is None:
            raise VolaValidationError("Need to provide data or a path")
        if progress is not None and not callable(progress):
            raise VolaValidationError("progress must be callable")
        if not name:
            if path is None:
                raise VolaValidationError("No name or path provided")
            name = Path(path).name

        checksum = hashlib.md5()
        body: bytes | AsyncIterator[bytes]
        if data is None and path is not None:
            path = Path(path)
            if not path.is_file():
                raise VolaValidationError(f"No such file: {path}")
            size = path.stat().st_size
            body = _read_chunks(path, checksum)
        else:
            if isinstance(data, str):
                data = data.encode("utf-8")
            checksum.update(data)
            size = len(data)
            body = data

        upload_key = await self.get_upload_key()
        params: dict[str, Any] = {
            "room": self.id,
            "key": upload_key.key,
            "filename": name,
        }
        if self.password:
            params["password"] = self.password
        elif self.key:
            params["roomKey"] = self.key
        _LOGGER.debug(
            "[%s] Uploading %s (%d bytes) to %s", self.id, name, size, upload_key.server
        )
        await self.http.upload(
            upload_key.server,
            params,
            name,
            body,
            size=size,
            progress=progress,
            referer=self.url,
        )
        return UploadResult(upload_key.file_id, checksum.hexdigest())

    # -------------------------------------------------------------------------
    # Internal: Connection State Machine
    # -------------------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        old = self._state
        if old is state:
            return
        if old is ConnectionState.CLOSED:
            _LOGGER.debug("[%s] Ignoring %s on a closed session", self.id, state.value)
            return
        _LOGGER.debug("[%s] State: %s → %s", self.id, old.value, state.value)
        self._state = state
        self.bus.emit("state", state, old)
        if state is ConnectionState.CONNECTED and self._ready and not self._ready.done():
            self._ready.set_result(None)
        event = _STATE_EVENTS.get(state)
        if event:
            self.bus.emit(event)

    async def _open_connection(self) -> None:
        self._raise_if_closing()
        self._set_state(ConnectionState.CONNECTING)
        await self.ensure_config()
        self._raise_if_closing()

        url = self._build_url()
        _LOGGER.info("[%s] Connecting to %s", self.id, self.config.site)
        ws = VolaWsClient()
        await ws.connect(
            url,
            headers={"Cookie": self.http.cookie_header, "Referer": self.url},
            origin=f"https://{self.config.site}",
            user_agent=self.options.user_agent,
        )
        if self._closing:
            await ws.close()
            raise VolaClosedError("Room was closed while connecting")
        self._ws = ws
        self._outbox = asyncio.Queue()
        self._set_state(ConnectionState.OPEN)

        self._writer_task = asyncio.create_task(self._write_loop(ws, self._outbox))
        self._listen_task = asyncio.create_task(self._listen(ws))
        self._keepalive_task = asyncio.create_task(self._keepalive(ws))

    def _build_url(self) -> str:
        params: dict[str, Any] = {
            "EIO": 3,
            "transport": "websocket",
            "room": self.id,
            "cs": self.config.checksum or "",
            "nick": self.nick,
            "rn": random.random(),
        }
        if self.password:
            params["password"] = self.password
        elif self.key:
            params["key"] = self.key
        return f"wss://{self.config.site}/api/?{urlencode(params)}"

    async def _fail_connect(self, err: VolaError) -> None:
        ready = self._ready
        if ready is not None and not ready.cancel() and not ready.cancelled():
            # connect() raises err itself
            ready.exception()
        self._abort(err)
        await self.close()

    def _abort(self, err: BaseException) -> None:
        """Record a fatal session error and start closing."""
        if self._closing:
            _LOGGER.debug("[%s] Ignoring error while closing: %s", self.id, err)
            return
        _LOGGER.error("[%s] Session failed: %s", self.id, err)
        self.error = err
        self._set_state(ConnectionState.ERRORED)
        self.bus.emit("error", err)
        self._begin_close()

    def _begin_close(self) -> asyncio.Task[None]:
        if self._closing_task is None:
            self._closing_task = asyncio.create_task(self._close())
        return self._closing_task

    async def _close(self) -> None:
        if self._state is not ConnectionState.ERRORED:
            self._set_state(ConnectionState.CLOSING)
        _LOGGER.info("[%s] Closing session", self.id)

        writer_alive = self._writer_task is not None and not self._writer_task.done()
        if self._handshaken and writer_alive and self._outbox is not None:
            self._enqueue(self.sequencer.next_close_frame())
            try:
                await asyncio.wait_for(self._outbox.join(), self.options.close_timeout)
            except TimeoutError:
                _LOGGER.warning("[%s] Timed out sending close", self.id)

        await self._teardown()

    async def _teardown(self) -> None:
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._writer_task, self._listen_task, self._keepalive_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._ws is not None:
            ws, self._ws = self._ws, None
            try:
                await asyncio.wait_for(ws.close(), timeout=2.0)
            except TimeoutError:
                _LOGGER.warning("[%s] WebSocket close timed out", self.id)

        closed = VolaClosedError("Room closed")
        self.callbacks.cancel_all(closed)
        for waiter in self._file_waiters:
            if not waiter.done():
                waiter.set_exception(closed)
        self._file_waiters.clear()
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(self.error or closed)

        self._set_state(ConnectionState.CLOSED)
        self.bus.emit("close")
        self.bus.clear()

        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._closed.set()
        _LOGGER.info("[%s] Session closed", self.id)

    # -------------------------------------------------------------------------
    # Internal: Transport
    # -------------------------------------------------------------------------

    @property
    def _closing(self) -> bool:
        return self._closing_task is not None or self._state in _FINAL_STATES

    def _raise_if_closing(self) -> None:
        if self._closing:
            raise VolaClosedError("Room was closed while connecting")

    def _ensure_callable(self) -> None:
        if self._state in _FINAL_STATES:
            raise VolaClosedError("Room is closed")
        if self._state not in _CALLABLE_STATES:
            raise VolaConnectionError("Room is not connected")

    def _enqueue(self, frame: list[Any]) -> None:
        if self._outbox is None:
            raise VolaConnectionError("Room is not connected")
        self._outbox.put_nowait(encode_frame(frame))

    def _flush_ack(self) -> None:
        if self._outbox is None or self._state is ConnectionState.CLOSED:
            return
        frame = self.sequencer.take_ack_frame()
        if frame is not None:
            self._enqueue(frame)

    async def _write_loop(self, ws: VolaWsClient, outbox: asyncio.Queue[str]) -> None:
        """Hand queued frames to the transport in order."""
        while True:
            raw = await outbox.get()
            try:
                await ws.send_message(raw)
            except VolaConnectionError as err:
                self._drain(outbox)
                self._abort(err)
                return
            finally:
                outbox.task_done()

    @staticmethod
    def _drain(outbox: asyncio.Queue[str]) -> None:
        while not outbox.empty():
            outbox.get_nowait()
            outbox.task_done()

    async def _listen(self, ws: VolaWsClient) -> None:
        """Process transport events strictly in arrival order."""
        async for msg in ws:
            if msg.type is VolaWsMessageType.TEXT:
                self.dispatcher.on_raw_message(msg.data)
            elif msg.type is VolaWsMessageType.PING:
                self._flush_ack()
            elif msg.type is VolaWsMessageType.PONG:
                self._pong.set()
            elif msg.type is VolaWsMessageType.OPEN:
                _LOGGER.debug("[%s] Transport open: %s", self.id, msg.data)
            elif msg.type is VolaWsMessageType.CLOSED:
                _LOGGER.info("[%s] Transport closed: %s", self.id, msg.data)
                self._begin_close()
                return
            elif msg.type is VolaWsMessageType.ERROR:
                self._abort(VolaConnectionError(f"Transport error: {msg.data}"))
                return

    async def _keepalive(self, ws: VolaWsClient) -> None:
        """Ping the server, flushing acks, and drop the session without pongs."""
        while True:
            await asyncio.sleep(ws.ping_interval or self.options.ping_interval)
            self._pong.clear()
            self._flush_ack()
            try:
                await ws.send_ping()
            except VolaConnectionError as err:
                self._abort(err)
                return
            try:
                await asyncio.wait_for(self._pong.wait(), self.options.pong_timeout)
            except TimeoutError:
                self._abort(VolaTimeout("No pong from server"))
                return

    # -------------------------------------------------------------------------
    # Internal: Envelope Handlers
    # -------------------------------------------------------------------------

    def _register_handlers(self) -> None:
        handlers: dict[str, Callable[[Any], None]] = {
            "callback": self._handle_callback,
            "userInfo": self._handle_user_info,
            "owner": self._handle_role("owner"),
            "admin": self._handle_role("admin"),
            "staff": self._handle_role("staff"),
            "session": self._handle_session,
            "login": self._handle_login,
            "time": self._handle_time,
            "subscribed": self._handle_subscribed,
            "key": self._handle_key,
            "401": self._handle_401,
            "429": self._handle_429,
            "chat_name": self._handle_chat_name,
            "chat": self._handle_chat,
            "files": self._handle_files,
            "delete_file": self._handle_delete_file,
            "user_count": self._handle_user_count,
            "userCount": self._handle_user_count,
            "config": self._handle_config,
            "changed_config": self._handle_changed_config,
        }
        for name, handler in handlers.items():
            self.dispatcher.register(name, handler)

    def _handle_initial(self, payload: InitialPayload) -> None:
        self.version = payload.version
        self.sequencer.reset_outbound(payload.ack)
        self._handshaken = True
        self._set_state(ConnectionState.SUBSCRIBED)
        if self.session:
            self.call("useSession", self.session)
        else:
            self.session = payload.session

    def _handle_close_envelope(self) -> None:
        _LOGGER.info("[%s] Server closed the session", self.id)
        self._begin_close()

    def _handle_callback(self, data: Any) -> None:
        if not self.callbacks.resolve(data):
            _LOGGER.debug("[%s] Unmatched callback %.200r", self.id, data)

    def _handle_user_info(self, data: dict[str, Any]) -> None:
        self.user_info.update(data)
        if data.get("nick"):
            self.nick = data["nick"]
        self.roles = RoleFlags(
            owner=bool(self.user_info.get("owner")),
            admin=bool(self.user_info.get("admin")),
            staff=bool(self.user_info.get("staff")),
            janitor=bool(self.user_info.get("janitor")),
        )
        for role in ("owner", "janitor", "admin", "staff"):
            self.dispatcher.repost(role, getattr(self.roles, role), expected=True)
        self.dispatcher.repost("userInfo", self.user_info, expected=True)

    def _handle_role(self, role: str) -> Callable[[Any], None]:
        def handle(data: dict[str, Any]) -> None:
            value = bool(data.get(role, False))
            self.roles = dataclasses.replace(self.roles, **{role: value})
            self.dispatcher.repost(role, value, expected=True)

        return handle

    def _handle_session(self, data: str) -> None:
        self.session = data
        self.dispatcher.repost("session", data, expected=True)

    def _handle_login(self, data: Any) -> None:
        self.logged_in = True
        self.dispatcher.repost("login", data, expected=True)

    def _handle_time(self, data: float) -> None:
        self.time_delta = data / 1000 - time.time()
        self.dispatcher.repost("time", data, expected=True)

    def _handle_subscribed(self, _data: Any) -> None:
        _LOGGER.debug("[%s] Subscription confirmed", self.id)

    def _handle_key(self, data: str) -> None:
        self.key = data

    def _handle_401(self, data: Any) -> None:
        self._abort(VolaPrivilegeError(data=data))

    def _handle_429(self, data: Any) -> None:
        self._abort(VolaRateLimitError(timeout=data))

    def _handle_chat_name(self, data: str | None) -> None:
        self.nick = data or self.nick

    def _handle_chat(self, data: dict[str, Any]) -> None:
        self.bus.emit("chat", derive_message(data))

    def _handle_files(self, data: dict[str, Any]) -> None:
        snapshot = bool(data.get("set", False))
        if snapshot:
            self._files.clear()
        for row in data.get("files") or ():
            try:
                file = derive_file(row, time_delta=self.time_delta, site=self.config.site)
            except VolaProtocolError as err:
                _LOGGER.warning("[%s] %s", self.id, err)
                continue
            self._files[file.id] = file
            self.bus.emit("file", file, snapshot)
            self.bus.emit(f"file-{file.id}", file, snapshot)
            _LOGGER.debug("[%s] File %s valid for %.0fs", self.id, file.id, file.valid_for)
        if snapshot:
            if self._state is ConnectionState.SUBSCRIBED:
                self._set_state(ConnectionState.CONNECTED)
            self.bus.emit("received_files")

    def _handle_delete_file(self, data: str) -> None:
        self._files.pop(data, None)
        self.bus.emit("delete_file", data)

    def _handle_user_count(self, data: int) -> None:
        self.users = data
        self.bus.emit("users", data)

    def _handle_config(self, data: dict[str, Any]) -> None:
        self._update_config(data)
        for key, value in data.items():
            self.bus.emit("config", {"key": key, "value": value})
            self.bus.emit(f"config_{key}", value)

    def _handle_changed_config(self, data: dict[str, Any]) -> None:
        key, value = data["key"], data.get("value")
        self._update_config({key: value})
        self.bus.emit("config", {"key": key, "value": value})
        self.bus.emit(f"config_{key}", value)

    # -------------------------------------------------------------------------
    # Internal: Helpers
    # -------------------------------------------------------------------------

    def _update_config(self, data: dict[str, Any]) -> None:
        self.config.update(data)
        if self.config.room_id:
            self.id = self.config.room_id
        if self.config.custom_room_id:
            self.alias = self.config.custom_room_id

    def _expire_files(self) -> None:
        expired = [fid for fid, file in self._files.items() if file.expired]
        for fid in expired:
            del self._files[fid]

    def _require_privileged(self) -> None:
        if not self.roles.privileged:
            raise VolaPrivilegeError()

    def _require_owner(self) -> None:
        if not self.roles.owner_level:
            raise VolaPrivilegeError()

    def _require_admin(self) -> None:
        if not self.roles.admin:
            raise VolaPrivilegeError()

    @staticmethod
    def _normalize_account(name: str | None, what: str) -> str:
        name = (name or "").strip().lower()
        if not name:
            raise VolaValidationError(f"{what} may not be empty")
        return name
