"""Drive one consumer across several rooms."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from .bus import Handler
from .config import SessionOptions
from .errors import VolaConnectionError, VolaValidationError
from .room import VolaRoom
from .util import verify_nick

_LOGGER = logging.getLogger(__name__)

# Room used to log in before the real rooms are created
BASE_ROOM = "BEEPi"


class VolaRooms:
    """A set of rooms sharing one login.

    Usage:
        rooms = VolaRooms(["BEEPi", {"room": "other", "password": "pw"}], "mynick")
        await rooms.init(password="secret")
        rooms.on("chat", lambda room, msg: print(room, msg))
        await rooms.connect()
        await rooms.run()
    """

    def __init__(
        self,
        rooms: Iterable[str | Mapping[str, Any]],
        nick: str,
        *,
        options: SessionOptions | None = None,
        room_factory: Callable[..., VolaRoom] = VolaRoom,
    ) -> None:
        self.nick = verify_nick(nick)
        self.options = options
        self._room_factory = room_factory
        self._specs = [
            {"room": spec} if isinstance(spec, str) else dict(spec) for spec in rooms
        ]
        if not self._specs:
            raise VolaValidationError("No room ids given")
        self.base_room: VolaRoom | None = None
        self.rooms: list[VolaRoom] = []

    async def init(self, password: str | None = None) -> None:
        """Log in (when a password is given) and create the rooms."""
        base = self._room_factory(BASE_ROOM, self.nick, options=self.options)
        if password:
            await base.login(password)
        self.base_room = base
        self.rooms = [self._make_room(spec, base) for spec in self._specs]

    def _make_room(self, spec: dict[str, Any], other: VolaRoom) -> VolaRoom:
        spec = dict(spec)
        room = spec.pop("room")
        nick = spec.pop("nick", None) or self.nick
        spec.setdefault("options", self.options)
        return self._room_factory(room, nick, other=other, **spec)

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe to ``event`` in every room; handlers get the room first."""
        if not self.rooms:
            raise VolaConnectionError("Rooms are not initialised")
        removers = [
            room.on(event, functools.partial(handler, room)) for room in self.rooms
        ]

        def remove() -> None:
            for remover in removers:
                remover()

        return remove

    async def connect(self) -> None:
        await asyncio.gather(*(room.connect() for room in self.rooms))

    async def run(self) -> None:
        """Run until the first room closes, then close all of them."""
        tasks = [asyncio.create_task(room.run()) for room in self.rooms]
        try:
            done, pending = await asyncio.wait(
                tasks, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                task.result()
        finally:
            await self.close()
            self.rooms = []

    async def close(self) -> None:
        rooms = list(self.rooms)
        if self.base_room is not None:
            rooms.append(self.base_room)
        results = await asyncio.gather(
            *(room.close() for room in rooms), return_exceptions=True
        )
        for room, result in zip(rooms, results):
            if isinstance(result, Exception):
                _LOGGER.debug("[%s] Error while closing: %s", room.id, result)
