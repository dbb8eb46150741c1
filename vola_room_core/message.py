"""Chat message entities derived from ``chat`` envelopes."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

_RE_REPORTER = re.compile(r" \((\d+\.\d+\.\d+\.\d+)\)")


class Role(Enum):
    """Author classification, in priority order."""

    SYSTEM = "system"
    ADMIN = "admin"
    STAFF = "staff"
    USER = "user"
    WHITE = "white"


_ROLE_SIGILS = {
    Role.SYSTEM: "💻",
    Role.ADMIN: "@",
    Role.STAFF: "%",
    Role.USER: "+",
    Role.WHITE: "",
}


@dataclass(frozen=True)
class MessageFlags:
    """Author flags as sent in the ``options`` of a chat envelope."""

    owner: bool = False
    janitor: bool = False
    donator: bool = False
    pro: bool = False
    user: bool = False
    staff: bool = False
    admin: bool = False

    @classmethod
    def from_options(cls, options: Mapping[str, Any] | None) -> MessageFlags:
        options = options or {}
        return cls(
            owner=bool(options.get("owner")),
            janitor=bool(options.get("janitor")),
            donator=bool(options.get("donator") or options.get("donor")),
            pro=bool(options.get("pro")),
            user=bool(options.get("user")),
            staff=bool(options.get("staff")),
            admin=bool(options.get("admin")),
        )

    @property
    def purple(self) -> bool:
        return self.admin or self.staff

    @property
    def green(self) -> bool:
        return self.user

    @property
    def system(self) -> bool:
        return self.purple and not self.user

    @property
    def white(self) -> bool:
        return not self.purple and not self.green


def classify_role(flags: MessageFlags) -> Role:
    """Map author flags onto exactly one role."""
    if flags.system:
        return Role.SYSTEM
    if flags.admin:
        return Role.ADMIN
    if flags.staff:
        return Role.STAFF
    if flags.green:
        return Role.USER
    return Role.WHITE


@dataclass(frozen=True)
class FlattenedMessage:
    """Message text plus the references collected while flattening it."""

    text: str
    files: tuple[str, ...] = ()
    rooms: tuple[str, ...] = ()
    urls: tuple[str, ...] = ()


def flatten_parts(parts: list[Mapping[str, Any]] | None) -> FlattenedMessage:
    """Join message parts into one string, collecting file/room/url references."""
    pieces: list[str] = []
    files: list[str] = []
    rooms: list[str] = []
    urls: list[str] = []
    for part in parts or ():
        kind = part.get("type")
        if kind in ("text", "raw"):
            piece = part.get("value")
        elif kind == "break":
            piece = "\n"
        elif kind == "file":
            files.append(part["id"])
            piece = f"@{part['id']}"
        elif kind == "room":
            rooms.append(part["id"])
            piece = f"#{part['id']}"
        elif kind == "url":
            urls.append(part["href"])
            piece = part.get("text")
        else:
            piece = None
        if piece:
            pieces.append(piece)
    return FlattenedMessage("".join(pieces), tuple(files), tuple(rooms), tuple(urls))


@dataclass(frozen=True)
class Message:
    """Somebody said something."""

    nick: str | None
    message: str
    role: Role
    flags: MessageFlags = field(default_factory=MessageFlags)
    is_self: bool = False
    id: str | None = None
    ip: str | None = None
    channel: str = ""
    files: tuple[str, ...] = ()
    rooms: tuple[str, ...] = ()
    urls: tuple[str, ...] = ()
    is_report: bool = False

    @property
    def system(self) -> bool:
        return self.role is Role.SYSTEM

    @property
    def white(self) -> bool:
        return self.flags.white

    @property
    def ban_spec(self) -> dict[str, Any]:
        """Target for banning the author of this message."""
        if not self.white and not self.system:
            return {"user": self.nick, "ip": self.ip}
        return {"ip": self.ip}

    @property
    def prefix(self) -> str:
        prefix = ""
        if self.flags.owner:
            prefix += "👑"
        elif self.flags.janitor:
            prefix += "👳🏿"
        if self.flags.pro:
            prefix += "⭑"
        return prefix + _ROLE_SIGILS[self.role]

    def __str__(self) -> str:
        chan = f" ({self.channel})" if self.channel else ""
        return f"<Message({self.prefix}{self.nick}{chan}, {self.message})>"


def derive_message(data: Mapping[str, Any]) -> Message:
    """Build a Message from the payload of a ``chat`` envelope."""
    extra = data.get("data") or {}
    flags = MessageFlags.from_options(data.get("options"))
    role = classify_role(flags)
    parts = data.get("message") or []
    flat = flatten_parts(parts)
    nick = data.get("nick") or None
    ip = extra.get("ip")

    is_report = bool(
        role is Role.SYSTEM
        and nick == "Log"
        and parts
        and parts[0].get("href") == "/reports"
    )
    if is_report and len(parts) > 1:
        match = _RE_REPORTER.search(str(parts[1].get("value", "")))
        if match:
            ip = match.group(1)

    return Message(
        nick=nick,
        message=flat.text,
        role=role,
        flags=flags,
        is_self=bool(extra.get("self", False)),
        id=extra.get("id"),
        ip=ip,
        channel=extra.get("channel") or "",
        files=flat.files,
        rooms=flat.rooms,
        urls=flat.urls,
        is_report=is_report,
    )
