"""Input validation helpers shared by rooms and entities."""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import urlparse

from .errors import VolaValidationError

MIN_NICK = 3
MAX_NICK = 12

_RE_EXTRACT_ID = re.compile(r"^/r/([a-z0-9_-]+)$", re.IGNORECASE)
_RE_MATCH_ID = re.compile(r"^[a-z0-9_-]+$", re.IGNORECASE)
_RE_NICK = re.compile(r"^[a-zA-Z0-9]+$")


def parse_room_id(value: str | None) -> str | None:
    """Extract a room id from an id, a ``/r/<id>`` path or a full room URL."""
    if not value:
        return None
    parsed = urlparse(value)
    if parsed.scheme and parsed.netloc:
        match = _RE_EXTRACT_ID.match(parsed.path or "")
        if not match:
            raise VolaValidationError("Not a valid room URL")
        return match.group(1)
    match = _RE_EXTRACT_ID.match(value)
    if match:
        return match.group(1)
    if not _RE_MATCH_ID.match(value):
        raise VolaValidationError("Not a valid room ID")
    return value


def verify_nick(nick: Any, max_length: int = MAX_NICK) -> str:
    """Validate a nickname against the server's alias rules."""
    if not isinstance(nick, str):
        raise VolaValidationError("Nicknames have to be string")
    if len(nick) < MIN_NICK:
        raise VolaValidationError(f"Nicknames have to be at least {MIN_NICK} chars long")
    if len(nick) > max_length:
        raise VolaValidationError(f"Nicknames have to be at most {max_length} chars long")
    if not _RE_NICK.match(nick):
        raise VolaValidationError("Nickname contains invalid characters")
    return nick


def to_ban_spec(spec: Any) -> list[dict[str, Any]]:
    """Normalize an ip string, a spec mapping or a list of specs."""
    if not spec:
        raise VolaValidationError("No spec provided")
    if isinstance(spec, str):
        spec = {"ip": spec}
    if isinstance(spec, Mapping):
        spec = [spec]
    specs = [dict(s) for s in spec]
    for entry in specs:
        if not any(v is not None for v in entry.values()):
            raise VolaValidationError("Empty spec provided")
    return [{k: v for k, v in entry.items() if v is not None} for entry in specs]


def to_id_list(ids: str | Iterable[str]) -> list[str]:
    """Accept a single id or an iterable of ids."""
    if isinstance(ids, str):
        return [ids]
    result = list(ids)
    if not result:
        raise VolaValidationError("No ids provided")
    return result


def minutes_to_seconds(minutes: float) -> int:
    """Convert a timeout duration, rejecting anything not strictly positive."""
    try:
        seconds = math.floor(60 * float(minutes))
    except (TypeError, ValueError, OverflowError) as err:
        raise VolaValidationError("Invalid timeout duration") from err
    if seconds <= 0:
        raise VolaValidationError("Invalid timeout duration")
    return seconds
