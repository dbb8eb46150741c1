"""File entities derived from ``files`` envelopes."""

from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

from .config import DEFAULT_SITE
from .errors import VolaProtocolError


def fix_time(server_ms: float | None, time_delta: float) -> float | None:
    """Convert a server epoch-milliseconds timestamp into local epoch seconds."""
    if server_ms is None:
        return None
    return server_ms / 1000 - time_delta


@dataclass(eq=False)
class File:
    """A file living in a room.

    ``expires`` and ``uploaded`` are local epoch seconds, already corrected
    by the room's clock delta. Only ``infos`` changes after construction.
    """

    id: str
    name: str
    type: str
    size: int
    expires: float
    uploaded: float | None = None
    tags: dict[str, Any] = field(default_factory=dict)
    assets: dict[str, Any] = field(default_factory=dict)
    site: str = DEFAULT_SITE
    infos: dict[str, Any] | None = None

    @property
    def uploader(self) -> str:
        return self.tags.get("user") or self.tags.get("nick") or ""

    @property
    def from_account(self) -> bool:
        return bool(self.tags.get("user"))

    @property
    def ip(self) -> str | None:
        return self.tags.get("ip")

    @property
    def valid_for(self) -> float:
        """Seconds until expiry; negative once expired."""
        return self.expires - time.time()

    @property
    def expired(self) -> bool:
        return self.valid_for < 0

    @property
    def url(self) -> str:
        return f"https://{self.site}/get/{self.id}/{quote(self.name)}"

    def get_asset(self, kind: str) -> str | None:
        asset = self.assets.get(kind)
        if not asset:
            return None
        return f"https://{self.site}/asset/{asset}/{self.id}"

    @property
    def thumb(self) -> str | None:
        return self.get_asset("thumb") or self.get_asset("video_thumb")

    @property
    def ban_spec(self) -> dict[str, Any]:
        """Target for banning the uploader of this file."""
        if self.from_account:
            return {"user": self.uploader}
        return {"ip": self.ip}

    def __str__(self) -> str:
        plus = "+" if self.from_account else ""
        return f"<File({plus}{self.uploader}, {self.id}, {self.name})>"


def derive_file(
    data: Sequence[Any], *, time_delta: float = 0.0, site: str = DEFAULT_SITE
) -> File:
    """Build a File from one ``[id, name, type, size, expires, uploaded, tags, assets]`` row."""
    if isinstance(data, Mapping) or len(data) < 5:
        raise VolaProtocolError(f"Malformed file entry: {data!r:.200}")
    row = list(data) + [None] * (8 - len(data))
    file_id, name, kind, size, expires, uploaded, tags, assets = row[:8]
    return File(
        id=str(file_id),
        name=name or "",
        type=kind or "",
        size=int(size or 0),
        expires=fix_time(expires or 0, time_delta),
        uploaded=fix_time(uploaded, time_delta),
        tags=dict(tags or {}),
        assets=dict(assets or {}),
        site=site,
    )
