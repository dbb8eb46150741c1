"""Frame builders and parsers for the room wire protocol.

Outbound frames:
    call    ``[sack, [[0, ["call", {"fn": fn, "args": args}]], ack]]``
    ack     ``[sack]``
    close   ``[sack, [[2], ack]]``

Inbound frames are either the one-time connection payload (a JSON object)
or ``[server_ack, [[type, body], seq], ...]`` where ``type`` 0 carries a
``[name, payload]`` body and ``type`` 2 signals a close.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from .errors import VolaProtocolError

ENVELOPE_CALL = 0
ENVELOPE_CLOSE = 2


@dataclass(frozen=True)
class InitialPayload:
    """Connection payload sent once by the server before any batch."""

    version: Any = None
    session: str | None = None
    ack: int | None = None


@dataclass(frozen=True)
class InboundBatch:
    """A batch of envelope entries with the server's cumulative ack."""

    server_ack: Any
    entries: list[Any]


@dataclass(frozen=True)
class Envelope:
    """A decoded inbound envelope."""

    kind: int
    seq: int
    name: str | None = None
    payload: Any = None

    @property
    def is_close(self) -> bool:
        return self.kind == ENVELOPE_CLOSE


def encode_frame(frame: list[Any]) -> str:
    """Serialize a frame for the transport."""
    return json.dumps(frame, separators=(",", ":"), ensure_ascii=False)


def build_call_frame(sack: int, ack: int, fn: str, args: list[Any]) -> list[Any]:
    return [sack, [[ENVELOPE_CALL, ["call", {"fn": fn, "args": list(args)}]], ack]]


def build_ack_frame(sack: int) -> list[Any]:
    return [sack]


def build_close_frame(sack: int, ack: int) -> list[Any]:
    return [sack, [[ENVELOPE_CLOSE], ack]]


def parse_call_frame(raw: str | list[Any]) -> tuple[int, int, str, list[Any]]:
    """Parse an outbound call frame back into ``(sack, ack, fn, args)``."""
    frame = json.loads(raw) if isinstance(raw, str) else raw
    try:
        sack, (envelope, ack) = frame
        kind, (tag, call) = envelope
    except (TypeError, ValueError) as err:
        raise VolaProtocolError(f"Not a call frame: {frame!r}") from err
    if kind != ENVELOPE_CALL or tag != "call" or not isinstance(call, dict):
        raise VolaProtocolError(f"Not a call frame: {frame!r}")
    return sack, ack, call.get("fn"), list(call.get("args", []))


def parse_frame(raw: str) -> InitialPayload | InboundBatch | None:
    """Parse a raw inbound message.

    Returns None for empty (``null``/falsy) payloads.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as err:
        raise VolaProtocolError(f"Invalid JSON frame: {raw!r:.200}") from err
    if not data:
        return None
    if isinstance(data, dict):
        return InitialPayload(
            version=data.get("version"),
            session=data.get("session"),
            ack=data.get("ack"),
        )
    if not isinstance(data, list):
        raise VolaProtocolError(f"Unexpected frame: {data!r:.200}")
    return InboundBatch(server_ack=data[0], entries=data[1:])


def decode_entry(entry: Any) -> Envelope:
    """Decode one ``[[type, body], seq]`` entry of an inbound batch."""
    try:
        envelope, seq = entry
        kind = envelope[0]
    except (TypeError, ValueError, IndexError, KeyError) as err:
        raise VolaProtocolError(f"Malformed entry: {entry!r:.200}") from err
    if not isinstance(seq, int):
        raise VolaProtocolError(f"Malformed sequence number: {seq!r}")
    if kind == ENVELOPE_CLOSE:
        return Envelope(kind=ENVELOPE_CLOSE, seq=seq)
    try:
        name, payload = envelope[1]
    except (TypeError, ValueError, IndexError) as err:
        raise VolaProtocolError(f"Malformed envelope: {envelope!r:.200}") from err
    return Envelope(kind=kind, seq=seq, name=str(name), payload=payload)
