"""Outbound/inbound sequence tracking for a room session."""

from __future__ import annotations

import logging
from typing import Any

from .protocol import (
    Envelope,
    build_ack_frame,
    build_call_frame,
    build_close_frame,
    decode_entry,
)

_LOGGER = logging.getLogger(__name__)

DEFAULT_ACK_THRESHOLD = 10


class Sequencer:
    """Sole owner of the ``ack``/``sack``/``last_sack`` counters.

    ``ack`` counts envelopes sent, ``sack`` is the highest server sequence
    observed and ``last_sack`` is the ``sack`` value last reported back to the
    server. ``last_sack <= sack`` holds at all times.
    """

    def __init__(self, ack_threshold: int = DEFAULT_ACK_THRESHOLD) -> None:
        if ack_threshold < 1:
            raise ValueError("ack_threshold must be positive")
        self.ack_threshold = ack_threshold
        self.ack = -1
        self.sack = -1
        self.last_sack = -1
        self.server_ack: Any = None

    def reset_outbound(self, ack: int | None) -> None:
        """Seed the outbound counter from the connection payload."""
        if ack is not None:
            self.ack = ack

    def next_call_frame(self, fn: str, args: list[Any]) -> list[Any]:
        self.ack += 1
        frame = build_call_frame(self.sack, self.ack, fn, args)
        self.last_sack = self.sack
        return frame

    def next_close_frame(self) -> list[Any]:
        self.ack += 1
        frame = build_close_frame(self.sack, self.ack)
        self.last_sack = self.sack
        return frame

    def observe_server_ack(self, server_ack: Any) -> None:
        self.server_ack = server_ack

    def observe_entry(self, entry: Any) -> Envelope:
        """Decode an inbound entry and record its sequence number."""
        envelope = decode_entry(entry)
        if envelope.seq < self.sack:
            _LOGGER.debug(
                "Stale sequence %d (sack=%d, server ack=%s)",
                envelope.seq,
                self.sack,
                self.server_ack,
            )
        else:
            self.sack = envelope.seq
        return envelope

    @property
    def pending(self) -> int:
        """Number of server sequence numbers not yet acknowledged."""
        return self.sack - self.last_sack

    def should_flush_ack(self) -> bool:
        return self.pending >= self.ack_threshold

    def take_ack_frame(self) -> list[Any] | None:
        """Return a standalone ack frame, or None when nothing is pending."""
        if self.last_sack == self.sack:
            return None
        self.last_sack = self.sack
        return build_ack_frame(self.sack)
