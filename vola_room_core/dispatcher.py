"""Inbound frame routing.

Every inbound message is parsed, unwrapped through the Sequencer and handed
to the handler registered for its envelope name. Envelopes without a handler
are reposted on the event bus under their own name. A failing handler only
loses its own envelope: the remaining entries of the batch are still handled.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .bus import EventBus
from .errors import VolaProtocolError
from .protocol import InitialPayload, parse_frame
from .sequencer import Sequencer

_LOGGER = logging.getLogger(__name__)

# Informational events the server sends that need no handling of their own
GENERICS: frozenset[str] = frozenset(
    {
        "roomScore",
        "submitChat",
        "submitCommand",
        "pro",
        "room_old",
        "upload",
        "reconnectTimeout",
        "removeMessages",
    }
)

EnvelopeHandler = Callable[[Any], None]


class Dispatcher:
    """Route inbound envelopes of one session."""

    def __init__(
        self,
        name: str,
        sequencer: Sequencer,
        bus: EventBus,
        *,
        on_initial: Callable[[InitialPayload], None],
        on_close: Callable[[], None],
        flush_ack: Callable[[], None],
    ) -> None:
        self.name = name
        self._sequencer = sequencer
        self._bus = bus
        self._on_initial = on_initial
        self._on_close = on_close
        self._flush_ack = flush_ack
        self._handlers: dict[str, EnvelopeHandler] = {}
        self._initial_seen = False

    def register(self, envelope: str, handler: EnvelopeHandler) -> None:
        self._handlers[envelope] = handler

    def on_raw_message(self, raw: str) -> None:
        """Handle one raw transport message."""
        try:
            frame = parse_frame(raw)
        except VolaProtocolError as err:
            _LOGGER.error("[%s] %s", self.name, err)
            return
        if frame is None:
            return

        if isinstance(frame, InitialPayload):
            if self._initial_seen:
                _LOGGER.warning("[%s] Duplicate connection payload ignored", self.name)
                return
            self._initial_seen = True
            self._on_initial(frame)
            return

        self._sequencer.observe_server_ack(frame.server_ack)
        for entry in frame.entries:
            try:
                envelope = self._sequencer.observe_entry(entry)
            except VolaProtocolError as err:
                _LOGGER.error("[%s] %s", self.name, err)
                continue

            if envelope.is_close:
                _LOGGER.debug("[%s] Close message received", self.name)
                self._on_close()
                continue

            self.dispatch(envelope.name, envelope.payload)
            if self._sequencer.should_flush_ack():
                self._flush_ack()

    def dispatch(self, name: str, payload: Any) -> None:
        """Run the handler for ``name``, isolating any failure."""
        handler = self._handlers.get(name)
        try:
            if handler is not None:
                handler(payload)
            else:
                self.repost(name, payload)
        except Exception:
            _LOGGER.exception(
                "[%s] Failed to handle %s: %.200r", self.name, name, payload
            )

    def repost(self, name: str, payload: Any, *, expected: bool = False) -> None:
        """Re-emit an envelope payload under its own name."""
        if expected or name in GENERICS:
            _LOGGER.debug("[%s] generic %s %.200r", self.name, name, payload)
        else:
            _LOGGER.warning("[%s] Unhandled message %s %.200r", self.name, name, payload)
        self._bus.emit(name, payload)
