"""Correlated request/response calls on top of one-way call frames."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from .errors import VolaCallbackError, VolaCallbackTimeout

_LOGGER = logging.getLogger(__name__)

DEFAULT_CALLBACK_TIMEOUT = 30.0


@dataclass(slots=True)
class _PendingCallback:
    """A call waiting for its ``callback`` envelope."""

    fn: str | None
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle


class CallbackRegistry:
    """Pending callback table owned by a single session.

    Ids are assigned from a per-registry counter and are removed on first
    settlement, on timeout or on cancellation, so an id is never settled twice.
    """

    def __init__(self, timeout: float = DEFAULT_CALLBACK_TIMEOUT) -> None:
        self.timeout = timeout
        self._next_id = 0
        self._pending: dict[str, _PendingCallback] = {}

    def __contains__(self, callback_id: str) -> bool:
        return callback_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def register(
        self, fn: str | None = None, timeout: float | None = None
    ) -> tuple[str, asyncio.Future[Any]]:
        """Allocate a callback id and the future it will settle."""
        loop = asyncio.get_running_loop()
        self._next_id += 1
        callback_id = str(self._next_id)
        timeout = self.timeout if timeout is None else timeout
        future: asyncio.Future[Any] = loop.create_future()
        timer = loop.call_later(timeout, self._expire, callback_id, timeout)
        self._pending[callback_id] = _PendingCallback(fn, future, timer)
        return callback_id, future

    def discard(self, callback_id: str) -> None:
        """Forget a pending id without settling it (e.g. the send failed)."""
        pending = self._pending.pop(callback_id, None)
        if pending is not None:
            pending.timer.cancel()

    def resolve(self, data: Any) -> bool:
        """Settle the entry named by a ``callback`` envelope payload.

        Returns False for unknown or already settled ids.
        """
        if not isinstance(data, dict):
            _LOGGER.debug("Ignoring malformed callback payload %r", data)
            return False
        pending = self._pending.pop(str(data.get("id")), None)
        if pending is None:
            return False
        pending.timer.cancel()
        if pending.future.done():
            return False
        args = data.get("args") or []
        error = args[0] if len(args) > 0 else None
        value = args[1] if len(args) > 1 else None
        if error:
            pending.future.set_exception(VolaCallbackError(error))
        else:
            pending.future.set_result(value)
        return True

    def cancel_all(self, exc: BaseException) -> None:
        """Reject every pending call, e.g. when the session closes."""
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(exc)

    def _expire(self, callback_id: str, timeout: float) -> None:
        pending = self._pending.pop(callback_id, None)
        if pending is None or pending.future.done():
            return
        _LOGGER.warning("Callback %s (%s) timed out", callback_id, pending.fn)
        pending.future.set_exception(
            VolaCallbackTimeout(pending.fn, callback_id, timeout)
        )
