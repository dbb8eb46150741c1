"""Observer fan-out for room events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

_LOGGER = logging.getLogger(__name__)

Handler = Callable[..., Any]


class EventBus:
    """Named-event fan-out with per-handler fault isolation.

    A handler raising an exception is logged and does not prevent delivery
    to the remaining handlers. Coroutine results are scheduled as tasks.
    """

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe to an event. Returns a function removing the handler."""
        self._handlers[event].append(handler)

        def remove() -> None:
            self.off(event, handler)

        return remove

    def once(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe for the next emission only."""

        def wrapper(*args: Any) -> Any:
            self.off(event, wrapper)
            return handler(*args)

        return self.on(event, wrapper)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._handlers[event]

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def clear(self) -> None:
        """Detach every handler."""
        self._handlers.clear()

    def emit(self, event: str, *args: Any) -> bool:
        """Deliver to all handlers of ``event``. Returns True if any existed."""
        handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    self._schedule(event, result)
            except Exception:
                _LOGGER.exception("[%s] Handler error for %r", self._name, event)
        return bool(handlers)

    def wait_for(self, event: str) -> asyncio.Future[Any]:
        """Future resolved with the arguments of the next ``event``.

        A single argument is unwrapped; several arrive as a tuple.
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        def resolve(*args: Any) -> None:
            if not future.done():
                future.set_result(args[0] if len(args) == 1 else args)

        remove = self.once(event, resolve)
        future.add_done_callback(lambda _: remove())
        return future

    def _schedule(self, event: str, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                _LOGGER.error(
                    "[%s] Async handler error for %r",
                    self._name,
                    event,
                    exc_info=t.exception(),
                )

        task.add_done_callback(done)
