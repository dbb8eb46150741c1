"""Error types for Vola room sessions."""

from __future__ import annotations

from typing import Any


class VolaError(Exception):
    """Base error for Vola room client failures."""


class VolaValidationError(VolaError):
    """Caller input was rejected before anything was sent."""


class VolaPrivilegeError(VolaError):
    """The session lacks the role required for an operation."""

    def __init__(
        self,
        message: str = "I'm sorry Dave, I'm afraid I can't do that",
        *,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.data = data


class VolaProtocolError(VolaError):
    """Inbound frame or envelope could not be understood."""


class VolaConnectionError(VolaError):
    """Connection to the room failed or is not established."""


class VolaClosedError(VolaConnectionError):
    """The session is closed."""


class VolaHandshakeError(VolaConnectionError):
    """WebSocket upgrade was refused."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def transient(self) -> bool:
        """Server overload (5xx) that is worth retrying."""
        return self.status is not None and 500 <= self.status < 600


class VolaTimeout(VolaError):
    """Timeout while talking to the room."""


class VolaCallbackTimeout(VolaTimeout):
    """No response arrived for a callback call."""

    def __init__(self, fn: str | None, callback_id: str, timeout: float) -> None:
        super().__init__(f"No response to {fn or 'call'} #{callback_id} after {timeout}s")
        self.fn = fn
        self.callback_id = callback_id
        self.timeout = timeout


class VolaCallbackError(VolaError):
    """The server answered a callback call with an error."""

    def __init__(self, error: Any) -> None:
        message = error.get("message", error) if isinstance(error, dict) else error
        super().__init__(str(message))
        self.error = error


class VolaRateLimitError(VolaError):
    """The server throttled this client."""

    def __init__(self, message: str = "TOO FAST!", *, timeout: Any = None) -> None:
        super().__init__(message)
        self.timeout = timeout


class VolaResponseError(VolaError):
    """REST endpoint answered with an error."""

    def __init__(self, status: int, message: str, code: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
