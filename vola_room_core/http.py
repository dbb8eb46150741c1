"""REST client for Vola room endpoints."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable, Mapping
from typing import Any

import aiohttp
from yarl import URL

from .config import DEFAULT_SITE, USER_AGENT
from .errors import (
    VolaConnectionError,
    VolaResponseError,
    VolaTimeout,
)

_LOGGER = logging.getLogger(__name__)

OK = 200
ACCESS_DENIED = 403

UPLOAD_CHUNK_SIZE = 64 * 1024

# progress(delta, sent, total, server)
ProgressCallback = Callable[[int, int, int | None, str], Any]


def _clean_params(params: Mapping[str, Any]) -> dict[str, str]:
    result: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        result[key] = str(value)
    return result


def response_error(data: Any) -> dict[str, Any] | None:
    """Return the ``error`` object of a REST response, if any."""
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if not error:
        return None
    if not isinstance(error, dict):
        return {"message": str(error)}
    return error


async def track_progress(
    body: bytes | AsyncIterable[bytes],
    total: int | None,
    server: str,
    progress: ProgressCallback,
) -> AsyncIterator[bytes]:
    """Yield ``body`` in chunks, reporting each one to ``progress``."""
    sent = 0

    async def chunks() -> AsyncIterator[bytes]:
        if isinstance(body, (bytes, bytearray)):
            for start in range(0, len(body), UPLOAD_CHUNK_SIZE):
                yield bytes(body[start : start + UPLOAD_CHUNK_SIZE])
        else:
            async for chunk in body:
                yield chunk

    async for chunk in chunks():
        sent += len(chunk)
        progress(len(chunk), sent, total, server)
        yield chunk


class VolaHttpClient:
    """HTTP client wrapper for the room REST API and upload servers.

    Requests answered with a 5xx status are retried with a linear backoff
    (``retry_delay * attempt``).
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        site: str = DEFAULT_SITE,
        *,
        user_agent: str = USER_AGENT,
        retry_delay: float = 0.1,
        max_attempts: int | None = None,
    ) -> None:
        self._session = session
        self.site = site
        self.user_agent = user_agent
        self._retry_delay = retry_delay
        self._max_attempts = max_attempts
        self._session.cookie_jar.update_cookies({"allow-download": "1"}, self.site_url)

    def _url(self, path: str) -> str:
        return f"https://{self.site}{path}"

    @property
    def site_url(self) -> URL:
        return URL(self._url("/"))

    @property
    def cookies(self) -> dict[str, str]:
        """Cookies the session jar sends to the site."""
        jar = self._session.cookie_jar.filter_cookies(self.site_url)
        return {name: morsel.value for name, morsel in jar.items()}

    @property
    def cookie_header(self) -> str:
        """``Cookie`` header for requests aiohttp does not make, like the websocket upgrade."""
        jar = self._session.cookie_jar.filter_cookies(self.site_url)
        return "; ".join(f"{name}={morsel.coded_value}" for name, morsel in jar.items())

    def headers(self, referer: str | None = None) -> dict[str, str]:
        headers = {
            "User-Agent": self.user_agent,
            "Origin": f"https://{self.site}",
        }
        if referer:
            headers["Referer"] = referer
        return headers

    async def call_rest(
        self,
        endpoint: str,
        params: Mapping[str, Any],
        *,
        referer: str | None = None,
    ) -> Any:
        """GET ``/rest/<endpoint>`` and decode its JSON body."""
        url = self._url(f"/rest/{endpoint}")
        query = _clean_params(params)

        for attempt in itertools.count(1):
            try:
                async with self._session.get(
                    url,
                    params=query,
                    headers=self.headers(referer),
                    timeout=aiohttp.ClientTimeout(total=30),
                ) as resp:
                    if resp.status < 500:
                        try:
                            return await resp.json(content_type=None)
                        except ValueError as err:
                            raise VolaResponseError(
                                resp.status, f"{endpoint}: invalid JSON response"
                            ) from err
                    status = resp.status
            except TimeoutError as err:
                raise VolaTimeout(f"{endpoint} request timed out") from err
            except aiohttp.ClientError as err:
                raise VolaConnectionError(f"{endpoint} request failed") from err

            if self._max_attempts is not None and attempt >= self._max_attempts:
                raise VolaResponseError(status, f"{endpoint} failed with HTTP {status}")
            delay = self._retry_delay * attempt
            _LOGGER.warning(
                "%s answered %d, retrying in %.1fs (attempt %d)",
                endpoint,
                status,
                delay,
                attempt,
            )
            await asyncio.sleep(delay)

    async def _call_checked(
        self, endpoint: str, params: Mapping[str, Any], *, referer: str | None = None
    ) -> dict[str, Any]:
        data = await self.call_rest(endpoint, params, referer=referer)
        if not data:
            raise VolaResponseError(OK, f"{endpoint}: empty response")
        error = response_error(data)
        if error is not None:
            raise VolaResponseError(
                OK,
                f"{endpoint}: {error.get('code')}: {error.get('message')}",
                code=error.get("code"),
            )
        return data

    async def get_room_config(self, room: str, *, referer: str | None = None) -> dict[str, Any]:
        return await self._call_checked("getRoomConfig", {"room": room}, referer=referer)

    async def login(
        self, nick: str, password: str, *, referer: str | None = None
    ) -> dict[str, Any]:
        """Log in and remember the session cookie."""
        data = await self._call_checked(
            "login", {"name": nick, "password": password}, referer=referer
        )
        if data.get("session"):
            self._session.cookie_jar.update_cookies({"session": data["session"]}, self.site_url)
        return data

    async def set_room_config(
        self,
        room: str,
        session: str | None,
        config: str,
        counter: int,
        *,
        referer: str | None = None,
    ) -> dict[str, Any]:
        return await self._call_checked(
            "setRoomConfig",
            {"room": room, "session": session, "c": counter, "config": config},
            referer=referer,
        )

    async def get_upload_key(
        self, params: Mapping[str, Any], *, referer: str | None = None
    ) -> Any:
        """Raw ``getUploadKey`` response; flood control is handled by the caller."""
        return await self.call_rest("getUploadKey", params, referer=referer)

    async def upload(
        self,
        server: str,
        params: Mapping[str, Any],
        name: str,
        body: bytes | AsyncIterable[bytes],
        *,
        size: int | None = None,
        progress: ProgressCallback | None = None,
        referer: str | None = None,
    ) -> None:
        """POST a file body to an upload server.

        ``body`` is sent as it is produced when it is an async iterable of chunks.
        """
        if progress is not None:
            body = track_progress(body, size, server, progress)
        form = aiohttp.FormData()
        form.add_field(
            "file", body, filename=name, content_type="application/octet-stream"
        )
        try:
            async with self._session.post(
                f"https://{server}/upload",
                params=_clean_params(params),
                data=form,
                headers=self.headers(referer),
            ) as resp:
                text = await resp.text()
                if resp.status != OK:
                    raise VolaResponseError(resp.status, f"Upload failed! {text}")
        except TimeoutError as err:
            raise VolaTimeout("Upload timed out") from err
        except aiohttp.ClientError as err:
            raise VolaConnectionError("Upload request failed") from err
