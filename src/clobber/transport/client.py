from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional, Protocol
from urllib.parse import quote

import aiohttp

from .. import __version__
from ..policy.errors import ExecError, ForbiddenError, NetworkError, RateLimitedError

log = logging.getLogger("clobber.transport")

CLIENT_API = "/_matrix/client/v3"
USER_AGENT = f"clobber/{__version__}"


class NotFoundError(NetworkError):
    """404 from the homeserver; only meaningful for state reads."""


class MatrixClient(Protocol):
    """Outbound calls the engine makes against the homeserver."""

    async def set_room_state(self, room_id: str, event_type: str, state_key: str, content: dict[str, Any]) -> str:
        ...

    async def get_room_state(self, room_id: str, event_type: str, state_key: str) -> Optional[dict[str, Any]]:
        ...

    async def ban_user(self, room_id: str, user_id: str, reason: Optional[str] = None) -> None:
        ...

    async def unban_user(self, room_id: str, user_id: str) -> None:
        ...


def error_for_status(status: int, body: Mapping[str, Any], headers: Mapping[str, str]) -> Optional[ExecError]:
    """Map a homeserver response to an ExecError, or None on success."""
    if status < 400:
        return None
    errcode = str(body.get("errcode") or "")
    message = f"HTTP {status} {errcode}: {body.get('error') or ''}".strip()

    if status == 429 or errcode == "M_LIMIT_EXCEEDED":
        retry_after: Optional[float] = None
        if isinstance(body.get("retry_after_ms"), (int, float)):
            retry_after = float(body["retry_after_ms"]) / 1000.0
        elif headers.get("Retry-After"):
            try:
                retry_after = float(headers["Retry-After"])
            except ValueError:
                retry_after = None
        return RateLimitedError(message, retry_after=retry_after)
    if status in (401, 403):
        return ForbiddenError(message)
    if status == 404:
        return NotFoundError(message)
    if status < 500:
        # The request itself is wrong; repeating it cannot help
        return ExecError(message)
    # 5xx and anything unexpected are retried with a bound
    return NetworkError(message)


class HttpMatrixClient:
    """Minimal Matrix client-server API client on aiohttp.

    Authenticates with a pre-issued access token. Every failure is raised
    as an ExecError subclass so callers never see aiohttp exceptions.
    """

    def __init__(
        self,
        homeserver_url: str,
        access_token: str,
        *,
        user_agent: str = USER_AGENT,
        request_timeout: float = 60.0,
    ) -> None:
        self._base = homeserver_url.rstrip("/")
        self._token = access_token
        self._user_agent = user_agent
        self._timeout = request_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "HttpMatrixClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Authorization": f"Bearer {self._token}", "User-Agent": self._user_agent},
            )
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        url = f"{self._base}{CLIENT_API}{path}"
        client_timeout = aiohttp.ClientTimeout(total=timeout or self._timeout)
        try:
            async with self._get_session().request(
                method, url, json=json, params=params, timeout=client_timeout
            ) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
                if not isinstance(body, dict):
                    body = {}
                error = error_for_status(resp.status, body, resp.headers)
                if error is not None:
                    log.debug("%s %s -> %s", method, path, resp.status)
                    raise error
                return body
        except asyncio.TimeoutError as e:
            raise NetworkError(f"{method} {path} timed out") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

    @staticmethod
    def _state_path(room_id: str, event_type: str, state_key: str) -> str:
        return f"/rooms/{quote(room_id, safe='')}/state/{quote(event_type, safe='')}/{quote(state_key, safe='')}"

    async def whoami(self) -> str:
        body = await self._request("GET", "/account/whoami")
        return str(body.get("user_id") or "")

    async def sync(self, since: Optional[str], timeout_ms: int) -> dict[str, Any]:
        params = {"timeout": str(int(timeout_ms))}
        if since:
            params["since"] = since
        return await self._request("GET", "/sync", params=params, timeout=timeout_ms / 1000.0 + 30.0)

    async def set_room_state(self, room_id: str, event_type: str, state_key: str, content: dict[str, Any]) -> str:
        body = await self._request("PUT", self._state_path(room_id, event_type, state_key), json=content)
        return str(body.get("event_id") or "")

    async def get_room_state(self, room_id: str, event_type: str, state_key: str) -> Optional[dict[str, Any]]:
        try:
            return await self._request("GET", self._state_path(room_id, event_type, state_key))
        except NotFoundError:
            return None

    async def ban_user(self, room_id: str, user_id: str, reason: Optional[str] = None) -> None:
        payload: dict[str, Any] = {"user_id": user_id}
        if reason:
            payload["reason"] = reason
        await self._request("POST", f"/rooms/{quote(room_id, safe='')}/ban", json=payload)

    async def unban_user(self, room_id: str, user_id: str) -> None:
        await self._request("POST", f"/rooms/{quote(room_id, safe='')}/unban", json={"user_id": user_id})
