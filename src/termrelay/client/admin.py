"""Administrative API client."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from termrelay.errors import InvalidArgument, NotFound, RelayError

logger = logging.getLogger(__name__)

_transient = retry(
    retry=retry_if_exception_type(httpx.TransportError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def stream_url(base_url: str, session_id: str) -> str:
    """WebSocket URL of a session's stream on the relay at ``base_url``."""
    scheme, _, rest = base_url.rstrip("/").partition("://")
    ws_scheme = "wss" if scheme == "https" else "ws"
    return f"{ws_scheme}://{rest}/sessions/{session_id}/stream"


class AdminClient:
    """Thin async wrapper over the relay's HTTP API.

    Records come back as the camelCase dicts the relay serves.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8080",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    def stream_url(self, session_id: str) -> str:
        return stream_url(self.base_url, session_id)

    @_transient
    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._client.request(method, path, **kwargs)
        if response.status_code == 404:
            raise NotFound(path.split("/")[2] if path.count("/") >= 2 else path)
        if response.status_code == 400:
            error = response.json().get("error", "invalid request")
            field, _, reason = error.partition(" ")
            raise InvalidArgument(field, reason)
        if response.is_error:
            raise RelayError(f"{method} {path} failed: HTTP {response.status_code}")
        return response.json()

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/health")

    async def create(
        self,
        name: str,
        group: str | None = None,
        working_dir: str | None = None,
        message: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"name": name}
        if group is not None:
            body["group"] = group
        if working_dir is not None:
            body["workingDir"] = working_dir
        if message is not None:
            body["message"] = message
        return await self._request("POST", "/sessions", json=body)

    async def list(self, include_archived: bool = False) -> list[dict[str, Any]]:
        params = {"includeArchived": "true"} if include_archived else None
        return await self._request("GET", "/sessions", params=params)

    async def get(self, session_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/sessions/{session_id}")

    async def delete(self, session_id: str) -> None:
        await self._request("DELETE", f"/sessions/{session_id}")

    async def patch_meta(
        self,
        session_id: str,
        custom_name: str | None = None,
        project: str | None = None,
        pinned: bool | None = None,
        archived: bool | None = None,
    ) -> dict[str, Any]:
        body = {
            key: value
            for key, value in (
                ("customName", custom_name),
                ("project", project),
                ("pinned", pinned),
                ("archived", archived),
            )
            if value is not None
        }
        return await self._request("PATCH", f"/sessions/{session_id}/meta", json=body)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> AdminClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
