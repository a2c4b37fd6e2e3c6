"""API client for the Rootlink relay REST endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional, Type, TypeVar
from urllib.parse import quote

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import APIError


class TunnelIssued(BaseModel):
    """Freshly generated tunnel id."""

    model_config = ConfigDict(populate_by_name=True)

    tunnel_id: str = Field(alias="tunnelId")


class TunnelStatus(BaseModel):
    """Whether a tunnel currently has a live connection."""

    model_config = ConfigDict(populate_by_name=True)

    tunnel_id: str = Field(alias="tunnelId")
    connected: bool


class HealthStatus(BaseModel):
    """Relay liveness and tunnel count."""

    status: str = "ok"
    tunnels: int = 0


ModelT = TypeVar("ModelT", bound=BaseModel)


def _parse(model: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise APIError(f"Malformed API response: {e}")


def to_http_url(server_url: str) -> str:
    """Map a relay WebSocket address to its HTTP base URL."""
    if server_url.startswith("ws"):
        server_url = "http" + server_url[len("ws"):]
    elif not server_url.startswith(("http://", "https://")):
        if "localhost" in server_url or "127.0.0.1" in server_url:
            server_url = f"http://{server_url}"
        else:
            server_url = f"https://{server_url}"
    return server_url.rstrip("/")


class APIClient:
    """Client for the relay REST API."""

    def __init__(self, base_url: str):
        self.base_url = to_http_url(base_url)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> APIClient:
        """Async context manager entry."""
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(
        self, exc_type: Any, exc_val: Any, exc_tb: Any
    ) -> None:
        """Async context manager exit."""
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if not self._session:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _request(self, method: str, path: str) -> Dict[str, Any]:
        """Make HTTP request to API."""
        session = await self._get_session()
        url = f"{self.base_url}{path}"

        try:
            async with session.request(method, url) as resp:
                if resp.status >= 400:
                    raise APIError(
                        f"API request failed with status {resp.status}",
                        resp.status,
                    )
                data = await resp.json()
                if not isinstance(data, dict):
                    raise APIError("Unexpected API response", resp.status)
                return data
        except aiohttp.ClientError as e:
            raise APIError(f"Network error: {str(e)}")

    async def new_tunnel(self) -> TunnelIssued:
        """Ask the relay for a fresh tunnel id."""
        data = await self._request("GET", "/api/new")
        return _parse(TunnelIssued, data)

    async def tunnel_status(self, tunnel_id: str) -> TunnelStatus:
        """Check whether a tunnel has a live connection."""
        data = await self._request(
            "GET", f"/api/status/{quote(tunnel_id, safe='')}"
        )
        return _parse(TunnelStatus, data)

    async def health(self) -> HealthStatus:
        """Get relay health."""
        data = await self._request("GET", "/health")
        return _parse(HealthStatus, data)

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
