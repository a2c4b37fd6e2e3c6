"""Executes tunneled requests against the local service."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp
from multidict import CIMultiDict
from yarl import URL

from ..core.protocol import Headers, collect_headers, iter_headers

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset(
    {"connection", "transfer-encoding", "upgrade", "keep-alive"}
)


@dataclass
class ForwardResult:
    """Raw outcome of a local request"""

    status: int
    headers: Headers = field(default_factory=dict)
    body: Optional[bytes] = None


class ForwardingAgent:
    """Turns tunneled requests into real HTTP calls on the local target.

    Bodies are passed through as opaque bytes: no decompression, no
    redirects followed, no content type handled specially.
    """

    def __init__(
        self,
        local_url: str,
        timeout: Optional[float] = None,
    ) -> None:
        self.local_url = local_url.rstrip("/")
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> ForwardingAgent:
        """Async context manager entry."""
        await self._get_session()
        return self

    async def __aexit__(
        self, exc_type: Any, exc_val: Any, exc_tb: Any
    ) -> None:
        """Async context manager exit."""
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if not self._session or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                auto_decompress=False,
            )
        return self._session

    def build_url(self, path: str) -> URL:
        """Join the local base URL with a tunneled path and query."""
        url = URL(f"{self.local_url}{path or '/'}", encoded=True)
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(f"Invalid target URL: {url}")
        return url

    @staticmethod
    def build_headers(headers: Headers, url: URL) -> CIMultiDict[str]:
        """Copy inbound headers minus hop-by-hop ones, retargeting Host."""
        out: CIMultiDict[str] = CIMultiDict()
        for name, value in iter_headers(headers):
            lowered = name.lower()
            if lowered in HOP_BY_HOP_HEADERS or lowered == "host":
                continue
            out.add(name, value)

        host = url.raw_host or ""
        if not url.is_default_port():
            host = f"{host}:{url.port}"
        out["Host"] = host
        return out

    async def forward(
        self,
        method: str,
        path: str,
        headers: Headers,
        body: Optional[bytes] = None,
    ) -> ForwardResult:
        """Run one request against the local service."""
        try:
            url = self.build_url(path)
        except ValueError as e:
            logger.error(f"Malformed target URL for {method} {path}: {e}")
            return ForwardResult(status=400)

        session = await self._get_session()
        try:
            async with session.request(
                method or "GET",
                url,
                headers=self.build_headers(headers, url),
                data=body,
                allow_redirects=False,
            ) as resp:
                payload = await resp.read()
                return ForwardResult(
                    status=resp.status,
                    headers=collect_headers(resp.headers.items()),
                    body=payload or None,
                )
        except (aiohttp.ClientError, OSError, ValueError, asyncio.TimeoutError) as e:
            reason = str(e) or e.__class__.__name__
            logger.error(f"Local server error: {reason}")
            return ForwardResult(
                status=502,
                headers={"content-type": "text/plain"},
                body=f"Local server error: {reason}".encode(),
            )

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
