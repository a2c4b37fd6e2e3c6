"""Pairs public HTTP requests with tunneled responses."""

from __future__ import annotations

import asyncio
import html
import logging
import time
from typing import Optional

from aiohttp import web

from ..core.exceptions import ProtocolError, TunnelError
from ..core.protocol import Headers, Request, Response
from ..utils.id import generate_request_id
from .registry import PendingRequest, Tunnel, TunnelRegistry
from .rewriter import build_response, tunnel_prefix

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

OFFLINE_PAGE = """<!DOCTYPE html>
<html>
  <head><title>Rootlink - Tunnel Offline</title></head>
  <body style="background:#0c0c0c;color:#f0f0f0;font-family:system-ui;display:flex;align-items:center;justify-content:center;height:100vh;margin:0;flex-direction:column;gap:8px">
    <h2 style="margin:0;font-size:18px;font-weight:600">Tunnel Offline</h2>
    <p style="color:#888;margin:0;font-size:14px">Tunnel <code style="color:#4ade80">{tunnel_id}</code> is not connected.<br>Run the CLI client to activate it.</p>
  </body>
</html>"""


def offline_response(tunnel_id: str) -> web.Response:
    return web.Response(
        status=503,
        text=OFFLINE_PAGE.format(tunnel_id=html.escape(tunnel_id)),
        content_type="text/html",
    )


def strip_tunnel_prefix(path: str, tunnel_id: str) -> str:
    """Map /t/<tunnelId>/rest?query to /rest?query."""
    prefix = tunnel_prefix(tunnel_id)
    if path.startswith(prefix):
        path = path[len(prefix):]
    if not path.startswith("/"):
        path = "/" + path
    return path


class Correlator:
    """Dispatches public requests into tunnels and resolves their outcome.

    Each request ends exactly once: by its response, its deadline, or the
    tunnel closing. All three go through Tunnel.claim, so only the first
    one to run has any effect.
    """

    def __init__(
        self,
        registry: TunnelRegistry,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.registry = registry
        self.timeout = timeout

    async def dispatch(
        self,
        tunnel_id: str,
        method: str,
        path: str,
        headers: Headers,
        body: Optional[bytes],
    ) -> web.StreamResponse:
        """Send a request through a tunnel and wait for its outcome."""
        tunnel = self.registry.get(tunnel_id)
        if tunnel is None or not tunnel.is_open:
            logger.info(f"Tunnel {tunnel_id} offline for {method} {path}")
            return offline_response(tunnel_id)

        loop = asyncio.get_running_loop()
        req_id = generate_request_id()
        pending = PendingRequest(req_id=req_id, future=loop.create_future())
        tunnel.add_pending(pending)
        pending.timer = loop.call_later(
            self.timeout, self._expire, tunnel, req_id
        )

        forwarded = {k: v for k, v in headers.items() if k.lower() != "host"}
        message = Request(
            req_id=req_id,
            method=method,
            path=strip_tunnel_prefix(path, tunnel_id),
            headers=forwarded,
            body=body or None,
        )

        try:
            await tunnel.send(message)
        except (TunnelError, ProtocolError) as e:
            logger.error(
                f"Failed to send request {req_id} to tunnel {tunnel_id}: {e}"
            )
            claimed = tunnel.claim(req_id)
            if claimed is not None:
                claimed.resolve(
                    web.Response(
                        status=502,
                        text="Failed to forward request to tunnel client.",
                    )
                )

        try:
            return await pending.future
        except asyncio.CancelledError:
            # Public caller went away
            discarded = tunnel.claim(req_id)
            if discarded is not None:
                discarded.cancel_timer()
            raise

    def handle_response(self, tunnel: Tunnel, message: Response) -> bool:
        """Deliver a tunneled response. Returns False if nobody waits for it."""
        pending = tunnel.claim(message.req_id)
        if pending is None:
            logger.debug(
                f"Ignoring response {message.req_id} on tunnel {tunnel.tunnel_id}"
            )
            return False

        try:
            response = build_response(
                message.status, message.headers, message.body, tunnel.tunnel_id
            )
        except (ValueError, TypeError) as e:
            logger.error(f"Invalid response data from tunnel {tunnel.tunnel_id}: {e}")
            response = web.Response(status=502, text="Invalid tunnel response")
        pending.resolve(response)
        return True

    def _expire(self, tunnel: Tunnel, req_id: str) -> None:
        pending = tunnel.claim(req_id)
        if pending is None:
            return
        elapsed = time.monotonic() - pending.created_at
        logger.warning(
            f"Request {req_id} on tunnel {tunnel.tunnel_id} timed out "
            f"after {elapsed:.1f}s"
        )
        pending.resolve(web.Response(status=504, text="Gateway Timeout"))

    def close_tunnel(self, tunnel: Tunnel) -> int:
        """Fail everything in flight on a closed connection and unregister it."""
        failed = tunnel.claim_all()
        for pending in failed:
            pending.resolve(web.Response(status=503, text="Tunnel disconnected."))
        if failed:
            logger.warning(
                f"Tunnel {tunnel.tunnel_id} closed with {len(failed)} requests in flight"
            )
        self.registry.unregister(tunnel.tunnel_id, tunnel)
        return len(failed)
