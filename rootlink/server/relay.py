"""
Rootlink relay - public HTTP surface and tunnel WebSocket endpoint.
"""

import asyncio
import logging
from typing import Optional, Union

import aiohttp_cors
from aiohttp import WSCloseCode, WSMsgType, web

from ..core.api import HealthStatus, TunnelIssued, TunnelStatus
from ..core.config import RelayConfig
from ..core.exceptions import ProtocolError, TunnelError
from ..core.protocol import (
    CODEC_JSON,
    CODECS,
    Connected,
    Response,
    collect_headers,
    deserialize_message,
)
from ..utils.id import generate_tunnel_id
from .correlator import Correlator
from .registry import Tunnel, TunnelRegistry

logger = logging.getLogger(__name__)

# Close codes sent to clients that fail the handshake
CLOSE_MISSING_TUNNEL_ID = 4000
CLOSE_UNKNOWN_CODEC = 4001


class RelayServer:
    """Owns the tunnel registry and serves public and tunnel traffic."""

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        registry: Optional[TunnelRegistry] = None,
    ) -> None:
        self.config = config or RelayConfig()
        self.registry = registry if registry is not None else TunnelRegistry()
        self.correlator = Correlator(self.registry, self.config.request_timeout)

    def create_app(self) -> web.Application:
        """Build the aiohttp application."""
        app = web.Application(client_max_size=self.config.max_body_size)

        cors = aiohttp_cors.setup(
            app,
            defaults={
                "*": aiohttp_cors.ResourceOptions(
                    expose_headers="*",
                    allow_headers="*",
                )
            },
        )

        cors.add(app.router.add_get("/health", self.handle_health))
        cors.add(app.router.add_get("/api/new", self.handle_new_tunnel))
        cors.add(
            app.router.add_get("/api/status/{tunnel_id}", self.handle_status)
        )
        app.router.add_get("/ws/client", self.handle_client_connect)
        app.router.add_route(
            "*", "/t/{tunnel_id}", self.handle_tunneled_request
        )
        app.router.add_route(
            "*",
            "/t/{tunnel_id}/{tail:.*}",
            self.handle_tunneled_request,
        )
        return app

    async def handle_health(self, request: web.Request) -> web.Response:
        """Report liveness and current tunnel count."""
        status = HealthStatus(status="ok", tunnels=len(self.registry))
        return web.json_response(status.model_dump())

    async def handle_new_tunnel(self, request: web.Request) -> web.Response:
        """Issue a fresh tunnel id."""
        issued = TunnelIssued(tunnel_id=generate_tunnel_id())
        return web.json_response(issued.model_dump(by_alias=True))

    async def handle_status(self, request: web.Request) -> web.Response:
        """Report whether a tunnel currently has a live connection."""
        tunnel_id = request.match_info["tunnel_id"]
        status = TunnelStatus(
            tunnel_id=tunnel_id,
            connected=self.registry.is_connected(tunnel_id),
        )
        return web.json_response(status.model_dump(by_alias=True))

    async def handle_client_connect(
        self, request: web.Request
    ) -> web.WebSocketResponse:
        """Handle the persistent connection from a client agent."""
        ws = web.WebSocketResponse(
            heartbeat=self.config.heartbeat,
            max_msg_size=self.config.max_message_size,
        )
        await ws.prepare(request)

        tunnel_id = request.query.get("tunnelId")
        codec = request.query.get("codec", CODEC_JSON)

        if not tunnel_id:
            logger.warning("Rejected tunnel connection without tunnelId")
            await ws.close(
                code=CLOSE_MISSING_TUNNEL_ID, message=b"Missing tunnelId"
            )
            return ws
        if codec not in CODECS:
            logger.warning(f"Rejected tunnel {tunnel_id} with codec {codec!r}")
            await ws.close(code=CLOSE_UNKNOWN_CODEC, message=b"Unknown codec")
            return ws

        logger.info(f"[+] Tunnel connected: {tunnel_id}")
        tunnel = self.registry.register(tunnel_id, ws, codec)

        try:
            await tunnel.send(Connected(tunnel_id=tunnel_id))

            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    self._handle_tunnel_frame(tunnel, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.error(f"WS error [{tunnel_id}]: {ws.exception()}")
                    break
        except (TunnelError, ProtocolError, RuntimeError, OSError) as e:
            logger.error(f"WS error [{tunnel_id}]: {e}")
        finally:
            logger.info(
                f"[-] Tunnel disconnected: {tunnel_id} "
                f"(up {tunnel.uptime:.0f}s, {tunnel.request_count} requests)"
            )
            self.correlator.close_tunnel(tunnel)

        return ws

    def _handle_tunnel_frame(
        self, tunnel: Tunnel, data: Union[str, bytes]
    ) -> None:
        """Handle a frame from a tunnel client."""
        try:
            message = deserialize_message(data)
        except ProtocolError as e:
            logger.warning(f"WS message error [{tunnel.tunnel_id}]: {e}")
            return

        if isinstance(message, Response):
            self.correlator.handle_response(tunnel, message)
        else:
            logger.debug(
                f"Ignoring {message.type} message from tunnel {tunnel.tunnel_id}"
            )

    async def handle_tunneled_request(
        self, request: web.Request
    ) -> web.StreamResponse:
        """Forward a public request through its tunnel."""
        tunnel_id = request.match_info["tunnel_id"]
        body = await request.read()

        return await self.correlator.dispatch(
            tunnel_id,
            request.method,
            request.raw_path,
            collect_headers(request.headers.items()),
            body or None,
        )

    async def start(self) -> None:
        """Start the relay and serve until cancelled."""
        app = self.create_app()
        runner = web.AppRunner(app)
        await runner.setup()

        site = web.TCPSite(runner, self.config.host, self.config.port)
        await site.start()

        logger.info(
            f"Rootlink relay running on http://{self.config.host}:{self.config.port}"
        )

        try:
            await asyncio.Event().wait()
        finally:
            await self.shutdown()
            await runner.cleanup()

    async def shutdown(self) -> None:
        """Close every tunnel connection."""
        for tunnel in self.registry:
            if tunnel.is_open:
                await tunnel.connection.close(
                    code=WSCloseCode.GOING_AWAY, message=b"Relay shutting down"
                )
