"""Tunnel registry: tunnel id -> live connection and in-flight requests."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Protocol

from aiohttp import web

from ..core.exceptions import TunnelError
from ..core.protocol import CODEC_JSON, Message, serialize_message

logger = logging.getLogger(__name__)


class TunnelConnection(Protocol):
    """The part of a WebSocket the relay relies on."""

    @property
    def closed(self) -> bool: ...

    async def send_str(self, data: str) -> None: ...

    async def send_bytes(self, data: bytes) -> None: ...

    async def close(self, *, code: int = ..., message: bytes = ...) -> bool: ...


@dataclass
class PendingRequest:
    """An inbound public exchange waiting for its tunneled response."""

    req_id: str
    future: "asyncio.Future[web.StreamResponse]"
    timer: Optional[asyncio.TimerHandle] = None
    created_at: float = field(default_factory=time.monotonic)

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def resolve(self, response: web.StreamResponse) -> None:
        """Hand the final response to the waiting request handler."""
        self.cancel_timer()
        if not self.future.done():
            self.future.set_result(response)


class Tunnel:
    """A registered tunnel and the requests in flight on it."""

    def __init__(
        self,
        tunnel_id: str,
        connection: TunnelConnection,
        codec: str = CODEC_JSON,
    ) -> None:
        self.tunnel_id = tunnel_id
        self.connection = connection
        self.codec = codec
        self.connected_at = time.monotonic()
        self.request_count = 0
        self._pending: Dict[str, PendingRequest] = {}

    @property
    def is_open(self) -> bool:
        return self.connection is not None and not self.connection.closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def add_pending(self, pending: PendingRequest) -> None:
        self._pending[pending.req_id] = pending
        self.request_count += 1

    def claim(self, req_id: str) -> Optional[PendingRequest]:
        """Remove and return a pending request.

        Whoever gets the entry owns its outcome; every later caller gets None.
        """
        return self._pending.pop(req_id, None)

    def claim_all(self) -> List[PendingRequest]:
        """Remove and return every pending request."""
        pending = list(self._pending.values())
        self._pending.clear()
        return pending

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.connected_at

    async def send(self, message: Message) -> None:
        """Send a message using this connection's codec.

        Raises:
            ProtocolError: If the message cannot be encoded
            TunnelError: If the connection is closed or the write fails
        """
        data = serialize_message(message, self.codec)
        if not self.is_open:
            raise TunnelError(f"Tunnel {self.tunnel_id} is closed")

        try:
            if isinstance(data, bytes):
                await self.connection.send_bytes(data)
            else:
                await self.connection.send_str(data)
        except (RuntimeError, OSError) as e:
            raise TunnelError(f"Send failed: {str(e)}")


class TunnelRegistry:
    """In-memory map of tunnel ids to their active tunnel."""

    def __init__(self) -> None:
        self._tunnels: Dict[str, Tunnel] = {}

    def register(
        self,
        tunnel_id: str,
        connection: TunnelConnection,
        codec: str = CODEC_JSON,
    ) -> Tunnel:
        """Register a connection, superseding any prior one for the id.

        The prior connection is left open; its pending requests stay on
        its own Tunnel object and are failed when it closes.
        """
        previous = self._tunnels.get(tunnel_id)
        if previous is not None:
            logger.info(
                f"Tunnel {tunnel_id} superseded by a new connection "
                f"({previous.pending_count} requests left on the old one)"
            )

        tunnel = Tunnel(tunnel_id, connection, codec)
        self._tunnels[tunnel_id] = tunnel
        logger.info(f"Tunnel registered: {tunnel_id}")
        return tunnel

    def get(self, tunnel_id: str) -> Optional[Tunnel]:
        """Get tunnel by id."""
        return self._tunnels.get(tunnel_id)

    def lookup(self, tunnel_id: str) -> Optional[TunnelConnection]:
        """Get the active connection for a tunnel id."""
        tunnel = self._tunnels.get(tunnel_id)
        return tunnel.connection if tunnel else None

    def unregister(self, tunnel_id: str, tunnel: Optional[Tunnel] = None) -> bool:
        """Remove a tunnel.

        When ``tunnel`` is given the entry is only removed if it is still
        the current one, so a superseded connection never evicts its
        successor.
        """
        current = self._tunnels.get(tunnel_id)
        if current is None:
            return False
        if tunnel is not None and current is not tunnel:
            return False
        del self._tunnels[tunnel_id]
        logger.info(f"Tunnel removed: {tunnel_id}")
        return True

    def is_connected(self, tunnel_id: str) -> bool:
        tunnel = self._tunnels.get(tunnel_id)
        return tunnel is not None and tunnel.is_open

    def __len__(self) -> int:
        return len(self._tunnels)

    def __contains__(self, tunnel_id: object) -> bool:
        return tunnel_id in self._tunnels

    def __iter__(self) -> Iterator[Tunnel]:
        return iter(list(self._tunnels.values()))
