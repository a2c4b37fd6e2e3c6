"""Client side connection lifecycle: connect, serve, back off, reconnect."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional, Set, Union

import aiohttp
from aiohttp import WSMsgType

from ..core.config import AgentConfig
from ..core.exceptions import ConnectionError, ProtocolError, StateTransitionError
from ..core.protocol import (
    Connected,
    Request,
    Response,
    deserialize_message,
    serialize_message,
)
from .forwarder import ForwardingAgent

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """States of the agent's relay connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.DISCONNECTED}),
}


class Backoff:
    """Multiplicative reconnect delay with a floor and a cap."""

    def __init__(
        self, floor: float = 2.0, factor: float = 1.5, cap: float = 15.0
    ) -> None:
        self.floor = floor
        self.factor = factor
        self.cap = cap
        self.current = floor

    def next(self) -> float:
        """Return the delay to wait now and grow it for the next failure."""
        delay = min(self.current, self.cap)
        self.current = min(self.current * self.factor, self.cap)
        return delay

    def reset(self) -> None:
        self.current = self.floor


class TunnelAgent:
    """Keeps one tunnel connected to the relay and serves its requests.

    The agent loops through disconnected -> connecting -> connected ->
    disconnected until shutdown() is called. Each tunneled request is
    forwarded to the local service in its own task and answered with a
    response frame carrying the same request id.
    """

    def __init__(
        self,
        config: AgentConfig,
        forwarder: Optional[ForwardingAgent] = None,
        session: Optional[aiohttp.ClientSession] = None,
        on_connected: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.config = config
        self.forwarder = forwarder or ForwardingAgent(
            config.local_url, timeout=config.local_timeout
        )
        self.on_connected = on_connected
        self.backoff = Backoff(
            config.reconnect_floor,
            config.reconnect_factor,
            config.reconnect_cap,
        )

        self._session = session
        self._owns_session = session is None
        self._state = ConnectionState.DISCONNECTED
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._connecting: Optional[asyncio.Future[Any]] = None
        self._stopping = False
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: Set[asyncio.Task[Any]] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def _set_state(self, target: ConnectionState) -> None:
        if target not in TRANSITIONS[self._state]:
            raise StateTransitionError(self._state.value, target.value)
        logger.debug(f"Connection state: {self._state.value} -> {target.value}")
        self._state = target

    async def run(self) -> None:
        """Connect and keep reconnecting until shutdown() is called."""
        self._stop_event = asyncio.Event()
        if self._stopping:
            self._stop_event.set()
        if self._session is None:
            self._session = aiohttp.ClientSession()

        try:
            while not self._stopping:
                self._set_state(ConnectionState.CONNECTING)
                await self._connect_and_serve(self._session)

                if self._stopping:
                    break
                delay = self.backoff.next()
                logger.info(f"Reconnecting in {delay:g}s...")
                await self._wait(delay)
        finally:
            await self._cancel_tasks()
            await self.forwarder.close()
            if self._owns_session and self._session is not None:
                await self._session.close()
                self._session = None
            logger.info("Agent stopped")

    async def _wait(self, delay: float) -> None:
        """Sleep for the backoff delay, waking early on shutdown."""
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _connect_and_serve(self, session: aiohttp.ClientSession) -> None:
        """Run one connection from handshake to close."""
        self._connecting = asyncio.ensure_future(
            session.ws_connect(
                self.config.ws_url,
                autoping=False,
                max_msg_size=self.config.max_message_size,
            )
        )
        try:
            ws = await self._connecting
        except asyncio.CancelledError:
            if not self._stopping:
                raise
            self._set_state(ConnectionState.DISCONNECTED)
            return
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not reach relay at {self.config.server_url}: {e}")
            self._set_state(ConnectionState.DISCONNECTED)
            return
        finally:
            self._connecting = None

        self._ws = ws
        self.backoff.reset()
        self._set_state(ConnectionState.CONNECTED)
        logger.info(f"Connected to relay at {self.config.server_url}")

        try:
            async for msg in ws:
                if msg.type == WSMsgType.PING:
                    await ws.pong(msg.data)
                elif msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    self._handle_frame(ws, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.error(f"Connection error: {ws.exception()}")
                    break
        except (aiohttp.ClientError, RuntimeError, OSError) as e:
            logger.error(f"Connection error: {e}")
        finally:
            self._ws = None
            if not ws.closed:
                await ws.close()
            self._set_state(ConnectionState.DISCONNECTED)
            logger.warning(f"Disconnected from relay (code {ws.close_code})")

    def _handle_frame(
        self, ws: aiohttp.ClientWebSocketResponse, data: Union[str, bytes]
    ) -> None:
        try:
            message = deserialize_message(data)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed frame: {e}")
            return

        if isinstance(message, Connected):
            logger.info(f"Tunnel {message.tunnel_id} is live")
            if self.on_connected is not None:
                self.on_connected(self.config.public_url)
        elif isinstance(message, Request):
            if not self.is_connected:
                return
            task = asyncio.create_task(self._handle_request(ws, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            logger.debug(f"Ignoring {message.type} message")

    async def _handle_request(
        self, ws: aiohttp.ClientWebSocketResponse, request: Request
    ) -> None:
        """Forward one request locally and send back its response."""
        logger.info(f"-> {request.method} {request.path}")
        result = await self.forwarder.forward(
            request.method, request.path, request.headers, request.body
        )
        logger.info(f"<- {result.status} {request.method} {request.path}")

        response = Response(
            req_id=request.req_id,
            status=result.status,
            headers=result.headers,
            body=result.body,
        )
        try:
            data = serialize_message(response, self.config.codec)
        except ProtocolError as e:
            logger.error(f"Cannot encode response {request.req_id}: {e}")
            data = serialize_message(
                Response(
                    req_id=request.req_id,
                    status=502,
                    headers={"content-type": "text/plain"},
                    body=b"Local server error: unencodable response",
                ),
                self.config.codec,
            )

        try:
            await self._send(ws, data)
        except ConnectionError as e:
            logger.warning(f"Response {request.req_id} not delivered: {e}")

    async def _send(
        self, ws: aiohttp.ClientWebSocketResponse, data: Union[str, bytes]
    ) -> None:
        """Write one frame to the relay."""
        if ws.closed:
            raise ConnectionError("Not connected")

        try:
            if isinstance(data, bytes):
                await ws.send_bytes(data)
            else:
                await ws.send_str(data)
        except (aiohttp.ClientError, RuntimeError, OSError) as e:
            raise ConnectionError(f"Send failed: {str(e)}")

    async def _cancel_tasks(self) -> None:
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def shutdown(self) -> None:
        """Stop reconnecting and close the current connection."""
        logger.info("Shutting down agent")
        self._stopping = True
        if self._stop_event is not None:
            self._stop_event.set()
        if self._connecting is not None and not self._connecting.done():
            self._connecting.cancel()
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
