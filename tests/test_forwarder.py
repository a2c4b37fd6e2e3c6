"""Tests for the local forwarding agent."""

import asyncio

import aiohttp
import pytest
from aioresponses import aioresponses
from yarl import URL

from rootlink.client.forwarder import ForwardingAgent


class TestBuildRequest:
    """URL and header construction."""

    def test_build_url_keeps_query(self):
        agent = ForwardingAgent("http://localhost:3000/")
        url = agent.build_url("/api/items?page=2&q=a%20b")
        assert str(url) == "http://localhost:3000/api/items?page=2&q=a%20b"

    def test_build_url_empty_path(self):
        agent = ForwardingAgent("http://localhost:3000")
        assert str(agent.build_url("")) == "http://localhost:3000/"

    def test_build_url_invalid(self):
        agent = ForwardingAgent("localhost:3000")
        with pytest.raises(ValueError):
            agent.build_url("/x")

    def test_build_headers(self):
        """Test hop-by-hop headers are dropped and Host retargeted."""
        headers = ForwardingAgent.build_headers(
            {
                "host": "relay.example.com",
                "connection": "upgrade",
                "upgrade": "websocket",
                "keep-alive": "timeout=5",
                "transfer-encoding": "chunked",
                "accept": ["text/html", "application/json"],
                "x-request-id": "42",
            },
            URL("http://127.0.0.1:8080/x"),
        )
        assert headers["Host"] == "127.0.0.1:8080"
        assert headers.getall("Accept") == ["text/html", "application/json"]
        assert headers["X-Request-Id"] == "42"
        for name in ("Connection", "Upgrade", "Keep-Alive", "Transfer-Encoding"):
            assert name not in headers

    def test_build_headers_default_port(self):
        headers = ForwardingAgent.build_headers({}, URL("https://example.com/x"))
        assert headers["Host"] == "example.com"


class TestForward:
    """Forwarding requests to the local service."""

    @pytest.mark.asyncio
    async def test_forward_success(self):
        """Test status, headers and body come back untouched."""
        with aioresponses() as m:
            m.post(
                "http://localhost:3000/submit?x=1",
                status=201,
                body=b"\x00\x01created",
                content_type="application/octet-stream",
            )
            async with ForwardingAgent("http://localhost:3000") as agent:
                result = await agent.forward(
                    "POST", "/submit?x=1", {"content-type": "text/plain"}, b"data"
                )

        assert result.status == 201
        assert result.body == b"\x00\x01created"
        assert result.headers["content-type"] == "application/octet-stream"

    @pytest.mark.asyncio
    async def test_forward_empty_body(self):
        with aioresponses() as m:
            m.get("http://localhost:3000/", status=204)
            async with ForwardingAgent("http://localhost:3000") as agent:
                result = await agent.forward("GET", "/", {})
        assert result.status == 204
        assert result.body is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            aiohttp.ClientConnectionError("Connection refused"),
            asyncio.TimeoutError(),
            UnicodeEncodeError("utf-8", "caf\udce9", 3, 4, "surrogates not allowed"),
        ],
    )
    async def test_local_error_is_502(self, error):
        """Test an unreachable target yields a 502 response."""
        with aioresponses() as m:
            m.get("http://localhost:3000/hello", exception=error)
            async with ForwardingAgent("http://localhost:3000") as agent:
                result = await agent.forward("GET", "/hello", {})

        assert result.status == 502
        assert result.headers == {"content-type": "text/plain"}
        assert result.body.startswith(b"Local server error: ")

    @pytest.mark.asyncio
    async def test_malformed_target_is_400(self):
        agent = ForwardingAgent("not-a-url")
        result = await agent.forward("GET", "/x", {})
        assert result.status == 400
        assert result.body is None
        await agent.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        agent = ForwardingAgent("http://localhost:3000")
        await agent.close()
        await agent._get_session()
        await agent.close()
        await agent.close()
        assert agent._session is None
