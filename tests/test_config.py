"""Tests for relay and agent configuration."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from rootlink.core.config import AgentConfig, RelayConfig, _substitute_env_vars
from rootlink.core.exceptions import ConfigurationError


class TestRelayConfig:
    """Test RelayConfig settings."""

    def test_defaults(self):
        """Test default relay settings."""
        with patch.dict(os.environ, {}, clear=True):
            config = RelayConfig()
        assert config.host == "0.0.0.0"
        assert config.port == 3001
        assert config.request_timeout == 30.0
        assert config.heartbeat == 25.0
        assert config.max_body_size == 64 * 1024 * 1024

    def test_env_override(self):
        """Test ROOTLINK_ environment variables."""
        env = {"ROOTLINK_PORT": "8080", "ROOTLINK_REQUEST_TIMEOUT": "5"}
        with patch.dict(os.environ, env, clear=True):
            config = RelayConfig()
        assert config.port == 8080
        assert config.request_timeout == 5.0

    def test_invalid_timeout(self):
        """Test timeout must be positive."""
        with pytest.raises(ValidationError):
            RelayConfig(request_timeout=0)

    def test_from_yaml_with_overrides(self, tmp_path):
        """Test YAML loading where explicit overrides win."""
        path = tmp_path / "relay.yml"
        path.write_text("port: 4000\nrequest_timeout: 12\n")
        config = RelayConfig.from_yaml(path, port=5000)
        assert config.port == 5000
        assert config.request_timeout == 12.0

    def test_from_yaml_not_mapping(self, tmp_path):
        """Test a YAML list is rejected."""
        path = tmp_path / "relay.yml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigurationError):
            RelayConfig.from_yaml(path)


class TestAgentConfig:
    """Test AgentConfig settings."""

    def make(self, **kwargs):
        values = {"local_url": "http://localhost:3000", "tunnel_id": "abc123"}
        values.update(kwargs)
        with patch.dict(os.environ, {}, clear=True):
            return AgentConfig(**values)

    def test_defaults(self):
        """Test default agent settings."""
        config = self.make()
        assert config.server_url == "ws://localhost:3001"
        assert config.codec == "json"
        assert config.reconnect_floor == 2.0
        assert config.reconnect_factor == 1.5
        assert config.reconnect_cap == 15.0
        assert config.local_timeout is None

    @pytest.mark.parametrize(
        "given,expected",
        [
            ("ws://localhost:3001/", "ws://localhost:3001"),
            ("http://localhost:3001", "ws://localhost:3001"),
            ("https://relay.example.com", "wss://relay.example.com"),
            ("wss://relay.example.com", "wss://relay.example.com"),
            ("localhost:3001", "ws://localhost:3001"),
            ("relay.example.com", "wss://relay.example.com"),
        ],
    )
    def test_server_url_normalized(self, given, expected):
        """Test relay address normalization."""
        assert self.make(server_url=given).server_url == expected

    def test_local_url_trailing_slash(self):
        """Test trailing slash is stripped."""
        assert self.make(local_url="http://localhost:3000/").local_url == (
            "http://localhost:3000"
        )

    @pytest.mark.parametrize(
        "local_url", ["localhost:3000", "ftp://host", "http://", "3000"]
    )
    def test_invalid_local_url(self, local_url):
        """Test local URL must be http(s) with a host."""
        with pytest.raises(ValidationError):
            self.make(local_url=local_url)

    def test_invalid_codec(self):
        """Test unknown codec is rejected."""
        with pytest.raises(ValidationError):
            self.make(codec="xml")

    def test_empty_tunnel_id(self):
        """Test tunnel id is required."""
        with pytest.raises(ValidationError):
            self.make(tunnel_id="")

    def test_ws_url(self):
        """Test tunnel endpoint URL."""
        config = self.make(server_url="wss://relay.example.com", codec="msgpack")
        assert config.ws_url == (
            "wss://relay.example.com/ws/client?tunnelId=abc123&codec=msgpack"
        )

    def test_ws_url_quotes_tunnel_id(self):
        """Test tunnel id is URL encoded."""
        assert "tunnelId=a%2Fb%20c" in self.make(tunnel_id="a/b c").ws_url

    def test_public_url(self):
        """Test public URL derived from the relay address."""
        assert self.make().public_url == "http://localhost:3001/t/abc123/"
        assert (
            self.make(server_url="wss://relay.example.com").public_url
            == "https://relay.example.com/t/abc123/"
        )

    def test_from_yaml_substitutes_env(self, tmp_path):
        """Test ${VAR} substitution in YAML."""
        path = tmp_path / "rootlink.yml"
        path.write_text(
            "local_url: http://localhost:8000\n"
            "tunnel_id: ${MY_TUNNEL}\n"
            "codec: msgpack\n"
        )
        with patch.dict(os.environ, {"MY_TUNNEL": "fromenv"}, clear=True):
            config = AgentConfig.from_yaml(path)
        assert config.tunnel_id == "fromenv"
        assert config.codec == "msgpack"


class TestSubstituteEnvVars:
    """Test ${VAR} substitution."""

    def test_nested(self):
        with patch.dict(os.environ, {"A": "1"}, clear=True):
            data = {"x": "${A}", "y": ["${A}", "plain"], "z": {"w": "${A}"}}
            assert _substitute_env_vars(data) == {
                "x": "1",
                "y": ["1", "plain"],
                "z": {"w": "1"},
            }

    def test_unset_left_as_is(self):
        with patch.dict(os.environ, {}, clear=True):
            assert _substitute_env_vars("${MISSING}") == "${MISSING}"
