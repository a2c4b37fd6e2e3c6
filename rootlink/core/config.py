"""Configuration management for the Rootlink relay and client agent."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote, urlsplit

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError
from .protocol import CODEC_JSON, CODECS

DEFAULT_SERVER_URL = "ws://localhost:3001"
DEFAULT_PORT = 3001


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${VAR_NAME} values from the environment."""
    if isinstance(data, str):
        if data.startswith("${") and data.endswith("}"):
            var_name = data[2:-1]
            return os.environ.get(var_name, data)
        return data
    elif isinstance(data, dict):
        return {k: _substitute_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    return data


def _load_yaml(path: Path) -> dict[str, Any]:
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping")
    return _substitute_env_vars(data)  # type: ignore[no-any-return]


class RelayConfig(BaseSettings):
    """Relay server configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ROOTLINK_",
        env_file=".env",
        extra="ignore",
    )

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds to wait for a tunneled response",
    )
    heartbeat: float = Field(
        default=25.0,
        gt=0,
        description="Seconds between keepalive pings to tunnel clients",
    )
    max_body_size: int = Field(
        default=64 * 1024 * 1024,
        description="Largest public request body accepted",
    )
    max_message_size: int = Field(
        default=96 * 1024 * 1024,
        description="Largest tunnel frame accepted",
    )
    log_level: str = Field(default="INFO", description="Logging level")

    @classmethod
    def from_yaml(cls, path: Path, **overrides: Any) -> RelayConfig:
        """Load configuration from YAML file, letting overrides win."""
        return cls(**{**_load_yaml(path), **overrides})


class AgentConfig(BaseSettings):
    """Client agent configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ROOTLINK_",
        env_file=".env",
        extra="ignore",
    )

    server_url: str = Field(
        default=DEFAULT_SERVER_URL,
        description="Relay address (ws://, wss://, http:// or https://)",
    )
    local_url: str = Field(description="Base URL of the local service")
    tunnel_id: str = Field(min_length=1, description="Tunnel identifier")
    codec: str = Field(default=CODEC_JSON, description="Frame codec")
    reconnect_floor: float = Field(default=2.0, gt=0)
    reconnect_factor: float = Field(default=1.5, ge=1.0)
    reconnect_cap: float = Field(default=15.0, gt=0)
    local_timeout: Optional[float] = Field(
        default=None,
        description="Seconds allowed for a local request (None = unbounded)",
    )
    max_message_size: int = Field(default=96 * 1024 * 1024)
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("local_url")
    def validate_local_url(cls, v: str) -> str:
        """Validate the local target is an http(s) base URL."""
        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"Local URL must be http(s)://host[:port]: {v}")
        return v.rstrip("/")

    @field_validator("server_url")
    def validate_server_url(cls, v: str) -> str:
        """Normalize the relay address to a WebSocket base URL."""
        if not v.startswith(("ws://", "wss://", "http://", "https://")):
            if "localhost" in v or "127.0.0.1" in v:
                v = f"ws://{v}"
            else:
                v = f"wss://{v}"
        if v.startswith("http"):
            v = "ws" + v[len("http"):]
        return v.rstrip("/")

    @field_validator("codec")
    def validate_codec(cls, v: str) -> str:
        """Validate codec is supported."""
        if v not in CODECS:
            raise ValueError(f"Unsupported codec: {v}")
        return v

    @property
    def ws_url(self) -> str:
        """Tunnel endpoint including the connection parameters."""
        return (
            f"{self.server_url}/ws/client"
            f"?tunnelId={quote(self.tunnel_id, safe='')}&codec={self.codec}"
        )

    @property
    def public_url(self) -> str:
        """Public URL the relay serves this tunnel on."""
        http_base = "http" + self.server_url[len("ws"):]
        return f"{http_base}/t/{self.tunnel_id}/"

    @classmethod
    def from_yaml(cls, path: Path, **overrides: Any) -> AgentConfig:
        """Load configuration from YAML file, letting overrides win."""
        return cls(**{**_load_yaml(path), **overrides})
