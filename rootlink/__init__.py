"""Rootlink - expose a local HTTP service through a public relay."""

__version__ = "1.0.0"

from .client.connection import ConnectionState, TunnelAgent
from .client.forwarder import ForwardingAgent, ForwardResult
from .core.config import AgentConfig, RelayConfig
from .core.exceptions import (
    APIError,
    ConfigurationError,
    ConnectionError,
    ProtocolError,
    RootlinkError,
    StateTransitionError,
    TunnelError,
)
from .server.relay import RelayServer

__all__ = [
    "AgentConfig",
    "APIError",
    "ConfigurationError",
    "ConnectionError",
    "ConnectionState",
    "ForwardingAgent",
    "ForwardResult",
    "ProtocolError",
    "RelayConfig",
    "RelayServer",
    "RootlinkError",
    "StateTransitionError",
    "TunnelAgent",
    "TunnelError",
    "__version__",
]
