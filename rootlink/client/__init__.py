"""Rootlink client agent."""

from .connection import Backoff, ConnectionState, TunnelAgent
from .forwarder import ForwardingAgent, ForwardResult

__all__ = [
    "Backoff",
    "ConnectionState",
    "ForwardingAgent",
    "ForwardResult",
    "TunnelAgent",
]
