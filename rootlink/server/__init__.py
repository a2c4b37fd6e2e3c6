"""Rootlink relay server."""

from .correlator import Correlator
from .registry import PendingRequest, Tunnel, TunnelRegistry
from .relay import RelayServer

__all__ = [
    "Correlator",
    "PendingRequest",
    "RelayServer",
    "Tunnel",
    "TunnelRegistry",
]
