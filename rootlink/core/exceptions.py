"""Rootlink exceptions."""

from typing import Optional


class RootlinkError(Exception):
    """Base exception for all Rootlink errors."""

    pass


class ConnectionError(RootlinkError):
    """Tunnel connection errors."""

    pass


class ProtocolError(RootlinkError):
    """Malformed or unknown tunnel messages."""

    pass


class TunnelError(RootlinkError):
    """Tunnel dispatch errors."""

    pass


class ConfigurationError(RootlinkError):
    """Configuration-related errors."""

    pass


class StateTransitionError(RootlinkError):
    """Illegal connection state transition."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move from {current} to {target}")
        self.current = current
        self.target = target


class APIError(RootlinkError):
    """Relay API request errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
