"""Exception hierarchy tests."""

import pytest

from rootlink.core.exceptions import (
    APIError,
    ConfigurationError,
    ConnectionError,
    ProtocolError,
    RootlinkError,
    StateTransitionError,
    TunnelError,
)


@pytest.mark.parametrize(
    "exc_class",
    [ConnectionError, ProtocolError, TunnelError, ConfigurationError],
)
def test_subclasses_base(exc_class):
    """Test every error derives from RootlinkError."""
    with pytest.raises(RootlinkError, match="boom"):
        raise exc_class("boom")


def test_state_transition_error():
    """Test StateTransitionError message and attributes."""
    error = StateTransitionError("connected", "connecting")
    assert str(error) == "Cannot move from connected to connecting"
    assert error.current == "connected"
    assert error.target == "connecting"
    assert isinstance(error, RootlinkError)


def test_api_error_status_code():
    """Test APIError keeps the HTTP status."""
    error = APIError("Not found", 404)
    assert str(error) == "Not found"
    assert error.status_code == 404
    assert APIError("Network error").status_code is None
