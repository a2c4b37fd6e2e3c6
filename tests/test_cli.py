"""CLI tests."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from rootlink import __version__
from rootlink.cli import _connect, _new_tunnel, _tunnel_status, cli, main
from rootlink.core.api import TunnelIssued, TunnelStatus
from rootlink.core.config import AgentConfig, RelayConfig
from rootlink.core.exceptions import APIError, TunnelError


def close_coroutine(coro):
    """Stand-in for asyncio.run that does not leave coroutines unawaited."""
    coro.close()
    return 0


def test_version():
    """Test version command."""
    runner = CliRunner()
    result = runner.invoke(cli, ["version"])
    assert result.exit_code == 0
    assert f"rootlink {__version__}" in result.output


def test_version_flag_json():
    runner = CliRunner()
    result = runner.invoke(cli, ["--json", "--version"])
    assert result.exit_code == 0
    assert json.loads(result.output) == {"version": __version__}


def test_help():
    """Test help output."""
    runner = CliRunner()
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "Rootlink" in result.output


@patch("rootlink.cli.asyncio.run", side_effect=close_coroutine)
@patch("rootlink.cli._run_relay")
def test_relay_command(mock_run_relay, mock_run):
    """Test relay options reach the configuration."""
    runner = CliRunner()
    result = runner.invoke(cli, ["relay", "--port", "8080", "--timeout", "5"])
    assert result.exit_code == 0
    config = mock_run_relay.call_args.args[0]
    assert isinstance(config, RelayConfig)
    assert config.port == 8080
    assert config.request_timeout == 5.0


def test_relay_rejects_bad_port():
    runner = CliRunner()
    result = runner.invoke(cli, ["relay", "--port", "0"])
    assert result.exit_code == 2


@patch("rootlink.cli.asyncio.run", side_effect=close_coroutine)
@patch("rootlink.cli._run_agent")
def test_start_command(mock_run_agent, mock_run, tmp_path):
    """Test the agent starts from a YAML file."""
    path = tmp_path / "rootlink.yml"
    path.write_text("local_url: http://localhost:8000\ntunnel_id: fromfile\n")
    runner = CliRunner()
    result = runner.invoke(cli, ["start", str(path)])
    assert result.exit_code == 0
    config = mock_run_agent.call_args.args[0]
    assert isinstance(config, AgentConfig)
    assert config.tunnel_id == "fromfile"


def test_start_invalid_config(tmp_path):
    path = tmp_path / "rootlink.yml"
    path.write_text("tunnel_id: x\n")
    runner = CliRunner()
    result = runner.invoke(cli, ["start", str(path)])
    assert result.exit_code == 2
    assert "Invalid configuration" in result.output


def test_config_example():
    runner = CliRunner()
    result = runner.invoke(cli, ["config", "--example"])
    assert result.exit_code == 0
    assert "local_url: http://localhost:3000" in result.output


@patch("rootlink.cli.asyncio.run", side_effect=close_coroutine)
def test_connect_command(mock_run):
    runner = CliRunner()
    result = runner.invoke(cli, ["connect", "http://localhost:3000", "abc123"])
    assert result.exit_code == 0
    mock_run.assert_called_once()


class TestCommandBodies:
    """The async bodies behind the commands."""

    @pytest.mark.asyncio
    async def test_connect_uses_remembered_tunnel(self):
        manager = MagicMock()
        manager.get_tunnel_id = AsyncMock(return_value="saved1")
        manager.get_server_url = AsyncMock(return_value="wss://relay.example.com")
        with patch("rootlink.cli.config_manager", manager), patch(
            "rootlink.cli._run_agent", AsyncMock(return_value=0)
        ) as run_agent:
            assert await _connect("http://localhost:3000", None, None, None) == 0

        config = run_agent.call_args.args[0]
        assert config.tunnel_id == "saved1"
        assert config.server_url == "wss://relay.example.com"

    @pytest.mark.asyncio
    async def test_connect_without_tunnel_id(self):
        manager = MagicMock()
        manager.get_tunnel_id = AsyncMock(return_value=None)
        with patch("rootlink.cli.config_manager", manager):
            assert await _connect("http://localhost:3000", None, "ws://x", None) == 2

    @pytest.mark.asyncio
    async def test_connect_invalid_local_url(self):
        assert await _connect("localhost", "abc123", "ws://x", None) == 2

    @pytest.mark.asyncio
    async def test_new_tunnel_saved(self, capsys):
        manager = MagicMock()
        manager.set_server_url = AsyncMock()
        manager.set_tunnel_id = AsyncMock()
        api = MagicMock()
        api.__aenter__ = AsyncMock(return_value=api)
        api.__aexit__ = AsyncMock(return_value=None)
        api.new_tunnel = AsyncMock(return_value=TunnelIssued(tunnel_id="k3x9a2bq"))

        with patch("rootlink.cli.config_manager", manager), patch(
            "rootlink.cli.APIClient", return_value=api
        ):
            assert await _new_tunnel("ws://localhost:3001", quiet=True) == 0

        manager.set_tunnel_id.assert_awaited_once_with("k3x9a2bq")
        assert capsys.readouterr().out.strip() == "k3x9a2bq"

    @pytest.mark.asyncio
    async def test_status_relay_down(self):
        api = MagicMock()
        api.__aenter__ = AsyncMock(return_value=api)
        api.__aexit__ = AsyncMock(return_value=None)
        api.tunnel_status = AsyncMock(side_effect=APIError("Network error"))

        with patch("rootlink.cli.APIClient", return_value=api):
            assert await _tunnel_status("abc123", "ws://localhost:3001") == 69

    @pytest.mark.asyncio
    async def test_status_json(self, capsys):
        api = MagicMock()
        api.__aenter__ = AsyncMock(return_value=api)
        api.__aexit__ = AsyncMock(return_value=None)
        api.tunnel_status = AsyncMock(
            return_value=TunnelStatus(tunnel_id="abc123", connected=True)
        )

        with patch("rootlink.cli.APIClient", return_value=api):
            code = await _tunnel_status("abc123", "ws://x", json_output=True)

        assert code == 0
        assert json.loads(capsys.readouterr().out) == {
            "tunnelId": "abc123",
            "connected": True,
        }


@patch("rootlink.cli.cli", side_effect=TunnelError("Tunnel abc123 is closed"))
def test_main_reports_errors(mock_cli, capsys):
    """Test unexpected Rootlink errors exit with status 1."""
    with pytest.raises(SystemExit) as exc_info:
        main()
    assert exc_info.value.code == 1
    assert "Error: Tunnel abc123 is closed" in capsys.readouterr().err


@patch("rootlink.cli.cli", side_effect=KeyboardInterrupt)
def test_main_interrupted(mock_cli):
    with pytest.raises(SystemExit) as exc_info:
        main()
    assert exc_info.value.code == 130
