"""Rootlink command-line interface.

Primary output (public URLs, tunnel ids) goes to stdout, everything else
to stderr, with Unix exit codes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Set

import click
import yaml
from pydantic import ValidationError

from . import __version__
from .client.config_manager import config_manager
from .client.connection import TunnelAgent
from .core.api import APIClient
from .core.config import AgentConfig, RelayConfig
from .core.exceptions import APIError, ConfigurationError, RootlinkError
from .core.protocol import CODECS
from .server.relay import RelayServer

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_UNAVAILABLE = 69  # EX_UNAVAILABLE - service unavailable
EXIT_INTERRUPTED = 130  # 128 + SIGINT(2)


class FlushingStreamHandler(logging.StreamHandler):
    """StreamHandler that flushes after every emit for real-time output."""

    def emit(self, record: logging.LogRecord) -> None:
        super().emit(record)
        self.flush()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    quiet: bool = False,
) -> logging.Logger:
    """Set up logging with proper flushing and stderr output.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for persistent logging
        quiet: If True, suppress all log output to stderr

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger("rootlink")
    logger.setLevel(level.upper())

    logger.handlers.clear()

    if not quiet:
        console = FlushingStreamHandler(sys.stderr)
        console.setLevel(level.upper())
        console.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)

    return logger


def echo_stderr(message: str) -> None:
    """Echo to stderr (for status messages)."""
    click.echo(message, err=True)


def echo_stdout(message: str, flush: bool = True) -> None:
    """Echo to stdout (for primary output like URLs)."""
    click.echo(message, err=False)
    if flush:
        sys.stdout.flush()


def _install_signal_handlers(callback: Any) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, callback)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


class Context:
    """CLI context for sharing state."""

    def __init__(self) -> None:
        self.quiet: bool = False
        self.json_output: bool = False
        self.log_level: str = "INFO"
        self.log_file: Optional[str] = None


pass_context = click.make_pass_decorator(Context, ensure=True)


@click.group(invoke_without_command=True)
@click.option("--version", "-V", is_flag=True, help="Show version and exit")
@click.option(
    "--quiet", "-q", is_flag=True, envvar="ROOTLINK_QUIET",
    help="Suppress all output except errors and primary output"
)
@click.option(
    "--json", "json_output", is_flag=True,
    help="Output machine readable JSON (implies --quiet)"
)
@click.option(
    "--log-level", "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO", envvar="ROOTLINK_LOG_LEVEL",
    help="Set logging verbosity [default: INFO]"
)
@click.option(
    "--log-file", type=click.Path(dir_okay=False, writable=True),
    envvar="ROOTLINK_LOG_FILE",
    help="Write logs to file in addition to stderr"
)
@click.pass_context
def cli(
    ctx: click.Context,
    version: bool,
    quiet: bool,
    json_output: bool,
    log_level: str,
    log_file: Optional[str],
) -> None:
    """Rootlink - expose a local HTTP service through a public relay.

    \b
    Quick start:
      rootlink relay                          # Run a relay on :3001
      rootlink new                            # Get a tunnel id
      rootlink connect http://localhost:3000  # Go live

    \b
    Environment variables:
      ROOTLINK_SERVER         Relay address (ws://, wss://, http://, https://)
      ROOTLINK_LOG_LEVEL      Logging level
      ROOTLINK_QUIET          Suppress output (set to 1)

    Run 'rootlink COMMAND --help' for command-specific help.
    """
    ctx.ensure_object(Context)
    ctx.obj.quiet = quiet or json_output
    ctx.obj.json_output = json_output
    ctx.obj.log_level = log_level
    ctx.obj.log_file = log_file

    if version:
        if json_output:
            echo_stdout(json.dumps({"version": __version__}))
        else:
            echo_stdout(f"rootlink {__version__}")
        ctx.exit(EXIT_SUCCESS)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--host", metavar="ADDR", help="Bind address [default: 0.0.0.0]")
@click.option(
    "--port", "-p", type=click.IntRange(1, 65535),
    help="Listen port [default: 3001]"
)
@click.option(
    "--timeout", type=click.FloatRange(min=0, min_open=True), metavar="SECONDS",
    help="Seconds to wait for a tunneled response [default: 30]"
)
@click.option(
    "--config", "config_path", type=click.Path(exists=True, path_type=Path),
    help="YAML relay configuration"
)
@pass_context
def relay(
    ctx: Context,
    host: Optional[str],
    port: Optional[int],
    timeout: Optional[float],
    config_path: Optional[Path],
) -> None:
    """Run the relay server.

    \b
    Examples:
      rootlink relay                    # Listen on 0.0.0.0:3001
      rootlink relay -p 8080            # Different port
      rootlink relay --timeout 60       # Allow slow local services
    """
    setup_logging(ctx.log_level, ctx.log_file, ctx.quiet)

    overrides: Dict[str, Any] = {
        key: value
        for key, value in (
            ("host", host),
            ("port", port),
            ("request_timeout", timeout),
        )
        if value is not None
    }
    try:
        if config_path:
            config = RelayConfig.from_yaml(config_path, **overrides)
        else:
            config = RelayConfig(**overrides)
    except (ValidationError, ConfigurationError, yaml.YAMLError) as e:
        echo_stderr(f"Error: Invalid relay configuration: {e}")
        sys.exit(EXIT_USAGE)

    exit_code = asyncio.run(_run_relay(config, quiet=ctx.quiet))
    sys.exit(exit_code)


@cli.command()
@click.argument("local_url")
@click.argument("tunnel_id", required=False)
@click.option(
    "--server", metavar="URL", envvar="ROOTLINK_SERVER",
    help="Relay address [default: last used, or ws://localhost:3001]"
)
@click.option(
    "--codec", type=click.Choice(list(CODECS)),
    help="Frame codec [default: json]"
)
@pass_context
def connect(
    ctx: Context,
    local_url: str,
    tunnel_id: Optional[str],
    server: Optional[str],
    codec: Optional[str],
) -> None:
    """Expose LOCAL_URL through tunnel TUNNEL_ID.

    \b
    Examples:
      rootlink connect http://localhost:3000 abc12345
      rootlink connect http://localhost:3000          # Last id from 'new'
      rootlink connect http://localhost:8080 abc12345 --server wss://relay.example.com

    \b
    The public URL is printed to stdout for easy scripting:
      URL=$(rootlink -q connect http://localhost:3000 | head -1)
    """
    setup_logging(ctx.log_level, ctx.log_file, ctx.quiet)

    exit_code = asyncio.run(
        _connect(local_url, tunnel_id, server, codec, quiet=ctx.quiet)
    )
    sys.exit(exit_code)


@cli.command()
@click.argument(
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default="rootlink.yml",
    required=False,
)
@pass_context
def start(ctx: Context, config_path: Path) -> None:
    """Run the client agent from a YAML configuration file.

    \b
    Default config file: rootlink.yml

    \b
    Example config:
      server_url: wss://relay.example.com
      local_url: http://localhost:3000
      tunnel_id: ${ROOTLINK_TUNNEL_ID}
      codec: msgpack
    """
    setup_logging(ctx.log_level, ctx.log_file, ctx.quiet)

    try:
        config = AgentConfig.from_yaml(config_path)
    except FileNotFoundError:
        echo_stderr(f"Error: Config file not found: {config_path}")
        sys.exit(EXIT_USAGE)
    except yaml.YAMLError as e:
        echo_stderr(f"Error: Invalid YAML in {config_path}: {e}")
        sys.exit(EXIT_USAGE)
    except (ValidationError, ConfigurationError) as e:
        echo_stderr(f"Error: Invalid configuration in {config_path}: {e}")
        sys.exit(EXIT_USAGE)

    exit_code = asyncio.run(_run_agent(config, quiet=ctx.quiet))
    sys.exit(exit_code)


@cli.command()
@click.option(
    "--server", metavar="URL", envvar="ROOTLINK_SERVER",
    help="Relay address [default: last used, or ws://localhost:3001]"
)
@pass_context
def new(ctx: Context, server: Optional[str]) -> None:
    """Ask the relay for a fresh tunnel id.

    The id is remembered, so a later 'rootlink connect' can omit it.
    """
    exit_code = asyncio.run(_new_tunnel(server, ctx.json_output, ctx.quiet))
    sys.exit(exit_code)


@cli.command()
@click.argument("tunnel_id")
@click.option(
    "--server", metavar="URL", envvar="ROOTLINK_SERVER",
    help="Relay address [default: last used, or ws://localhost:3001]"
)
@pass_context
def status(ctx: Context, tunnel_id: str, server: Optional[str]) -> None:
    """Show whether TUNNEL_ID currently has a live connection."""
    exit_code = asyncio.run(_tunnel_status(tunnel_id, server, ctx.json_output))
    sys.exit(exit_code)


@cli.command()
@click.option("--show", is_flag=True, help="Show remembered settings")
@click.option("--example", is_flag=True, help="Print example YAML configuration")
@click.option("--path", is_flag=True, help="Print state file path")
def config(show: bool, example: bool, path: bool) -> None:
    """View remembered settings or print an example config."""
    if path:
        echo_stdout(str(config_manager.config_path))
        return

    if show:
        stored = asyncio.run(config_manager.load())
        echo_stderr("Rootlink Configuration")
        echo_stderr("=" * 40)
        echo_stderr(f"  Server: {stored.server_url}")
        echo_stderr(f"  Tunnel: {stored.tunnel_id or '(none issued)'}")
        echo_stderr(f"  File:   {config_manager.config_path}")

    elif example:
        example_config = {
            "server_url": "wss://relay.example.com",
            "local_url": "http://localhost:3000",
            "tunnel_id": "${ROOTLINK_TUNNEL_ID}",
            "codec": "json",
            "reconnect_floor": 2.0,
            "reconnect_cap": 15.0,
        }
        echo_stdout("# Rootlink agent configuration")
        echo_stdout("# Save as rootlink.yml and run: rootlink start")
        echo_stdout(
            yaml.dump(example_config, default_flow_style=False, sort_keys=False)
        )

    else:
        echo_stderr("Usage: rootlink config [--show|--example|--path]")


@cli.command()
def version() -> None:
    """Show version and build information."""
    echo_stdout(f"rootlink {__version__}")
    echo_stderr(f"Python {sys.version.split()[0]}")
    echo_stderr(f"Platform: {sys.platform}")


async def _run_relay(config: RelayConfig, quiet: bool = False) -> int:
    """Serve until SIGINT/SIGTERM.

    Returns:
        Exit code (0 for success, 69 if the relay could not start)
    """
    server = RelayServer(config)
    shutdown_event = asyncio.Event()
    _install_signal_handlers(shutdown_event.set)

    server_task = asyncio.create_task(server.start())
    stop_task = asyncio.create_task(shutdown_event.wait())
    done, _ = await asyncio.wait(
        {server_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
    )
    stop_task.cancel()

    if server_task in done and not server_task.cancelled():
        error = server_task.exception()
        echo_stderr(f"Error: Relay stopped: {error}")
        return EXIT_UNAVAILABLE

    if not quiet:
        echo_stderr("\nShutting down...")
    server_task.cancel()
    await asyncio.gather(server_task, return_exceptions=True)
    return EXIT_SUCCESS


async def _connect(
    local_url: str,
    tunnel_id: Optional[str],
    server: Optional[str],
    codec: Optional[str],
    quiet: bool = False,
) -> int:
    """Resolve settings for 'connect' and run the agent."""
    if tunnel_id is None:
        tunnel_id = await config_manager.get_tunnel_id()
        if not tunnel_id:
            echo_stderr(
                "Error: No tunnel id given and none remembered. "
                "Run 'rootlink new' first."
            )
            return EXIT_USAGE
    if server is None:
        server = await config_manager.get_server_url()

    settings: Dict[str, Any] = {
        "server_url": server,
        "local_url": local_url,
        "tunnel_id": tunnel_id,
    }
    if codec is not None:
        settings["codec"] = codec

    try:
        agent_config = AgentConfig(**settings)
    except ValidationError as e:
        echo_stderr(f"Error: {e}")
        return EXIT_USAGE

    return await _run_agent(agent_config, quiet=quiet)


async def _run_agent(config: AgentConfig, quiet: bool = False) -> int:
    """Run the client agent until SIGINT/SIGTERM.

    Returns:
        Exit code (0 for success, non-zero for error)
    """

    def on_connected(public_url: str) -> None:
        # For scripting: just the URL to stdout
        echo_stdout(public_url)
        if not quiet:
            echo_stderr("")
            echo_stderr(f"Forwarding {public_url} -> {config.local_url}")
            echo_stderr("")
            echo_stderr("Press Ctrl+C to stop")
            echo_stderr("-" * 40)

    agent = TunnelAgent(config, on_connected=on_connected)
    pending: Set[asyncio.Task[None]] = set()

    def signal_handler() -> None:
        task = asyncio.create_task(agent.shutdown())
        pending.add(task)
        task.add_done_callback(pending.discard)

    _install_signal_handlers(signal_handler)

    if not quiet:
        echo_stderr(f"Connecting to {config.server_url}...")
    try:
        await agent.run()
    finally:
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if not quiet:
            echo_stderr("Tunnel closed.")
    return EXIT_SUCCESS


async def _new_tunnel(
    server: Optional[str], json_output: bool = False, quiet: bool = False
) -> int:
    if server is None:
        server = await config_manager.get_server_url()

    try:
        async with APIClient(server) as api:
            issued = await api.new_tunnel()
    except APIError as e:
        echo_stderr(f"Error: {e}")
        return EXIT_UNAVAILABLE

    await config_manager.set_server_url(server)
    await config_manager.set_tunnel_id(issued.tunnel_id)

    if json_output:
        echo_stdout(json.dumps(issued.model_dump(by_alias=True)))
    else:
        echo_stdout(issued.tunnel_id)
        if not quiet:
            echo_stderr(
                f"Run: rootlink connect http://localhost:3000 {issued.tunnel_id}"
            )
    return EXIT_SUCCESS


async def _tunnel_status(
    tunnel_id: str, server: Optional[str], json_output: bool = False
) -> int:
    if server is None:
        server = await config_manager.get_server_url()

    try:
        async with APIClient(server) as api:
            result = await api.tunnel_status(tunnel_id)
    except APIError as e:
        echo_stderr(f"Error: {e}")
        return EXIT_UNAVAILABLE

    if json_output:
        echo_stdout(json.dumps(result.model_dump(by_alias=True)))
    else:
        state = "connected" if result.connected else "offline"
        echo_stdout(f"{result.tunnel_id}: {state}")
    return EXIT_SUCCESS


def main() -> None:
    """Entry point for the CLI."""
    try:
        cli()
    except KeyboardInterrupt:
        echo_stderr("\nInterrupted")
        sys.exit(EXIT_INTERRUPTED)
    except RootlinkError as e:
        echo_stderr(f"Error: {e}")
        sys.exit(EXIT_ERROR)


if __name__ == "__main__":
    main()
