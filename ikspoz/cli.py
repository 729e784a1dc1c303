import asyncio
import logging
import os
import signal
import sys
import threading
from typing import List, Optional
from urllib.parse import urlparse

import click

from . import __version__
from .config import Config
from .relay import WebSocketRelayChannel, parse_connection_string
from .request_logger import RequestLogger
from .settings import AutoInstance, SettingsError, UserSettingsManager
from .status import TunnelHistory, create_status_app, serve_status_api
from .tunnel import ConnectionState, TunnelEngine, TunnelError, TunnelEvents, TunnelListener
from .tunnel.errors import ChannelError, ChannelNotFound
from .tunnel.events import deliver

logger = logging.getLogger("ikspoz")

# Seconds a graceful shutdown may take before the process is forced to exit
SHUTDOWN_TIMEOUT = 15.0

BANNER = r"""
                            ██████╗
                            ╚═════╝
██╗██╗  ██╗███████╗██████╗  ██████╗ ███████╗
██║██║ ██╔╝██╔════╝██╔══██╗██╔═══██╗╚══███╔╝
██║█████╔╝ ███████╗██████╔╝██║   ██║  ███╔╝
██║██╔═██╗ ╚════██║██╔═══╝ ██║   ██║ ███╔╝
██║██║  ██╗███████║██║     ╚██████╔╝███████╗
╚═╝╚═╝  ╚═╝╚══════╝╚═╝      ╚═════╝ ╚══════╝"""


class ConsoleReporter(TunnelListener):
    """Reports tunnel activity through the ikspoz logger."""

    def on_connecting(self, event):
        logger.info("Connecting...")

    def on_connected(self, event):
        logger.info("Connected!")
        logger.info(f"You can begin sending requests to the following public endpoint: {event.public_url}")

    def on_request_forwarded(self, event):
        logger.info(f"→ Tunneling request: {event.request.method} - {event.request.url}")

    def on_response_received(self, event):
        response = event.response
        logger.info(f"← Tunneling response: {response.status_code} ({response.content_length or 0} bytes)")

    def on_request_error(self, event):
        logger.error(f"Error tunneling request: {event.error!r}")

    def on_response_error(self, event):
        logger.error(f"Error tunneling response: {event.error!r}")

    def on_closing(self, event):
        logger.info("Closing connection...")

    def on_closed(self, event):
        logger.info("Connection closed!")


class AliasedGroup(click.Group):
    def __init__(self, *args, aliases: Optional[dict] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.aliases = aliases or {}

    def get_command(self, ctx, cmd_name):
        return super().get_command(ctx, self.aliases.get(cmd_name, cmd_name))


def validate_target_base_url(ctx, param, value):
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise click.BadParameter(f"{value!r} is not an http(s) URL, e.g. http://localhost:3000")
    return value


async def main_tunnel(connection_string: str, target_base_url: str, api_port: Optional[int] = None,
                      request_log: Optional[str] = None) -> int:
    logger.info(f"Starting tunnel - target base URL: {target_base_url}")

    events = TunnelEvents()
    listeners: List[TunnelListener] = [ConsoleReporter()]
    servers = []

    if request_log:
        listeners.append(RequestLogger(request_log))

    if api_port:
        history = TunnelHistory(target_base_url)
        listeners.append(history)
        servers.append(serve_status_api(create_status_app(history), api_port))

    channel = WebSocketRelayChannel(local_endpoint=target_base_url)
    engine = TunnelEngine(channel, target_base_url, events=events)
    pump_task = asyncio.create_task(events.pump(listeners))

    # Set up signal handlers
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()
    force_exit = False

    def signal_handler(signum, frame):
        nonlocal force_exit
        if force_exit:
            # Second Ctrl+C, force immediate exit
            logger.info("Force exit!")
            os._exit(1)

        force_exit = True
        logger.info("Shutting down... (Press Ctrl+C again to force quit)")
        loop.call_soon_threadsafe(shutdown_event.set)

        def force_shutdown():
            logger.warning("Shutdown timeout, forcing exit...")
            os._exit(1)

        timer = threading.Timer(SHUTDOWN_TIMEOUT, force_shutdown)
        timer.daemon = True
        timer.start()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    opened = False
    try:
        try:
            await engine.open(connection_string)
        except ChannelNotFound as e:
            logger.error(f"{e} Please check the connection string's Endpoint and Entity values.")
            return 1
        except TunnelError as e:
            logger.error(f"An unexpected error occurred while connecting to the relay: {e}")
            return 1
        opened = True

        closed_task = asyncio.create_task(engine.wait_closed())
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        # Wait for either the channel to drop or a shutdown signal
        done, pending = await asyncio.wait(
            {closed_task, shutdown_task},
            return_when=asyncio.FIRST_COMPLETED
        )

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if engine.state is ConnectionState.OPEN:
            await engine.close()
        elif engine.state is not ConnectionState.CLOSED:
            await engine.wait_closed()

        return 0 if shutdown_task in done else 1
    finally:
        # Let listeners see the final events
        if opened:
            await asyncio.wait({pump_task}, timeout=1.0)
        if not pump_task.done():
            pump_task.cancel()
            try:
                await pump_task
            except asyncio.CancelledError:
                pass
            for event in events.drain():
                deliver(event, listeners)

        for server in servers:
            server.should_exit = True

        logger.info("Bye!")


def run_tunnel(connection_string: str, target_base_url: str, api_port: Optional[int] = None,
               request_log: Optional[str] = None) -> int:
    try:
        return asyncio.run(main_tunnel(connection_string, target_base_url, api_port, request_log))
    except KeyboardInterrupt:
        logger.info("Stopping tunnel...")
        return 0
    except Exception as e:
        logger.error(f"Tunnel error: {e}")
        return 1


def tunnel_options(f):
    f = click.option("--request-log", envvar="IKSPOZ_REQUEST_LOG", type=click.Path(dir_okay=False),
                     help="Append every tunneled request to this file (env: IKSPOZ_REQUEST_LOG)")(f)
    f = click.option("--api-port", type=int, envvar="IKSPOZ_API_PORT",
                     help="Serve a local JSON status API on this port (env: IKSPOZ_API_PORT)")(f)
    return f


@click.group()
@click.option("--log-level", default="INFO", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
              envvar="IKSPOZ_LOG_LEVEL", help="Log level (can be set via IKSPOZ_LOG_LEVEL)")
@click.option("--no-banner", "--nb", "no_banner", is_flag=True, envvar="IKSPOZ_NO_BANNER",
              help="Prevents the application banner from being displayed (env: IKSPOZ_NO_BANNER)")
@click.option("--settings-file", envvar="IKSPOZ_SETTINGS_FILE", default=None,
              help="User settings file (default: ~/.ikspoz, env: IKSPOZ_SETTINGS_FILE)")
@click.version_option(__version__, prog_name="ikspoz")
@click.pass_context
def cli(ctx, log_level, no_banner, settings_file):
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Suppress httpx request logs to reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)

    Config.validate()

    if not no_banner:
        click.echo(BANNER)
        click.echo(f"v{__version__}\n")

    ctx.ensure_object(dict)
    ctx.obj["settings"] = UserSettingsManager(settings_file)


@cli.command()
@click.argument("connection_string", envvar="IKSPOZ_CONNECTION_STRING")
@click.argument("target_base_url", callback=validate_target_base_url)
@tunnel_options
def tunnel(connection_string, target_base_url, api_port, request_log):
    """Tunnel traffic from an existing relay connection to TARGET_BASE_URL.

    CONNECTION_STRING looks like
    Endpoint=wss://<relay-host>;Entity=<tunnel-name>;SharedAccessKey=<key>
    """
    sys.exit(run_tunnel(connection_string, target_base_url, api_port, request_log))


@cli.group(cls=AliasedGroup, aliases={
    "initialize": "init",
    "i": "init",
    "clean": "cleanup",
    "c": "cleanup",
    "t": "tunnel",
})
def auto():
    """Tunnel through a relay connection saved in your user settings."""


@auto.command("tunnel")
@click.argument("target_base_url", callback=validate_target_base_url)
@tunnel_options
@click.pass_context
def auto_tunnel(ctx, target_base_url, api_port, request_log):
    """Tunnel traffic from the saved relay connection to TARGET_BASE_URL."""
    settings = _load_settings(ctx)

    if settings.relay_auto_instance is None:
        click.echo('Sorry, "auto" mode does not appear to have been initialized yet. For more information run:\n\n'
                   '\tikspoz auto init --help')
        sys.exit(1)

    sys.exit(run_tunnel(settings.relay_auto_instance.connection_string, target_base_url, api_port, request_log))


@auto.command("init")
@click.option("--connection-string", "-c", required=True, envvar="IKSPOZ_CONNECTION_STRING",
              help="Relay connection string to use in auto mode (env: IKSPOZ_CONNECTION_STRING)")
@click.option("--yes", "-y", is_flag=True, help="Replace an existing auto connection without asking")
@click.pass_context
def auto_init(ctx, connection_string, yes):
    """Save a relay connection for auto mode."""
    try:
        info = parse_connection_string(connection_string)
    except ChannelError as e:
        raise click.BadParameter(str(e), param_hint="--connection-string")

    manager: UserSettingsManager = ctx.obj["settings"]
    settings = _load_settings(ctx)

    if settings.relay_auto_instance is not None and not yes:
        if not click.confirm("An instance has already been initialized for auto mode, are you sure you want to re-initialize?"):
            click.echo("Ok, auto initialization canceled.")
            return
        click.echo("Ok, beginning re-initialization.\n")

    settings = settings.with_auto_instance(AutoInstance(
        connection_string=connection_string,
        endpoint=info.endpoint,
        entity=info.entity,
    ))
    manager.save(settings)
    click.echo(f"Auto mode initialized for {info.endpoint}")


@auto.command("cleanup")
@click.option("--yes", "-y", is_flag=True, help="Remove the saved connection without asking")
@click.pass_context
def auto_cleanup(ctx, yes):
    """Forget the relay connection saved for auto mode."""
    manager: UserSettingsManager = ctx.obj["settings"]
    settings = _load_settings(ctx)

    if settings.relay_auto_instance is None:
        click.echo("No instance has been initialized for auto mode. Try running ikspoz auto init --help")
        return

    if not yes and not click.confirm("Are you sure you want to remove the saved auto mode connection?"):
        click.echo("Ok, we'll keep your auto mode connection.")
        return

    manager.save(settings.with_auto_instance(None))
    click.echo("Auto mode connection removed.")


def _load_settings(ctx):
    try:
        return ctx.obj["settings"].load()
    except SettingsError as e:
        raise click.ClickException(str(e))


if __name__ == "__main__":
    cli()
