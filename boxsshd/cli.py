# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""boxsshd command line interface."""

import asyncio
import functools
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from boxsshd import __version__
from boxsshd.backends import BACKENDS, create_provider_factory
from boxsshd.host_config import ConfigError, get_config
from boxsshd.models.host_config import HostConfigModel
from boxsshd.utils.logging import configure_logging, get_logger, log_startup_info

console = Console()
logger = get_logger(__name__)


def show_error_panel(title: str, message: str) -> None:
    console.print(Panel(message, title=f"[red]{title}[/red]", border_style="red"))


def handle_errors(func: Callable) -> Callable:
    """Render configuration and unexpected errors as a panel and exit 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SystemExit:
            raise
        except click.ClickException:
            raise
        except ConfigError as exc:
            show_error_panel("Configuration Error", str(exc))
            sys.exit(1)
        except Exception as exc:
            show_error_panel("Error", str(exc))
            sys.exit(1)

    return wrapper


def load_config(config_path: Optional[str], overrides: Dict[str, Any]) -> HostConfigModel:
    host_config = get_config(Path(config_path) if config_path else None)
    return host_config.apply_overrides(overrides)


config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    envvar="BOXSSHD_CONFIG",
    help="Configuration file (default: ~/.config/boxsshd/config.yml)",
)


@click.group()
@click.version_option(version=__version__, prog_name="boxsshd")
def cli():
    """boxsshd - SSH into Docker containers, Kubernetes pods and CRI sandboxes.

    The SSH username selects the target container.
    """


@cli.command()
@click.option("-l", "--address", help="Listen address (default: 0.0.0.0)")
@click.option("-p", "--port", type=int, help="Listen port (default: 2232)")
@click.option(
    "-i",
    "--server-key",
    "server_keys",
    multiple=True,
    help="Host key file or glob; may be repeated",
)
@click.option("-c", "--command", help="Command run for shell requests (default: /bin/sh)")
@click.option("--backend", type=click.Choice(BACKENDS), help="Container runtime backend")
@click.option("--docker-host", help="Docker daemon URL (docker backend)")
@click.option("--namespace", help="Pod namespace (kubernetes backend)")
@click.option("--container", help="Container inside the pod (kubernetes backend)")
@click.option("--runtime-endpoint", help="CRI runtime endpoint (cri backend)")
@click.option("--image-endpoint", help="CRI image endpoint (cri backend)")
@config_option
@click.option("--debug", is_flag=True, help="Verbose logging")
@handle_errors
def serve(
    address: Optional[str],
    port: Optional[int],
    server_keys: Tuple[str, ...],
    command: Optional[str],
    backend: Optional[str],
    docker_host: Optional[str],
    namespace: Optional[str],
    container: Optional[str],
    runtime_endpoint: Optional[str],
    image_endpoint: Optional[str],
    config_path: Optional[str],
    debug: bool,
):
    """Run the SSH server until interrupted."""
    configure_logging(debug=debug, daemon=True, force=True)
    log_startup_info()

    config = load_config(
        config_path,
        {
            "listen.address": address,
            "listen.port": port,
            "ssh.host_keys": list(server_keys) or None,
            "command": command,
            "backend": backend,
            "docker.base_url": docker_host,
            "kubernetes.namespace": namespace,
            "kubernetes.container": container,
            "cri.runtime_endpoint": runtime_endpoint,
            "cri.image_endpoint": image_endpoint,
        },
    )
    provider_factory = create_provider_factory(config)
    asyncio.run(_serve(config, provider_factory))


async def _serve(config: HostConfigModel, provider_factory) -> None:
    from boxsshd.server import SSHBridgeServer

    server = SSHBridgeServer(config, provider_factory)
    await server.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    serving = asyncio.create_task(server.serve_forever())
    stopping = asyncio.create_task(stop.wait())
    await asyncio.wait({serving, stopping}, return_when=asyncio.FIRST_COMPLETED)
    stopping.cancel()

    logger.info("Shutting down")
    await server.stop()
    await asyncio.gather(serving, stopping, return_exceptions=True)


@cli.command("config")
@config_option
@handle_errors
def show_config(config_path: Optional[str]):
    """Show the effective configuration."""
    config = load_config(config_path, {})

    table = Table(title="boxsshd configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    def add_rows(prefix: str, values: Dict[str, Any]) -> None:
        for key, value in values.items():
            name = f"{prefix}{key}"
            if isinstance(value, dict):
                add_rows(f"{name}.", value)
            elif isinstance(value, list):
                table.add_row(name, ", ".join(str(v) for v in value))
            else:
                table.add_row(name, "" if value is None else str(value))

    add_rows("", config.model_dump())
    console.print(table)


def main():
    cli()


if __name__ == "__main__":
    main()
