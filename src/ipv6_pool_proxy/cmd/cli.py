"""Command-line interface for the IPv6 pool proxy.

This module provides the command-line entry point, handling:
- Command-line argument parsing
- Subnet validation
- Per-port egress address allocation
- Startup diagnostics for the egress subnet
- Server lifecycle and error reporting

The CLI is built using Typer. Each ``--bind`` address becomes one listener
with its own random address from ``--ipv6-subnet``.

Example:
    # Run from command line:
    $ ipv6-pool-proxy -b 0.0.0.0:51080 -b 0.0.0.0:51081 -i 2001:db8:1:2::/64
"""

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from ipv6_pool_proxy import __version__
from ipv6_pool_proxy.core.config import (
    DEFAULT_BIND,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_HEADER_TIMEOUT,
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_SUBNET,
    ProxySettings,
)
from ipv6_pool_proxy.core.exceptions import InvalidSubnetError
from ipv6_pool_proxy.core.network import (
    IPNetwork,
    ListenerConfig,
    allocate_listeners,
    can_bind_egress,
    parse_subnet,
    subnet_interfaces,
)
from ipv6_pool_proxy.core.proxy import create_proxy_server
from ipv6_pool_proxy.core.utils.log_config import LOG_DIR, setup_logging

console = Console()
app = typer.Typer(
    help="HTTP proxy that sends each listening port's traffic from its own address in an IPv6 subnet",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Show version information."""
    if value:
        console.print(f"[cyan]IPv6 Pool Proxy v{__version__}[/cyan]")
        raise typer.Exit()


def show_listeners(listeners: list[ListenerConfig], subnet: IPNetwork) -> None:
    """Print the listener table: bind address and its egress address."""
    table = Table(title=f"Egress subnet {subnet}")
    table.add_column("Listener", style="cyan")
    table.add_column("Egress address", style="green")
    for listener in listeners:
        table.add_row(listener.bind_label, str(listener.egress_address))
    console.print(table)


def check_egress(listeners: list[ListenerConfig], subnet: IPNetwork) -> None:
    """Warn about egress addresses this host cannot source traffic from."""
    interfaces = subnet_interfaces(subnet)
    if interfaces:
        logger.info(f"Subnet {subnet} is configured on {', '.join(interfaces)}")

    for listener in listeners:
        if not can_bind_egress(listener.egress_address):
            logger.warning(
                f"{listener.egress_address} is not local to this host; "
                f"route the subnet locally (ip route add local {subnet} dev lo) "
                "or replies will not come back"
            )


@app.command()
def start_proxy(
    bind: list[str] | None = typer.Option(
        None,
        "--bind",
        "-b",
        help=f"HTTP proxy bind address, repeatable (default: {DEFAULT_BIND})",
    ),
    ipv6_subnet: str = typer.Option(
        DEFAULT_SUBNET,
        "--ipv6-subnet",
        "-i",
        envvar="IPV6_POOL_PROXY_SUBNET",
        help="Subnet the egress addresses are drawn from",
    ),
    connect_timeout: float = typer.Option(
        DEFAULT_CONNECT_TIMEOUT, "--connect-timeout", min=0.1, help="Seconds allowed per egress dial"
    ),
    header_timeout: float = typer.Option(
        DEFAULT_HEADER_TIMEOUT, "--header-timeout", min=0.1, help="Seconds a client gets to send its request head"
    ),
    idle_timeout: float = typer.Option(
        DEFAULT_IDLE_TIMEOUT, "--idle-timeout", min=0.1, help="Seconds without traffic before a relay is closed"
    ),
    debug: bool = typer.Option(
        default=False,
        help="Enable debug logging",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit",
    ),
):
    """Start the HTTP proxy, one listener per bind address."""
    setup_logging(debug, log_dir=LOG_DIR)

    try:
        subnet = parse_subnet(ipv6_subnet)
    except InvalidSubnetError as e:
        logger.error(str(e))
        console.print(f"[red]Invalid IPv6 subnet: {ipv6_subnet}")
        raise typer.Exit(1) from e

    listeners = allocate_listeners(bind or [DEFAULT_BIND], subnet)
    if not listeners:
        console.print("[red]No valid bind address given")
        raise typer.Exit(1)

    show_listeners(listeners, subnet)
    check_egress(listeners, subnet)

    settings = ProxySettings(
        header_timeout=header_timeout,
        connect_timeout=connect_timeout,
        idle_timeout=idle_timeout,
    )
    logger.info(f"Starting {len(listeners)} listener(s) with egress subnet {subnet}")
    if not create_proxy_server(listeners, settings):
        console.print("[red]No listener could be started")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
