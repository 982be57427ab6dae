"""CLI command: sockmap agent HOST:PORT — serve captures to a collection server."""

from __future__ import annotations

import signal
import sys

import click
from rich.console import Console

from sockmap.agent.client import Agent
from sockmap.agent.collector import PsutilCollector, check_privileges, default_collector

console = Console(stderr=True)


def parse_address(text: str) -> tuple[str, int]:
    """``host:port`` or ``[v6]:port`` -> ``(host, port)``."""
    host, sep, port = text.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise click.BadParameter(f"expected HOST:PORT, got {text!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


@click.command()
@click.argument("address")
@click.option("--name", "-n", default="", help="Friendly name shown on the server.")
@click.option(
    "--psutil", "use_psutil", is_flag=True, help="Collect with psutil instead of ss/ip."
)
@click.option(
    "--no-root",
    is_flag=True,
    help="Run without root privileges (not every process will be shown).",
)
def agent(address: str, name: str, use_psutil: bool, no_root: bool) -> None:
    """Connect to the server at ADDRESS (HOST:PORT) and answer capture requests."""
    server_address = parse_address(address)
    if not no_root and not check_privileges():
        console.print("[red]Must run as root[/red] (or pass --no-root)")
        sys.exit(1)
    collector = PsutilCollector() if use_psutil else default_collector()
    client = Agent(server_address, collector, pretty_name=name)

    try:
        client.connect()
    except OSError as exc:
        console.print(f"[red]Cannot connect to {address}:[/red] {exc}")
        sys.exit(1)

    console.print(
        f"[bold]sockmap[/bold] agent [cyan]{client.hostname}[/cyan] "
        f"connected to [cyan]{address}[/cyan] "
        f"({type(collector).__name__})"
    )
    console.print("  Press Ctrl+C to stop.\n")

    def _signal_handler(signum: int, frame: object) -> None:
        console.print("\n[dim]Stopping...[/dim]")
        client.stop()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        client.run()
    except KeyboardInterrupt:
        client.stop()
