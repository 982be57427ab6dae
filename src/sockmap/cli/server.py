"""CLI command: sockmap server — collect live captures from agents."""

from __future__ import annotations

import shlex
import sys

import click
from rich.console import Console
from rich.table import Table

from sockmap.cli.correlate import load_config, print_diagnostics, print_edges
from sockmap.config import MIN_RECORD_INTERVAL, SockMapConfig
from sockmap.correlate import ConnectionGraph, correlate
from sockmap.errors import AgentError, SockMapError
from sockmap.export import write_connections_csv
from sockmap.inventory.models import HostInventory
from sockmap.inventory.store import InventoryStore
from sockmap.protocol.server import AgentState, CollectionServer

console = Console(stderr=True)

HELP = """\
  agents            list connected agents
  capture [HOST]    single capture of one agent, or of all of them
  record [SECONDS]  start recording on every idle agent
  stop              stop every recording and keep the merged results
  graph             correlate everything captured so far
  csv FILE          write the current connections as CSV
  help              this text
  quit              stop the server"""


class ServerConsole:
    """Line-oriented control console driving a CollectionServer."""

    def __init__(self, server: CollectionServer, config: SockMapConfig) -> None:
        self.server = server
        self.config = config

    def handle(self, line: str) -> bool:
        """Run one console command. Returns False when the console should exit."""
        try:
            words = shlex.split(line)
        except ValueError as exc:
            console.print(f"[red]{exc}[/red]")
            return True
        if not words:
            return True
        command, args = words[0].lower(), words[1:]

        if command in ("quit", "exit"):
            return False
        handler = getattr(self, f"do_{command}", None)
        if handler is None:
            console.print(f"[red]Unknown command:[/red] {command} (try 'help')")
            return True
        try:
            handler(args)
        except SockMapError as exc:
            console.print(f"[red]{exc}[/red]")
        return True

    def do_help(self, args: list[str]) -> None:
        console.print(HELP)

    def do_agents(self, args: list[str]) -> None:
        connections = self.server.registry.connections()
        if not connections:
            console.print("[dim]No agents connected.[/dim]")
            return
        table = Table(title="Agents", show_lines=False)
        table.add_column("Host", style="cyan")
        table.add_column("Name")
        table.add_column("Peer")
        table.add_column("State")
        table.add_column("Snapshots", justify="right")
        for conn in connections:
            table.add_row(
                conn.name,
                conn.pretty_name,
                conn.peer,
                conn.state.value,
                str(conn.snapshots),
            )
        console.print(table)

    def do_capture(self, args: list[str]) -> None:
        hosts = args or sorted(self.server.list_active_agents())
        if not hosts:
            console.print("[dim]No agents connected.[/dim]")
            return
        for host in hosts:
            try:
                inventory = self.server.trigger_capture(host)
            except AgentError as exc:
                console.print(f"  [red]{exc}[/red]")
                continue
            self._print_captured(inventory)

    def do_record(self, args: list[str]) -> None:
        interval = self.config.record_interval
        if args:
            try:
                interval = float(args[0])
            except ValueError:
                console.print(f"[red]Not a number:[/red] {args[0]}")
                return
        if interval < MIN_RECORD_INTERVAL:
            console.print(f"[red]Interval must be at least {MIN_RECORD_INTERVAL}s[/red]")
            return
        started = 0
        for conn in self.server.registry.connections():
            if conn.state is not AgentState.IDLE:
                continue
            try:
                self.server.start_recording(conn.name, interval)
            except AgentError as exc:
                console.print(f"  [red]{exc}[/red]")
                continue
            started += 1
        console.print(f"Recording on {started} agent(s) every {interval:g}s")

    def do_stop(self, args: list[str]) -> None:
        stopped = 0
        for conn in self.server.registry.connections():
            if conn.state is not AgentState.RECORDING:
                continue
            try:
                inventory = self.server.stop_recording(conn.name)
            except AgentError as exc:
                console.print(f"  [red]{exc}[/red]")
                continue
            stopped += 1
            self._print_captured(inventory)
        if not stopped:
            console.print("[dim]No recording in progress.[/dim]")

    def do_graph(self, args: list[str]) -> None:
        graph = self.graph()
        print_edges(graph)
        print_diagnostics([*self.server.diagnostics(), *graph.diagnostics])

    def do_csv(self, args: list[str]) -> None:
        if len(args) != 1:
            console.print("[red]Usage:[/red] csv FILE")
            return
        write_connections_csv(self.graph(), args[0])
        console.print(f"Connections written to [cyan]{args[0]}[/cyan]")

    def graph(self) -> ConnectionGraph:
        return correlate(
            self.server.store.snapshot(),
            include_loopback=self.config.include_loopback,
            exclude_processes=self.config.exclude_processes,
        )

    def _print_captured(self, inventory: HostInventory) -> None:
        console.print(
            f"  [green]{inventory.name}[/green]: {len(inventory.interfaces)} address(es), "
            f"{len(inventory.listening)} listening, "
            f"{len(inventory.established)} established"
        )


@click.command()
@click.option("--bind", "bind", default=None, help="Address to listen on.")
@click.option("--port", type=int, default=None, help="Port to listen on (default: 6840).")
@click.option(
    "--timeout", type=float, default=None, help="Seconds to wait for a snapshot."
)
@click.pass_context
def server(
    ctx: click.Context, bind: str | None, port: int | None, timeout: float | None
) -> None:
    """Start a collection server and an interactive control console."""
    config = load_config(ctx)
    if bind is not None:
        config.server_host = bind
    if port is not None:
        config.server_port = port
    if timeout is not None:
        config.capture_timeout = timeout

    collection = CollectionServer(
        InventoryStore(),
        host=config.server_host,
        port=config.server_port,
        capture_timeout=config.capture_timeout,
    )
    try:
        collection.start()
    except OSError as exc:
        console.print(f"[red]Cannot listen on {config.server_host}:{config.server_port}:[/red] {exc}")
        sys.exit(1)

    host, bound_port = collection.address
    console.print(
        f"[bold]sockmap[/bold] server listening on [cyan]{host}:{bound_port}[/cyan]"
    )
    console.print(
        "  [dim]Unauthenticated and unencrypted; use a trusted network or VPN[/dim]"
    )
    console.print("  Type 'help' for commands.\n")

    shell = ServerConsole(collection, config)
    try:
        while True:
            try:
                line = console.input("[bold]sockmap>[/bold] ")
            except EOFError:
                break
            if not shell.handle(line):
                break
    except KeyboardInterrupt:
        console.print("\n[dim]Stopping...[/dim]")
    finally:
        collection.stop()
