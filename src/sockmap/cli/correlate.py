"""CLI command: sockmap correlate <directory> — build the connection map."""

from __future__ import annotations

import sys
from collections.abc import Iterable

import click
from rich.console import Console
from rich.table import Table

from sockmap.config import SockMapConfig
from sockmap.correlate import ConnectionGraph, correlate
from sockmap.errors import Diagnostic, InputError, Severity
from sockmap.export import write_connections_csv, write_graph_json
from sockmap.parsers import load_directory

console = Console(stderr=True)

_SEVERITY_COLORS = {
    Severity.INFO: "blue",
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
}


def load_config(ctx: click.Context) -> SockMapConfig:
    """Config for this invocation; exits on an invalid file or value."""
    obj = ctx.find_root().obj or {}
    if "config" not in obj:
        try:
            obj["config"] = SockMapConfig.load(obj.get("config_path"))
        except (OSError, ValueError) as exc:
            console.print(f"[red]Invalid configuration:[/red] {exc}")
            sys.exit(1)
    return obj["config"]


def print_edges(graph: ConnectionGraph) -> None:
    if not graph.edges:
        console.print("[yellow]No connections found.[/yellow]")
        return

    table = Table(title="Connections", show_lines=False)
    table.add_column("Client", style="cyan")
    table.add_column("Client socket")
    table.add_column("Server", style="green")
    table.add_column("Server socket")
    table.add_column("Proto")
    table.add_column("Rule", style="dim")
    for edge in graph.edges:
        table.add_row(
            str(edge.client),
            str(edge.client_socket.local),
            str(edge.server),
            str(edge.server_socket.local),
            edge.protocol.value,
            edge.rule.value,
        )
    console.print(table)


def print_diagnostics(diagnostics: Iterable[Diagnostic], verbose: bool = False) -> None:
    """Warnings and errors as a table; informational ones only when verbose."""
    diagnostics = list(diagnostics)
    shown = [d for d in diagnostics if verbose or d.severity is not Severity.INFO]
    hidden = len(diagnostics) - len(shown)

    if shown:
        table = Table(title="Diagnostics", show_lines=False)
        table.add_column("Severity", style="bold", width=8)
        table.add_column("Kind")
        table.add_column("Where", style="cyan")
        table.add_column("Message")
        for diag in shown:
            color = _SEVERITY_COLORS.get(diag.severity, "white")
            table.add_row(
                f"[{color}]{diag.severity.value}[/{color}]",
                diag.kind.value,
                diag.location,
                diag.message,
            )
        console.print(table)
    if hidden:
        console.print(f"[dim]{hidden} informational diagnostic(s) hidden; use -v[/dim]")


@click.command("correlate")
@click.argument("directory", type=click.Path(file_okay=False))
@click.option("--no-loopback", is_flag=True, help="Drop connections within a host.")
@click.option(
    "--exclude",
    "-e",
    multiple=True,
    help="Ignore sockets of processes whose name starts with this prefix.",
)
@click.option(
    "--csv", "csv_path", type=click.Path(dir_okay=False), help="Write edges as CSV."
)
@click.option(
    "--json", "json_path", type=click.Path(dir_okay=False), help="Write graph as JSON."
)
@click.pass_context
def correlate_command(
    ctx: click.Context,
    directory: str,
    no_loopback: bool,
    exclude: tuple[str, ...],
    csv_path: str | None,
    json_path: str | None,
) -> None:
    """Correlate the capture files of DIRECTORY into a connection map."""
    config = load_config(ctx)
    console.print(f"[bold]sockmap[/bold] correlating [cyan]{directory}[/cyan]\n")

    try:
        loaded = load_directory(directory)
    except InputError as exc:
        console.print(f"[red]{exc}[/red]")
        sys.exit(1)

    graph = correlate(
        loaded.store.snapshot(),
        include_loopback=config.include_loopback and not no_loopback,
        exclude_processes=(*config.exclude_processes, *exclude),
    )

    print_edges(graph)
    print_diagnostics(
        [*loaded.diagnostics, *graph.diagnostics], verbose=ctx.obj.get("verbose", False)
    )
    console.print(
        f"\n{len(loaded.store)} host(s), {len(graph.edges)} connection(s), "
        f"{len(graph.dangling)} dangling client(s)"
    )

    if csv_path:
        write_connections_csv(graph, csv_path)
        console.print(f"Connections written to [cyan]{csv_path}[/cyan]")
    if json_path:
        write_graph_json(graph, json_path)
        console.print(f"Graph written to [cyan]{json_path}[/cyan]")
