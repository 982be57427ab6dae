"""CLI commands: sockmap inventory / sockmap export — inspect parsed captures."""

from __future__ import annotations

import sys

import click
from rich.console import Console
from rich.table import Table

from sockmap.cli.correlate import load_config, print_diagnostics
from sockmap.errors import InputError
from sockmap.export import write_inventory_csv
from sockmap.parsers import LoadResult, load_directory

console = Console(stderr=True)


def _load(directory: str) -> LoadResult:
    try:
        return load_directory(directory)
    except InputError as exc:
        console.print(f"[red]{exc}[/red]")
        sys.exit(1)


@click.command()
@click.argument("directory", type=click.Path(file_okay=False))
@click.pass_context
def inventory(ctx: click.Context, directory: str) -> None:
    """Show what was parsed for each host of DIRECTORY."""
    loaded = _load(directory)
    view = loaded.store.snapshot()

    table = Table(title="Hosts", show_lines=False)
    table.add_column("Host", style="cyan")
    table.add_column("Addresses")
    table.add_column("Listening", justify="right")
    table.add_column("Established", justify="right")
    table.add_column("Processes", justify="right")
    for name, host in view.items():
        addresses = ", ".join(sorted(host.addresses)) or "[dim]none[/dim]"
        pids = {s.pid for s in host.sockets if s.pid} | {p.pid for p in host.processes}
        table.add_row(
            name,
            addresses,
            str(len(host.listening)),
            str(len(host.established)),
            str(len(pids)),
        )
    console.print(table)
    print_diagnostics(loaded.diagnostics, verbose=ctx.obj.get("verbose", False))
    console.print(f"\n{loaded.files} file(s), {len(view)} host(s)")


@click.command()
@click.argument("directory", type=click.Path(file_okay=False))
@click.argument("outdir", type=click.Path(file_okay=False), required=False)
@click.pass_context
def export(ctx: click.Context, directory: str, outdir: str | None) -> None:
    """Re-write every host of DIRECTORY as a CSV table pair in OUTDIR.

    OUTDIR defaults to the configured data directory.
    """
    if outdir is None:
        outdir = str(load_config(ctx).data_dir)
    loaded = _load(directory)
    for host in loaded.store.snapshot().inventories:
        ip_path, network_path = write_inventory_csv(host, outdir)
        console.print(f"  {host.name}: {ip_path.name}, {network_path.name}")
    print_diagnostics(loaded.diagnostics, verbose=ctx.obj.get("verbose", False))
    console.print(f"\nExported {len(loaded.store)} host(s) to [cyan]{outdir}[/cyan]")
