"""Fleet commands — strata fleet list, strata fleet report."""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from strata.cli.context import StrataContext, run_async
from strata.config import settings
from strata.types import MemberStatus

app = typer.Typer(help="Fleet membership")
console = Console()


@app.command("list")
def list_members():
    """List live fleet members and the schema version each reports."""
    ctx = StrataContext.get()
    members = run_async(ctx.fleet.list_members())

    if not members:
        console.print("[dim]No live fleet members.[/dim]")
        return

    table = Table(title="Fleet")
    table.add_column("Instance", style="cyan", no_wrap=True)
    table.add_column("Version", style="white")
    table.add_column("Status", style="green")

    for m in members:
        style = {
            "serving": "bold green",
            "starting": "yellow",
            "draining": "yellow",
            "stopped": "dim",
        }.get(m.status.value, "white")
        table.add_row(m.instance_id, m.reported_version, f"[{style}]{m.status.value}[/{style}]")

    console.print(table)


@app.command("report")
def report(
    version: str = typer.Option(..., "--version", "-v", help="Schema version this instance runs"),
    status: MemberStatus = typer.Option(MemberStatus.SERVING, "--status", "-s"),
    instance_id: str = typer.Option(None, "--instance-id", help="Defaults to STRATA_INSTANCE_ID"),
):
    """Record a heartbeat for this instance."""
    ctx = StrataContext.get()
    instance = instance_id or settings.instance_id
    try:
        run_async(ctx.fleet.report(instance, version, status))
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]{instance}[/green] reported {version} ({status.value})")
