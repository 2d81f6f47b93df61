"""strata CLI — run at process start before serving traffic.

`strata migrate --target 2.0` exits 0 once the schema is at 2.0 and with a
distinct non-zero code for each reason it is not (see ``StrataError.exit_code``).
Code 14 (lock held elsewhere) means another instance is migrating: wait
and poll rather than treat it as fatal, or pass ``--wait``.
"""

from __future__ import annotations

import logging

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from strata.cli import fleet
from strata.cli.context import StrataContext, run_async
from strata.config import settings
from strata.exceptions import (
    LockHeldElsewhereError,
    RollingUpgradeUnsafeError,
    StartupDeadlineExceededError,
    StrataError,
)
from strata.resolver import resolve_path
from strata.types import Applied, CleanedUnits, Failed, NoOpAlreadyCurrent

console = Console()

app = typer.Typer(
    name="strata",
    help="strata -- schema upgrades for a fleet that never stops serving.",
    no_args_is_help=True,
)
app.add_typer(fleet.app, name="fleet", help="Fleet membership (list, report)")


@app.callback()
def _configure() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _verdict(error: StrataError) -> tuple[str, str]:
    """Operator-facing status line and colour for a failure."""
    if isinstance(error, LockHeldElsewhereError):
        return "waiting on another instance", "yellow"
    if isinstance(error, RollingUpgradeUnsafeError):
        return "unsafe to proceed during rolling deployment", "yellow"
    if isinstance(error, StartupDeadlineExceededError):
        return "gave up waiting", "red"
    return "needs manual intervention", "red"


def _fail(error: StrataError, unit: str | None = None) -> None:
    title, colour = _verdict(error)
    where = f"Unit:  {unit}\n" if unit else ""
    console.print(Panel(
        f"{where}[{colour}]{error}[/{colour}]",
        title=title,
        border_style=colour,
    ))
    raise typer.Exit(code=error.exit_code)


@app.command("migrate")
def migrate(
    target: str = typer.Option(..., "--target", "-t", help="Schema version to reach"),
    wait: bool = typer.Option(
        False, "--wait", help="Wait for other instances and retry transient failures"
    ),
):
    """Bring the schema up to TARGET."""
    ctx = StrataContext.get()
    try:
        outcome = run_async(ctx.migrate(target, wait))
    except StrataError as e:
        _fail(e)
        return

    if isinstance(outcome, Failed):
        _fail(outcome.cause, outcome.at_unit)
    elif isinstance(outcome, NoOpAlreadyCurrent):
        console.print(f"[green]done[/green] schema already at {outcome.version}")
    elif isinstance(outcome, Applied):
        console.print(Panel(
            f"From:   {outcome.from_version}\n"
            f"To:     {outcome.to_version}\n"
            f"Units:  {', '.join(outcome.units_applied) or '-'}",
            title="done",
            border_style="green",
        ))


@app.command("status")
def status():
    """Show the version marker and the migration lock."""
    ctx = StrataContext.get()

    async def _status():
        return await ctx.store.load(), await ctx.lock.holder()

    marker, lease = run_async(_status())
    lock_line = (
        f"{lease.holder_id} (expires {lease.expires_at:.0f})" if lease else "[dim]free[/dim]"
    )
    console.print(Panel(
        f"Version:          [bold]{marker.current_version}[/bold]\n"
        f"Checkpoints:      {len(marker.applied_unit_checkpoints)}\n"
        f"Cleanup pending:  {', '.join(sorted(marker.cleanup_pending)) or '-'}\n"
        f"Lock:             {lock_line}\n"
        f"Database:         {settings.db_path}",
        title="Schema Status",
        border_style="cyan",
    ))


@app.command("sweep")
def sweep():
    """Run deferred cleanup for units the whole fleet has moved past."""
    ctx = StrataContext.get()
    try:
        outcome = run_async(ctx.sweep())
    except StrataError as e:
        _fail(e)
        return

    if isinstance(outcome, CleanedUnits):
        console.print(f"[green]Cleaned:[/green] {', '.join(outcome.units) or '-'}")
        if outcome.failed:
            console.print(f"[red]Failed (left pending):[/red] {', '.join(outcome.failed)}")
    else:
        console.print(f"[yellow]Deferred:[/yellow] {outcome.reason}")


@app.command("validate")
def validate(
    target: str = typer.Option(None, "--target", "-t", help="Also resolve a path to this version"),
):
    """Load and validate the manifest; optionally resolve the path to TARGET."""
    ctx = StrataContext.get()
    try:
        registry = ctx.registry
        console.print(
            f"[green]{len(registry)} units OK[/green] "
            f"(latest {registry.latest_version() or '-'})"
        )
        if target:
            marker = run_async(ctx.store.load())
            chain = resolve_path(registry, marker.current_version, target)
            console.print(
                f"{marker.current_version} -> {target}: "
                f"{' -> '.join(u.id for u in chain) or 'nothing to do'}"
            )
    except StrataError as e:
        _fail(e)


@app.command("history")
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Max entries"),
):
    """Show applied prepare and cleanup steps, newest first."""
    ctx = StrataContext.get()
    entries = run_async(ctx.store.history(limit=limit))

    if not entries:
        console.print("[dim]No upgrades applied yet.[/dim]")
        return

    table = Table(title="Upgrade History")
    table.add_column("When", style="dim", no_wrap=True)
    table.add_column("Unit", style="cyan")
    table.add_column("Step")
    table.add_column("From -> To", style="white")
    table.add_column("Holder", style="blue")

    for e in entries:
        table.add_row(
            e.applied_at.strftime("%Y-%m-%d %H:%M:%S"),
            e.unit_id,
            e.step,
            f"{e.from_version} -> {e.to_version}",
            e.holder_id,
        )

    console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
