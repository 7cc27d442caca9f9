"""Session state maintenance commands.

Usage:
    rubriccache sessions sweep
    rubriccache sessions history teacher@example.org
    rubriccache sessions forget teacher@example.org
"""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from rubriccache.cli.runtime import run

app = typer.Typer(help="Maintain tracked user session state", no_args_is_help=True)
console = Console()


@app.command("sweep")
def sweep() -> None:
    """Remove idle user states and expired role history."""
    result = run(lambda engine: engine.tracker.sweep())
    console.print(
        f"[green]Removed[/green] {result.user_states} user states, "
        f"{result.role_changes} role changes"
    )


@app.command("history")
def history(user_id: str = typer.Argument(..., help="User email")) -> None:
    """Show a user's recent role changes."""
    changes = run(lambda engine: engine.tracker.role_history(user_id))
    if not changes:
        console.print(f"No role changes recorded for {user_id}")
        return

    table = Table(title=f"Role changes for {user_id}")
    table.add_column("When")
    table.add_column("From")
    table.add_column("To", style="cyan")
    for change in changes:
        table.add_row(change.changed_at.isoformat(), change.old_role or "-", change.new_role)
    console.print(table)


@app.command("forget")
def forget(user_id: str = typer.Argument(..., help="User email")) -> None:
    """Drop a user's stored state; their next request is treated as new."""
    if run(lambda engine: engine.tracker.forget(user_id)):
        console.print(f"[green]✓[/green] Forgot {user_id}")
    else:
        console.print(f"[yellow]No stored state for[/yellow] {user_id}")
