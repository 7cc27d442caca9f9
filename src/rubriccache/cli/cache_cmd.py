"""Administrative cache invalidation commands.

Usage:
    rubriccache cache invalidate-all
    rubriccache cache force-clean
    rubriccache cache invalidate-source staff_data
    rubriccache cache invalidate-namespace "role_sheet_*"
    rubriccache cache invalidate-user teacher@example.org --role Teacher --role Counselor
    rubriccache cache rotate-salt --yes
    rubriccache cache status
"""

from __future__ import annotations

from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from rubriccache.cache.engine import CacheEngine
from rubriccache.cache.invalidation import InvalidationResult
from rubriccache.cli.runtime import run
from rubriccache.persistence.repositories import SourceHashRepository, UserStateRepository

app = typer.Typer(help="Inspect and invalidate the versioned cache", no_args_is_help=True)
console = Console()


def _print_result(result: InvalidationResult) -> None:
    if result.empty:
        console.print("[yellow]Nothing to invalidate[/yellow]")
        return
    for pattern, version in sorted(result.bumped.items()):
        console.print(f"  [green]✓[/green] Bumped {pattern} to version {version}")
    for key in result.deleted_keys:
        console.print(f"  [green]✓[/green] Deleted {key}")
    if result.master_version:
        console.print(f"  [green]✓[/green] Master version now {result.master_version}")


@app.command("invalidate-all")
def invalidate_all() -> None:
    """Orphan every cache entry by replacing the master version."""
    version = run(lambda engine: engine.invalidate_all())
    console.print(f"[green]Master cache version is now[/green] {version}")


@app.command("force-clean")
def force_clean() -> None:
    """Emergency reset: new master version and forget all source hashes."""
    result = run(lambda engine: engine.invalidation.force_clean_all())
    _print_result(result)
    console.print(f"Cleared {result.hashes_cleared} source hashes")


@app.command("invalidate-source")
def invalidate_source(
    source_id: str = typer.Argument(..., help="Backing-store source that changed"),
) -> None:
    """Invalidate every namespace that depends on a source."""

    async def _action(engine: CacheEngine) -> InvalidationResult:
        if source_id not in engine.invalidation.dependencies:
            console.print(f"[yellow]Unknown source:[/yellow] {source_id}")
        return await engine.invalidate(source_id)

    _print_result(run(_action))


@app.command("invalidate-namespace")
def invalidate_namespace(
    namespace: str = typer.Argument(..., help="Namespace or wildcard pattern, e.g. 'user_*'"),
) -> None:
    """Bump one namespace version."""
    version = run(lambda engine: engine.invalidation.invalidate_namespace(namespace))
    console.print(f"[green]✓[/green] {namespace} is now at version {version}")


@app.command("invalidate-user")
def invalidate_user(
    user_id: str = typer.Argument(..., help="User email"),
    roles: list[str] = typer.Option(
        [],
        "--role",
        "-r",
        help="Also clear role-scoped entries for this role (repeatable)",
    ),
) -> None:
    """Clear one user's entries, plus the given roles' shared entries."""
    _print_result(run(lambda engine: engine.invalidate_user(user_id, roles)))


@app.command("rotate-salt")
def rotate_salt(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Replace the security salt. Orphans the entire cache."""
    if not yes:
        typer.confirm("Rotating the salt orphans every cache entry. Continue?", abort=True)
    run(lambda engine: engine.keys.salts.rotate_salt())
    console.print("[green]Security salt rotated[/green]")


@app.command("status")
def status() -> None:
    """Show version state and stored source hashes."""

    async def _action(engine: CacheEngine) -> dict[str, Any]:
        hashes = await SourceHashRepository(engine.session).list_all()
        return {
            "store_ok": await engine.store.health_check(),
            "master": await engine.keys.versions.get_master_version(),
            "versions": await engine.keys.versions.get_namespace_versions(),
            "hashes": [(h.source_id, h.hash[:12]) for h in hashes],
            "users": await UserStateRepository(engine.session).count(),
        }

    state = run(_action)
    versions = state["versions"]

    store = "[green]reachable[/green]" if state["store_ok"] else "[red]unreachable[/red]"
    console.print(f"[blue]Cache store:[/blue] {store}")
    console.print(f"[blue]Master version:[/blue] {state['master']}")
    console.print(f"[blue]Tracked users:[/blue] {state['users']}")

    table = Table(title="Namespace versions")
    table.add_column("Namespace", style="cyan")
    table.add_column("Version", justify="right")
    for namespace, version in sorted(versions.items()):
        table.add_row(namespace, str(version))
    console.print(table)

    table = Table(title="Source hashes")
    table.add_column("Source", style="cyan")
    table.add_column("Hash")
    for source_id, digest in state["hashes"]:
        table.add_row(source_id, digest)
    console.print(table)
