"""Administrative CLI for the cache engine.

Provides command-line interface using Typer:
- rubriccache cache ...: invalidation and status
- rubriccache sessions ...: session state sweep and history
- rubriccache init-db: create the durable state tables

Usage:
    rubriccache --help
    rubriccache cache invalidate-all
    rubriccache sessions sweep
"""

import asyncio

import typer

from rubriccache.cli.cache_cmd import app as cache_app
from rubriccache.cli.session_cmd import app as session_app
from rubriccache.config import settings
from rubriccache.observability.logging import configure_logging
from rubriccache.persistence.db import close_db, init_db

app = typer.Typer(
    name="rubriccache",
    help="rubric-cache: versioned cache and invalidation engine",
    no_args_is_help=True,
)

app.add_typer(cache_app, name="cache")
app.add_typer(session_app, name="sessions")


@app.callback()
def callback() -> None:
    """rubric-cache: versioned cache and invalidation engine."""
    configure_logging(json_format=settings.log_format == "json", level=settings.log_level)


@app.command("init-db")
def init_db_command() -> None:
    """Create the durable state tables if they do not exist."""

    async def _main() -> None:
        try:
            await init_db()
        finally:
            await close_db()

    asyncio.run(_main())
    typer.echo("Database initialized")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
