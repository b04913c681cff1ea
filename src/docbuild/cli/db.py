"""
CLI: ``docbuild db`` - metadata store management.
"""

from __future__ import annotations

import typer

from docbuild.cli.utils import console, err_console, load_settings, open_store
from docbuild.core.errors import DatabaseError

app = typer.Typer(no_args_is_help=True)


@app.command()
def init(
    prefix: str | None = typer.Option(None, "--prefix", "-p", help="Root directory"),
    database: str | None = typer.Option(None, "--database", "-d", help="Database URL"),
) -> None:
    """Initialise the metadata schema and the on-disk layout."""
    settings = load_settings(prefix, database)
    settings.ensure_directories()
    store = open_store(settings)
    try:
        store.init_schema()
    except DatabaseError as exc:
        err_console.print(f"[red]Schema initialization failed: {exc}[/red]")
        raise typer.Exit(code=1)
    finally:
        store.dispose()
    console.print(f"[green]Initialized[/green] {settings.database_url}")
