"""
Root Typer application for the docbuild CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from docbuild import __version__
from docbuild.core.logging import configure_logging
from docbuild.core.settings import get_settings

app = Typer(
    name="docbuild",
    help="docbuild - sandboxed documentation builds for package registries.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"docbuild {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """docbuild CLI - manage the metadata store, the queue and build workers."""
    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)


from docbuild.cli.db import app as db_app  # noqa: E402
from docbuild.cli.queue import app as queue_app  # noqa: E402
from docbuild.cli.worker import app as worker_app  # noqa: E402

app.add_typer(db_app, name="db", help="Metadata store operations.")
app.add_typer(queue_app, name="queue", help="Release queue management.")
app.add_typer(worker_app, name="worker", help="Build scheduler.")


if __name__ == "__main__":
    app()
