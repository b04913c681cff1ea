"""
CLI: ``docbuild worker`` - run the build scheduler.
"""

from __future__ import annotations

import typer

from docbuild.cli.utils import console, load_settings

app = typer.Typer(no_args_is_help=True)


@app.command("start")
def start(
    prefix: str | None = typer.Option(None, "--prefix", "-p", help="Root directory"),
    database: str | None = typer.Option(None, "--database", "-d", help="Database URL"),
    slots: int | None = typer.Option(None, "--slots", "-s", help="Sandbox slots (concurrent builds)"),
    worker_id: str | None = typer.Option(None, "--id", help="Custom worker identifier"),
) -> None:
    """Start the scheduler and build until interrupted.

    Example::

        docbuild worker start --slots 8
        docbuild worker start --prefix /srv/docbuild --id builder-1
    """
    from docbuild.execution.factory import create_scheduler

    settings = load_settings(prefix, database)
    console.print(
        f"[bold green]Starting docbuild scheduler[/bold green] "
        f"(slots={slots or settings.slot_count}, poll={settings.poll_interval_seconds}s)"
    )

    try:
        scheduler = create_scheduler(settings, slot_count=slots, worker_id=worker_id)
        scheduler.start()
    except KeyboardInterrupt:
        console.print("\n[yellow]Scheduler stopped by user[/yellow]")
    except Exception as exc:
        console.print(f"[red]Scheduler error: {exc}[/red]")
        raise typer.Exit(code=1)
