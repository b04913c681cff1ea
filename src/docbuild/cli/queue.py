"""
CLI: ``docbuild queue`` - feed releases in and inspect their builds.
"""

from __future__ import annotations

import typer

from docbuild.cli.utils import attempts_table, console, err_console, load_settings, open_store
from docbuild.core.errors import DatabaseError

app = typer.Typer(no_args_is_help=True)
blacklist_app = typer.Typer(no_args_is_help=True)
app.add_typer(blacklist_app, name="blacklist", help="Packages that are never built.")

_PREFIX = typer.Option(None, "--prefix", "-p", help="Root directory")
_DATABASE = typer.Option(None, "--database", "-d", help="Database URL")


@app.command()
def add(
    name: str = typer.Argument(..., help="Package name"),
    version: str = typer.Argument(..., help="Package version"),
    url: str | None = typer.Option(None, "--url", help="Source archive URL"),
    checksum: str | None = typer.Option(None, "--checksum", help="SHA-256 of the source archive"),
    priority: int = typer.Option(0, "--priority", help="Lower builds first"),
    prefix: str | None = _PREFIX,
    database: str | None = _DATABASE,
) -> None:
    """Record a release so it gets built."""
    source_ref = {key: value for key, value in (("url", url), ("checksum", checksum)) if value}
    store = open_store(load_settings(prefix, database))
    try:
        release = store.record_release(name, version, source_ref, priority=priority)
    except ValueError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2)
    except DatabaseError as exc:
        err_console.print(f"[red]Database error: {exc}[/red]")
        raise typer.Exit(code=1)
    finally:
        store.dispose()
    console.print(f"Recorded [bold]{release.package} {release.version}[/bold]")


@app.command()
def retrigger(
    name: str = typer.Argument(..., help="Package name"),
    version: str = typer.Argument(..., help="Package version"),
    prefix: str | None = _PREFIX,
    database: str | None = _DATABASE,
) -> None:
    """Queue a release again, ignoring its past failures."""
    store = open_store(load_settings(prefix, database))
    try:
        attempt = store.retrigger(name, version)
    except LookupError as exc:
        err_console.print(f"[red]{exc.args[0]}[/red]")
        raise typer.Exit(code=1)
    finally:
        store.dispose()
    console.print(f"{name} {version}: attempt {attempt.attempt_number} is {attempt.status.value}")


@app.command()
def status(
    name: str = typer.Argument(..., help="Package name"),
    version: str = typer.Argument(..., help="Package version"),
    prefix: str | None = _PREFIX,
    database: str | None = _DATABASE,
) -> None:
    """Show every build attempt of a release and its current documentation."""
    store = open_store(load_settings(prefix, database))
    try:
        attempts = store.list_attempts(name, version)
        current = store.latest_successful(name, version)
    finally:
        store.dispose()
    if not attempts:
        console.print(f"[yellow]No attempts for {name} {version}[/yellow]")
    else:
        console.print(attempts_table(attempts, title=f"{name} {version}"))
    console.print(f"Current documentation: {current.location if current else '[dim]none[/dim]'}")


@app.command()
def pending(
    prefix: str | None = _PREFIX,
    database: str | None = _DATABASE,
) -> None:
    """Print the number of releases waiting to be built."""
    store = open_store(load_settings(prefix, database))
    try:
        count = store.pending_count()
    finally:
        store.dispose()
    console.print(f"{count} release(s) pending")


@blacklist_app.command("add")
def blacklist_add(
    name: str = typer.Argument(..., help="Package name"),
    reason: str | None = typer.Option(None, "--reason", help="Why the package is excluded"),
    prefix: str | None = _PREFIX,
    database: str | None = _DATABASE,
) -> None:
    """Never build NAME."""
    store = open_store(load_settings(prefix, database))
    try:
        store.add_to_blacklist(name, reason)
    finally:
        store.dispose()
    console.print(f"Blacklisted {name}")


@blacklist_app.command("remove")
def blacklist_remove(
    name: str = typer.Argument(..., help="Package name"),
    prefix: str | None = _PREFIX,
    database: str | None = _DATABASE,
) -> None:
    """Allow NAME to be built again."""
    store = open_store(load_settings(prefix, database))
    try:
        removed = store.remove_from_blacklist(name)
    finally:
        store.dispose()
    if not removed:
        err_console.print(f"[yellow]{name} was not blacklisted[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"Removed {name} from the blacklist")


@blacklist_app.command("list")
def blacklist_list(
    prefix: str | None = _PREFIX,
    database: str | None = _DATABASE,
) -> None:
    """List blacklisted packages."""
    store = open_store(load_settings(prefix, database))
    try:
        names = store.list_blacklist()
    finally:
        store.dispose()
    for name in names:
        console.print(name)


@app.command()
def limits(
    name: str = typer.Argument(..., help="Package name"),
    timeout: int | None = typer.Option(None, "--timeout", help="Build timeout override, seconds"),
    max_log: int | None = typer.Option(None, "--max-log", help="Log size override, bytes"),
    memory: int | None = typer.Option(None, "--memory", help="Memory cap override, bytes"),
    max_targets: int | None = typer.Option(None, "--max-targets", help="Extra targets override"),
    max_upload: int | None = typer.Option(None, "--max-upload", help="Largest publishable file, bytes"),
    network: bool | None = typer.Option(None, "--network/--no-network", help="Allow network access"),
    reset: bool = typer.Option(False, "--reset", help="Drop every override"),
    prefix: str | None = _PREFIX,
    database: str | None = _DATABASE,
) -> None:
    """Show, set or reset the sandbox limits of NAME.

    Options that are not given keep their current override.
    """
    from docbuild.execution.limits import Limits

    changes = {
        "timeout_seconds": timeout,
        "max_log_bytes": max_log,
        "max_memory_bytes": memory,
        "max_targets": max_targets,
        "max_upload_bytes": max_upload,
        "networking": network,
    }
    settings = load_settings(prefix, database)
    store = open_store(settings)
    try:
        if reset:
            store.remove_sandbox_override(name)
        elif any(value is not None for value in changes.values()):
            store.set_sandbox_override(name, **changes)
        effective = Limits.from_settings(settings).for_package(store, name)
    finally:
        store.dispose()
    for label, value in effective.describe().items():
        console.print(f"{label}: [bold]{value}[/bold]")


@app.command()
def log(
    name: str = typer.Argument(..., help="Package name"),
    version: str = typer.Argument(..., help="Package version"),
    attempt_number: int | None = typer.Option(None, "--attempt", "-a", help="Attempt number (default: latest)"),
    prefix: str | None = _PREFIX,
    database: str | None = _DATABASE,
) -> None:
    """Print the build log of a release's latest (or a given) attempt."""
    from docbuild.execution.logs import BuildLogStore

    settings = load_settings(prefix, database)
    store = open_store(settings)
    try:
        attempts = store.list_attempts(name, version)
    finally:
        store.dispose()

    if attempt_number is None:
        attempt = next((a for a in reversed(attempts) if a.log_ref), None)
    else:
        attempt = next((a for a in attempts if a.attempt_number == attempt_number), None)
    if attempt is None or not attempt.log_ref:
        which = f"attempt {attempt_number}" if attempt_number is not None else "any attempt"
        err_console.print(f"[yellow]No build log for {which} of {name} {version}[/yellow]")
        raise typer.Exit(code=1)

    try:
        data = BuildLogStore(settings.log_dir).read(attempt.log_ref)
    except (OSError, ValueError) as exc:
        err_console.print(f"[red]Cannot read {attempt.log_ref}: {exc}[/red]")
        raise typer.Exit(code=1)
    console.print(
        f"[dim]{name} {version} attempt {attempt.attempt_number} ({attempt.status.value})[/dim]",
        highlight=False,
    )
    console.out(data.decode("utf-8", errors="replace"), highlight=False, end="")
