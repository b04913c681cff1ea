"""
CLI utility helpers - settings, store access and output formatting.
"""

from __future__ import annotations

from pathlib import Path

from rich.console import Console
from rich.table import Table

from docbuild.core.settings import DocbuildSettings
from docbuild.execution.models import BuildAttempt
from docbuild.execution.store import MetadataStore

console = Console()
err_console = Console(stderr=True)


def load_settings(prefix: str | None = None, database: str | None = None) -> DocbuildSettings:
    """Environment settings with command-line overrides applied."""
    overrides: dict[str, object] = {}
    if prefix:
        overrides["prefix"] = Path(prefix)
    if database:
        overrides["database_url"] = database
    return DocbuildSettings(**overrides)


def open_store(settings: DocbuildSettings) -> MetadataStore:
    from docbuild.execution.factory import create_store

    return create_store(settings)


_STATUS_STYLE = {
    "succeeded": "green",
    "failed": "red",
    "errored": "magenta",
    "running": "cyan",
    "claimed": "cyan",
    "queued": "yellow",
}


def attempts_table(attempts: list[BuildAttempt], title: str = "Build attempts") -> Table:
    table = Table(title=title)
    for column in ("#", "status", "reason", "trigger", "target", "worker", "finished", "log"):
        table.add_column(column)
    for attempt in attempts:
        style = _STATUS_STYLE.get(attempt.status.value, "")
        table.add_row(
            str(attempt.attempt_number),
            f"[{style}]{attempt.status.value}[/{style}]" if style else attempt.status.value,
            attempt.reason.value if attempt.reason else "",
            attempt.trigger.value,
            attempt.target or "",
            attempt.worker_id or "",
            attempt.finished_at.isoformat(timespec="seconds") if attempt.finished_at else "",
            attempt.log_ref or "",
        )
    return table
