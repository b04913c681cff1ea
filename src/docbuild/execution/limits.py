"""Per-package sandbox limits.

Defaults come from settings; a row in ``sandbox_overrides`` replaces any of
them for one package (e.g. a longer timeout or more targets for a very large
crate).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Protocol

from docbuild.core.settings import DocbuildSettings


class OverrideSource(Protocol):
    def get_sandbox_override(self, package: str) -> dict[str, int | bool | None] | None: ...


def scale(value: float, interval: int, labels: list[str]) -> str:
    """Render *value* in the largest unit it reaches, one decimal at most.

    >>> scale(90, 60, ["seconds", "minutes", "hours"])
    '1.5 minutes'
    """
    chosen = labels[0]
    value = float(value)
    for label in labels[1:]:
        if value / interval >= 1.0:
            chosen = label
            value /= interval
        else:
            break
    text = f"{value:.1f}"
    if text.endswith(".0"):
        text = text[:-2]
    return f"{text} {chosen}"


def time_scale(seconds: float) -> str:
    return scale(seconds, 60, ["seconds", "minutes", "hours"])


def size_scale(size: float) -> str:
    return scale(size, 1024, ["bytes", "KB", "MB", "GB"])


@dataclass(frozen=True)
class Limits:
    """Limits imposed on one build.

    ``max_targets`` counts the extra targets built after the default one.
    ``max_upload_bytes`` caps every single published file. ``networking``
    stays True whatever the overrides say unless ``can_isolate`` (a network
    isolation command is configured).
    """

    timeout_seconds: int = 15 * 60
    max_log_bytes: int = 100 * 1024
    max_memory_bytes: int | None = 3 * 1024**3
    max_targets: int = 10
    max_upload_bytes: int = 500 * 1024**2
    networking: bool = False
    can_isolate: bool = True

    @classmethod
    def from_settings(cls, settings: DocbuildSettings) -> Limits:
        return cls(
            timeout_seconds=settings.build_timeout_seconds,
            max_log_bytes=settings.max_log_bytes,
            max_memory_bytes=settings.max_memory_bytes,
            max_targets=settings.max_targets,
            max_upload_bytes=settings.max_upload_bytes,
            networking=not settings.network_isolation_command,
            can_isolate=bool(settings.network_isolation_command),
        )

    def for_package(self, store: OverrideSource, package: str) -> Limits:
        """These limits with the package's overrides applied."""
        override = store.get_sandbox_override(package)
        if not override:
            return self
        changes = {key: value for key, value in override.items() if value is not None}
        if not self.can_isolate:
            changes.pop("networking", None)
        return replace(self, **changes)

    def describe(self) -> dict[str, str]:
        """Human-readable limits, as shown to package authors."""
        return {
            "Available RAM": size_scale(self.max_memory_bytes) if self.max_memory_bytes else "unlimited",
            "Maximum build time": time_scale(self.timeout_seconds),
            "Maximum size of a build log": size_scale(self.max_log_bytes),
            "Network access": "allowed" if self.networking else "blocked",
            "Maximum number of build targets": str(self.max_targets),
            "Maximum uploaded file size": size_scale(self.max_upload_bytes),
        }
