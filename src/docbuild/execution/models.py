"""
Value types handed out by the metadata store and passed between components.

The store converts ORM rows into these frozen dataclasses before its session
closes, so callers never hold a live row across threads.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from docbuild.core.enums import AttemptStatus, FailureReason, TriggerSource
from docbuild.core.errors import InvalidTransitionError

# Package names and versions become path components under the artifact root
_COORDINATE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+\-]*$")


def validate_coordinate(value: str, kind: str = "package") -> str:
    """Reject names that could escape their directory. Returns *value*."""
    if not value or len(value) > 255 or ".." in value or not _COORDINATE_RE.match(value):
        raise ValueError(f"invalid {kind} identifier: {value!r}")
    return value


VALID_TRANSITIONS: dict[AttemptStatus, frozenset[AttemptStatus]] = {
    AttemptStatus.QUEUED: frozenset({AttemptStatus.CLAIMED}),
    AttemptStatus.CLAIMED: frozenset({
        AttemptStatus.RUNNING,
        AttemptStatus.FAILED,
        AttemptStatus.ERRORED,
    }),
    AttemptStatus.RUNNING: frozenset({
        AttemptStatus.SUCCEEDED,
        AttemptStatus.FAILED,
        AttemptStatus.ERRORED,
    }),
    AttemptStatus.SUCCEEDED: frozenset(),
    AttemptStatus.FAILED: frozenset(),
    AttemptStatus.ERRORED: frozenset(),
}


def allowed_sources(target: AttemptStatus) -> frozenset[AttemptStatus]:
    """States from which *target* may be entered."""
    return frozenset(src for src, dests in VALID_TRANSITIONS.items() if target in dests)


def validate_transition(attempt_id: int, current: AttemptStatus, target: AttemptStatus) -> None:
    """Raise ``InvalidTransitionError`` unless current → target is allowed."""
    if target not in VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(attempt_id, current.value, target.value)


@dataclass(frozen=True)
class ArtifactRef:
    """Address of a published documentation tree: ``<package>/<version>/<target>``."""

    package: str
    version: str
    target: str

    @property
    def location(self) -> str:
        return f"{self.package}/{self.version}/{self.target}"

    def path(self, root: Path) -> Path:
        return root / self.package / self.version / self.target

    @classmethod
    def parse(cls, location: str) -> ArtifactRef:
        parts = location.split("/")
        if len(parts) != 3:
            raise ValueError(f"malformed artifact reference: {location!r}")
        return cls(*parts)

    def __str__(self) -> str:
        return self.location


@dataclass(frozen=True)
class Release:
    """An immutable (package, version) pair plus where to find its source."""

    id: int
    package: str
    version: str
    source_ref: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    created_at: datetime | None = None

    @property
    def checksum(self) -> str | None:
        return self.source_ref.get("checksum")

    @property
    def url(self) -> str | None:
        return self.source_ref.get("url")


@dataclass(frozen=True)
class BuildAttempt:
    """One try at building a release."""

    id: int
    release: Release
    attempt_number: int
    status: AttemptStatus
    trigger: TriggerSource
    target: str | None = None
    reason: FailureReason | None = None
    retryable: bool = False
    log_ref: str | None = None
    artifact_ref: ArtifactRef | None = None
    worker_id: str | None = None
    lease_expires_at: datetime | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def package(self) -> str:
        return self.release.package

    @property
    def version(self) -> str:
        return self.release.version

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "package": self.package,
            "version": self.version,
            "attempt_number": self.attempt_number,
            "status": self.status.value,
            "trigger": self.trigger.value,
            "target": self.target,
            "reason": self.reason.value if self.reason else None,
            "retryable": self.retryable,
            "log_ref": self.log_ref,
            "artifact_ref": self.artifact_ref.location if self.artifact_ref else None,
            "worker_id": self.worker_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
