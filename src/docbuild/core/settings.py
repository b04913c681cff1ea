"""Runtime settings for docbuild.

Everything is environment-driven with the ``DOCBUILD_`` prefix (and an
optional ``.env`` file). A single ``prefix`` directory anchors the on-disk
layout; each sub-path may be overridden on its own::

    <prefix>/
        index/            source-index working copy (owned by the index sync)
        sources/          shared source cache, one tree per (package, version)
        documentation/    artifact root, <package>/<version>/<target>/
        logs/             build logs, one file per attempt
        sandbox/          per-slot private workspaces (cargo's target dir
                          lives in each slot's purged build/ directory)
        docbuild.lock     presence pauses claiming of new work
        docbuild.db       default SQLite metadata store

Examples:
    >>> settings = DocbuildSettings(prefix="/srv/docbuild", slot_count=8)
    >>> settings.artifact_root
    PosixPath('/srv/docbuild/documentation')

Tags:
    settings, configuration, pydantic, environment, docbuild
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BUILD_COMMAND = [
    "cargo",
    "doc",
    "--no-deps",
    "--target",
    "{target}",
    "--target-dir",
    "{target_dir}",
]

# Where cargo leaves the rendered docs for one target
DEFAULT_BUILD_OUTPUT = "{target_dir}/{target}/doc"


class DocbuildSettings(BaseSettings):
    """Settings for the orchestrator and its admin CLI.

    Fields
    ──────
    prefix               : Root directory of the on-disk layout
    database_url         : SQLAlchemy URL of the metadata store
    slot_count           : Sandbox pool size, the only admission control
    build_timeout_seconds: Default wall-clock limit per build
    build_output_dir     : Where the tool leaves its docs ({target_dir}, {output_dir}, {target}, ...)
    max_targets          : Extra targets built per release, on top of the default one
    max_attempts         : Retry ceiling for transient failures
    lease_seconds        : Claim lease; must outlive the build timeout
    """

    model_config = SettingsConfigDict(
        env_prefix="DOCBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Storage ──────────────────────────────────────────────────
    prefix: Path = Field(
        default_factory=lambda: Path.home() / ".docbuild",
        description="Root directory for index, sources, artifacts and logs",
    )
    index_dir: Path | None = None
    source_cache_dir: Path | None = None
    artifact_root: Path | None = None
    log_dir: Path | None = None
    sandbox_root: Path | None = None
    lock_file: Path | None = None
    database_url: str | None = None

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Sandbox ──────────────────────────────────────────────────
    slot_count: int = Field(default=4, ge=1)
    slot_identity_template: str = "docbuild-{index}"
    sandbox_command: list[str] = Field(
        default_factory=list,
        description="Privilege-crossing prefix, e.g. ['sudo', '-n', '-u', '{identity}', '--']",
    )

    # ── Build ────────────────────────────────────────────────────
    build_command: list[str] = Field(default_factory=lambda: list(DEFAULT_BUILD_COMMAND))
    build_output_dir: str = Field(
        default=DEFAULT_BUILD_OUTPUT,
        description="Template of the directory holding the rendered docs once the tool exits",
    )
    build_env: dict[str, str] = Field(default_factory=dict)
    default_target: str = "x86_64-unknown-linux-gnu"
    build_timeout_seconds: int = Field(default=15 * 60, gt=0)
    kill_grace_seconds: float = Field(default=5.0, ge=0)
    max_log_bytes: int = Field(default=100 * 1024, gt=0)
    max_memory_bytes: int | None = Field(default=3 * 1024**3)
    max_targets: int = Field(default=10, ge=0)
    max_upload_bytes: int = Field(default=500 * 1024**2, gt=0)
    network_isolation_command: list[str] = Field(
        default_factory=list,
        description="Prefix that cuts a build off the network, e.g. ['unshare', '--net', '--map-root-user', '--']",
    )

    # ── Scheduling ───────────────────────────────────────────────
    max_attempts: int = Field(default=3, ge=1)
    lease_seconds: int = Field(default=30 * 60, gt=0)
    poll_interval_seconds: float = Field(default=30.0, gt=0)

    # ── Source fetching ──────────────────────────────────────────
    registry_url_template: str = "https://static.crates.io/crates/{package}/{package}-{version}.crate"
    http_timeout_seconds: float = 60.0

    @model_validator(mode="after")
    def _derive_paths(self) -> DocbuildSettings:
        if self.index_dir is None:
            self.index_dir = self.prefix / "index"
        if self.source_cache_dir is None:
            self.source_cache_dir = self.prefix / "sources"
        if self.artifact_root is None:
            self.artifact_root = self.prefix / "documentation"
        if self.log_dir is None:
            self.log_dir = self.prefix / "logs"
        if self.sandbox_root is None:
            self.sandbox_root = self.prefix / "sandbox"
        if self.lock_file is None:
            self.lock_file = self.prefix / "docbuild.lock"
        if self.database_url is None:
            self.database_url = f"sqlite:///{self.prefix / 'docbuild.db'}"
        if self.lease_seconds <= self.build_timeout_seconds:
            raise ValueError("lease_seconds must be greater than build_timeout_seconds")
        return self

    def ensure_directories(self) -> None:
        """Create the prefix tree (the source index itself is not created here)."""
        for path in (
            self.prefix,
            self.source_cache_dir,
            self.artifact_root,
            self.log_dir,
            self.sandbox_root,
        ):
            path.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> DocbuildSettings:
    """Process-wide settings, read once from the environment."""
    return DocbuildSettings()
