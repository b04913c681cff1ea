"""Assemble the pipeline from ``DocbuildSettings``."""

from __future__ import annotations

from docbuild.core.settings import DocbuildSettings
from docbuild.execution.artifacts import ArtifactStore
from docbuild.execution.executor import BuildExecutor
from docbuild.execution.fetcher import SourceFetcher
from docbuild.execution.limits import Limits
from docbuild.execution.logs import BuildLogStore
from docbuild.execution.retry import RetryPolicy
from docbuild.execution.sandbox import SandboxCapability, SandboxPool
from docbuild.execution.scheduler import Scheduler
from docbuild.execution.store import MetadataStore


def create_store(settings: DocbuildSettings) -> MetadataStore:
    return MetadataStore.from_url(settings.database_url, max_attempts=settings.max_attempts)


def create_scheduler(
    settings: DocbuildSettings,
    *,
    store: MetadataStore | None = None,
    slot_count: int | None = None,
    worker_id: str | None = None,
) -> Scheduler:
    """Build a ready-to-start scheduler. Creates the prefix tree if missing.

    Raises:
        ConfigError: The build command or output template is malformed.
    """
    settings.ensure_directories()
    store = store or create_store(settings)

    capability = SandboxCapability(
        settings.sandbox_command,
        network_isolation=settings.network_isolation_command,
        kill_grace_seconds=settings.kill_grace_seconds,
    )
    pool = SandboxPool(
        slot_count or settings.slot_count,
        settings.sandbox_root,
        capability,
        identity_template=settings.slot_identity_template,
    )
    artifacts = ArtifactStore(settings.artifact_root)
    artifacts.sweep_staging()

    return Scheduler(
        store,
        SourceFetcher(
            settings.source_cache_dir,
            url_template=settings.registry_url_template,
            timeout=settings.http_timeout_seconds,
        ),
        pool,
        BuildExecutor(
            pool,
            settings.build_command,
            output_template=settings.build_output_dir,
            env=settings.build_env,
            max_log_bytes=settings.max_log_bytes,
            kill_grace_seconds=settings.kill_grace_seconds,
        ),
        artifacts,
        BuildLogStore(settings.log_dir),
        policy=RetryPolicy(max_attempts=settings.max_attempts),
        limits=Limits.from_settings(settings),
        target=settings.default_target,
        lease_seconds=settings.lease_seconds,
        poll_interval=settings.poll_interval_seconds,
        lock_file=settings.lock_file,
        worker_id=worker_id,
    )
