"""
Build pipeline: metadata store, source fetcher, sandbox pool, executor,
artifact store and the scheduler that drives them.
"""

from docbuild.execution.artifacts import ArtifactStore
from docbuild.execution.executor import BoundedLogBuffer, BuildExecutor, BuildResult
from docbuild.execution.fetcher import SourceFetcher
from docbuild.execution.limits import Limits
from docbuild.execution.logs import BuildLogStore
from docbuild.execution.models import ArtifactRef, BuildAttempt, Release
from docbuild.execution.retry import RetryDecision, RetryPolicy
from docbuild.execution.sandbox import SandboxCapability, SandboxPool, SandboxSlot
from docbuild.execution.scheduler import Scheduler, SchedulerStats
from docbuild.execution.store import MetadataStore

__all__ = [
    "ArtifactRef",
    "ArtifactStore",
    "BoundedLogBuffer",
    "BuildAttempt",
    "BuildExecutor",
    "BuildLogStore",
    "BuildResult",
    "Limits",
    "MetadataStore",
    "Release",
    "RetryDecision",
    "RetryPolicy",
    "SandboxCapability",
    "SandboxPool",
    "SandboxSlot",
    "Scheduler",
    "SchedulerStats",
    "SourceFetcher",
]
