"""
Queue & scheduler - the control loop that turns pending releases into docs.

Architecture:
    ::

        ┌───────────────────────── run_once() ─────────────────────────┐
        │ 1. store.reclaim_expired_leases()                            │
        │ 2. while pool has a free slot:                               │
        │        attempt = store.claim_next_pending(worker_id, lease)  │
        │        submit _build(attempt, slot) to the thread pool       │
        └──────────────────────────────────────────────────────────────┘
        wait on the wake event (notify() or a slot release) or poll_interval

        _build(attempt, slot), one thread per slot:
            mark_running → fetch → executor.run(default target) → write log
                → extra targets from the manifest (extend_lease before each)
                → extend_lease → publish every target → mark_succeeded
                → or RetryPolicy → mark_failed / mark_errored (+ requeue)
            release slot

The lease is extended right before anything is published: a holder whose
attempt was reclaimed gets ``LeaseExpired`` there and leaves the published
tree alone. An extra target that fails is logged and skipped; the attempt
stands or falls with its default target.

Deduplication lives entirely in the store's atomic claim, so any number of
``Scheduler`` processes may share one metadata store. A slot is always taken
before a claim is made; a claim is never held without a slot to run it.

Build-tool failures never escape ``_build``: they become attempt statuses.
Infrastructure trouble (storage, sandbox, database) is logged at error level.
"""

from __future__ import annotations

import os
import platform
import signal
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from docbuild.core.enums import AttemptStatus, FailureReason
from docbuild.core.errors import (
    ArtifactTooLarge,
    DatabaseError,
    DocbuildError,
    ErrorCategory,
    InvalidTransitionError,
    LeaseExpired,
    StorageFailure,
    categorize_error,
    is_retryable,
)
from docbuild.core.logging import LogContext, get_logger
from docbuild.execution.artifacts import ArtifactStore
from docbuild.execution.executor import BuildExecutor, BuildResult
from docbuild.execution.fetcher import SourceFetcher
from docbuild.execution.limits import Limits
from docbuild.execution.logs import BuildLogStore
from docbuild.execution.models import ArtifactRef, BuildAttempt, Release
from docbuild.execution.retry import RetryPolicy
from docbuild.execution.sandbox import SandboxPool, SandboxSlot
from docbuild.execution.store import MetadataStore
from docbuild.execution.targets import plan_extra_targets, read_extra_targets

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class SchedulerStats:
    """Aggregate statistics for one scheduler."""

    started_at: datetime = field(default_factory=_utcnow)
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errored: int = 0
    reclaimed: int = 0
    active_builds: int = 0
    last_poll_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "uptime_seconds": round((_utcnow() - self.started_at).total_seconds(), 2),
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errored": self.errored,
            "reclaimed": self.reclaimed,
            "active_builds": self.active_builds,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
        }


class Scheduler:
    """Claims pending releases and runs them on the sandbox pool.

    Args:
        store: Metadata store shared with other schedulers.
        fetcher, pool, executor, artifacts, logs: Pipeline components.
        policy: Retry ceiling and reason classification.
        limits: Default sandbox limits; per-package overrides come from the store.
        target: Target recorded on attempts that do not name one.
        lease_seconds: Claim lease. Extended to cover the build on start.
        poll_interval: Upper bound on idle waits.
        lock_file: While this file exists no new work is claimed.
        worker_id: Identity written on claimed attempts.
    """

    def __init__(
        self,
        store: MetadataStore,
        fetcher: SourceFetcher,
        pool: SandboxPool,
        executor: BuildExecutor,
        artifacts: ArtifactStore,
        logs: BuildLogStore,
        *,
        policy: RetryPolicy | None = None,
        limits: Limits | None = None,
        target: str = "x86_64-unknown-linux-gnu",
        lease_seconds: float = 30 * 60,
        poll_interval: float = 30.0,
        lock_file: Path | None = None,
        worker_id: str | None = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._pool = pool
        self._executor = executor
        self._artifacts = artifacts
        self._logs = logs
        self._policy = policy or RetryPolicy(max_attempts=store.max_attempts)
        self._limits = limits or Limits()
        self._target = target
        self._lease_seconds = lease_seconds
        self._poll_interval = poll_interval
        self._lock_file = lock_file
        self._worker_id = worker_id or f"{platform.node() or 'docbuild'}-{os.getpid()}-{uuid.uuid4().hex[:6]}"

        self._wake = threading.Event()
        self._shutdown = threading.Event()
        self._stats = SchedulerStats()
        self._stats_lock = threading.Lock()
        self._futures: set[Future[None]] = set()
        self._threads = ThreadPoolExecutor(max_workers=pool.size, thread_name_prefix=self._worker_id)

        pool.add_release_listener(self.notify)

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def stats(self) -> SchedulerStats:
        """Snapshot of the counters, taken under the stats lock."""
        with self._stats_lock:
            return replace(self._stats)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def notify(self) -> None:
        """Wake the loop: a release was recorded or a slot came free."""
        self._wake.set()

    def is_paused(self) -> bool:
        return self._lock_file is not None and self._lock_file.exists()

    def start(self) -> None:
        """Run until ``stop()`` or SIGINT/SIGTERM. In-flight builds are finished."""
        logger.info(
            "scheduler_starting",
            worker_id=self._worker_id,
            slots=self._pool.size,
            poll_interval=self._poll_interval,
            max_attempts=self._policy.max_attempts,
        )
        try:
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except ValueError:
            logger.debug("signal_handlers_skipped", reason="not main thread")

        try:
            while not self._shutdown.is_set():
                self._wake.clear()
                try:
                    self.run_once()
                except Exception:
                    logger.exception("scheduler_poll_error", worker_id=self._worker_id)
                self._wake.wait(self._poll_interval)
        finally:
            self.close()

    def stop(self) -> None:
        """Request graceful shutdown."""
        logger.info("scheduler_stopping", worker_id=self._worker_id)
        self._shutdown.set()
        self._wake.set()

    def close(self) -> None:
        self._threads.shutdown(wait=True)
        self._fetcher.close()
        logger.info("scheduler_stopped", worker_id=self._worker_id, **self._stats.to_dict())

    def _handle_signal(self, signum: int, _frame: Any) -> None:
        logger.info("scheduler_signal", signal=signal.Signals(signum).name)
        self.stop()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every dispatched build has finished."""
        with self._stats_lock:
            pending = list(self._futures)
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    # ------------------------------------------------------------------ #
    # One iteration
    # ------------------------------------------------------------------ #

    def run_once(self) -> int:
        """Reclaim expired leases, then fill every free slot. Returns builds dispatched."""
        reclaimed = self._store.reclaim_expired_leases()
        if reclaimed:
            with self._stats_lock:
                self._stats.reclaimed += len(reclaimed)

        with self._stats_lock:
            self._stats.last_poll_at = _utcnow()
        if self.is_paused():
            logger.debug("scheduler_paused", lock_file=str(self._lock_file))
            return 0

        dispatched = 0
        while not self._shutdown.is_set():
            slot = self._pool.acquire(block=False)
            if slot is None:
                break
            try:
                attempt = self._store.claim_next_pending(self._worker_id, self._lease_seconds, target=self._target)
            except BaseException:
                self._pool.release(slot, notify=False)
                raise
            if attempt is None:
                self._pool.release(slot, notify=False)
                break
            self._dispatch(attempt, slot)
            dispatched += 1
        return dispatched

    def _dispatch(self, attempt: BuildAttempt, slot: SandboxSlot) -> None:
        with self._stats_lock:
            self._stats.active_builds += 1
            future = self._threads.submit(self._build, attempt, slot)
            self._futures.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future[None]) -> None:
        with self._stats_lock:
            self._futures.discard(future)

    # ------------------------------------------------------------------ #
    # One build
    # ------------------------------------------------------------------ #

    def _build(self, attempt: BuildAttempt, slot: SandboxSlot) -> None:
        release = attempt.release
        target = attempt.target or self._target
        log_ref: str | None = None
        log = b""

        with LogContext(package=release.package, version=release.version, attempt_id=attempt.id, slot=slot.index):
            try:
                limits = self._limits.for_package(self._store, release.package)
                running_lease = self._running_lease(limits)
                self._store.mark_running(attempt.id, lease_seconds=running_lease)
                logger.info("build_started", target=target, attempt_number=attempt.attempt_number)

                source = self._fetcher.fetch(release)
                result = self._run(slot, source, release, target, limits)
                log = result.log
                log_ref = self._logs.write(attempt, log)

                if not result.succeeded:
                    logger.warning("build_tool_failed", **result.error().to_dict())
                    self._record_failure(attempt, result.reason, log_ref)
                    return

                outputs = {target: result.artifact_path}
                extra_targets = plan_extra_targets(target, read_extra_targets(source), limits.max_targets)
                for extra in extra_targets:
                    self._store.extend_lease(attempt.id, running_lease)
                    extra_result = self._run(slot, source, release, extra, limits)
                    log += f"\n[docbuild] target {extra}\n".encode() + extra_result.log
                    if extra_result.succeeded:
                        outputs[extra] = extra_result.artifact_path
                    else:
                        logger.warning("extra_target_failed", **extra_result.error().to_dict())
                if extra_targets:
                    log_ref = self._logs.write(attempt, log)

                # A reclaimed attempt must not touch the public tree
                self._store.extend_lease(attempt.id, self._lease_seconds)
                default_output = outputs.pop(target)
                for extra, path in outputs.items():
                    try:
                        self._publish(release, extra, path, limits)
                    except ArtifactTooLarge as exc:
                        logger.warning("extra_target_rejected", **exc.to_dict())
                ref = self._publish(release, target, default_output, limits)
                self._store.mark_succeeded(attempt.id, ref, log_ref=log_ref)
                with self._stats_lock:
                    self._stats.succeeded += 1
                logger.info(
                    "build_succeeded",
                    location=ref.location,
                    targets=[target, *outputs],
                    duration_seconds=round(result.duration_seconds, 2),
                )
            except LeaseExpired:
                logger.warning("build_abandoned", reason="lease_expired")
            except (DatabaseError, InvalidTransitionError):
                logger.exception("metadata_store_error")
            except DocbuildError as exc:
                if exc.category in (ErrorCategory.STORAGE, ErrorCategory.SANDBOX):
                    logger.error("build_infrastructure_error", **exc.to_dict())
                else:
                    logger.warning("build_error", **exc.to_dict())
                log_ref = self._write_error_log(attempt, exc, log) or log_ref
                self._record_failure(
                    attempt, exc.reason or FailureReason.SANDBOX_FAULT, log_ref, retryable=is_retryable(exc)
                )
            except Exception as exc:
                category = categorize_error(exc)
                logger.exception("build_crashed", category=category.value)
                reason = FailureReason.STORAGE_FAILURE if category is ErrorCategory.STORAGE else FailureReason.SANDBOX_FAULT
                self._record_failure(attempt, reason, self._write_error_log(attempt, exc, log))
            finally:
                with self._stats_lock:
                    self._stats.processed += 1
                    self._stats.active_builds -= 1
                self._pool.release(slot)

    def _running_lease(self, limits: Limits) -> float:
        return max(self._lease_seconds, 2 * limits.timeout_seconds)

    def _run(self, slot: SandboxSlot, source: Path, release: Release, target: str, limits: Limits) -> BuildResult:
        return self._executor.run(
            slot,
            source,
            target,
            limits.timeout_seconds,
            package=release.package,
            version=release.version,
            max_log_bytes=limits.max_log_bytes,
            memory_limit=limits.max_memory_bytes,
            networking=limits.networking,
        )

    def _publish(self, release: Release, target: str, output: Path, limits: Limits) -> ArtifactRef:
        return self._artifacts.publish(
            release.package, release.version, target, output, max_file_bytes=limits.max_upload_bytes
        )

    def _record_failure(
        self,
        attempt: BuildAttempt,
        reason: FailureReason,
        log_ref: str | None,
        *,
        retryable: bool = True,
    ) -> None:
        try:
            failures = self._store.failure_count(attempt.release.id) + 1
            decision = self._policy.decide(reason, failures, retryable=retryable)
            if decision.status is AttemptStatus.FAILED:
                self._store.mark_failed(attempt.id, reason, log_ref=log_ref, retryable=decision.retryable)
            else:
                self._store.mark_errored(attempt.id, reason, log_ref=log_ref, retryable=decision.retryable)
            requeued = self._store.requeue(attempt.id) if decision.retryable else None
        except LeaseExpired:
            logger.warning("build_abandoned", reason="lease_expired")
            return
        except (DatabaseError, InvalidTransitionError):
            logger.exception("metadata_store_error")
            return

        with self._stats_lock:
            if decision.status is AttemptStatus.FAILED:
                self._stats.failed += 1
            else:
                self._stats.errored += 1
        logger.info(
            "build_failed",
            reason=reason.value,
            status=decision.status.value,
            failures=failures,
            requeued=requeued is not None,
            exhausted=decision.exhausted,
        )

    def _write_error_log(self, attempt: BuildAttempt, exc: BaseException, log: bytes = b"") -> str | None:
        message = log + f"[docbuild] {type(exc).__name__}: {exc}\n".encode()
        try:
            return self._logs.write(attempt, message)
        except StorageFailure:
            logger.exception("build_log_write_failed")
            return None
