"""
Metadata store - durable record of packages, releases and build attempts.

The store is the single source of truth for "what has been built" and "what
is pending". There is no in-memory queue anywhere: the queue is the set of
releases whose latest attempt is absent, Queued, or a retryable
Failed/Errored attempt, minus blacklisted packages.

Architecture:
    ::

        record_release ──► releases (append-only)
                              │
        claim_next_pending ───┤  oldest eligible first
                              ▼  (priority, created_at, name, version)
                         build_attempts
                 QUEUED ─► CLAIMED ─► RUNNING ─► SUCCEEDED
                              │          │
                              └──────────┴─► FAILED | ERRORED
                                               │ retryable and under ceiling
                                               ▼
                                       requeue: new QUEUED row

Claim atomicity:
    Every write that hands out work is a compare-and-set:

    * a Queued row is claimed with ``UPDATE ... WHERE id=? AND status='queued'``
      and the rowcount decides the winner;
    * a release with no usable row gets a new attempt inserted with number
      ``latest + 1``; ``UNIQUE(release_id, attempt_number)`` rejects the loser.

    Both hold across processes on SQLite and PostgreSQL alike, so several
    schedulers may share one store.

Lease recovery:
    ``reclaim_expired_leases`` moves an attempt stuck in Claimed/Running past
    its lease to Errored(``lease_expired``) with a conditional update, then
    inserts exactly one Queued successor. A holder that comes back late gets
    ``LeaseExpired`` from its next transition.

Tags:
    metadata-store, sqlalchemy, compare-and-set, leases, docbuild
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from docbuild.core.enums import AttemptStatus, FailureReason, TriggerSource
from docbuild.core.errors import DatabaseError, InvalidTransitionError, LeaseExpired
from docbuild.core.logging import get_logger
from docbuild.core.orm import (
    BlacklistTable,
    BuildAttemptTable,
    DocbuildBase,
    PackageTable,
    ReleaseTable,
    SandboxOverrideTable,
    create_docbuild_engine,
    docbuild_session_factory,
)
from docbuild.core.orm.base import utcnow
from docbuild.execution.models import (
    ArtifactRef,
    BuildAttempt,
    Release,
    allowed_sources,
    validate_coordinate,
)

logger = get_logger(__name__)

_IN_FLIGHT = [AttemptStatus.CLAIMED.value, AttemptStatus.RUNNING.value]
_FAILED = [AttemptStatus.FAILED.value, AttemptStatus.ERRORED.value]
_OVERRIDE_COLUMNS = (
    "timeout_seconds",
    "max_log_bytes",
    "max_memory_bytes",
    "max_targets",
    "max_upload_bytes",
    "networking",
)


class MetadataStore:
    """SQLAlchemy-backed store for releases and build attempts.

    Args:
        engine: Engine from ``create_docbuild_engine``.
        max_attempts: Retry ceiling; failures counted since the last manual
            re-trigger.
        batch_size: Candidates examined per claim pass.
    """

    def __init__(self, engine: Engine, *, max_attempts: int = 3, batch_size: int = 25) -> None:
        self._engine = engine
        self._sessions = docbuild_session_factory(engine)
        self.max_attempts = max_attempts
        self._batch_size = batch_size

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> MetadataStore:
        return cls(create_docbuild_engine(url), **kwargs)

    @property
    def engine(self) -> Engine:
        return self._engine

    def init_schema(self) -> None:
        """Create every table that does not exist yet."""
        try:
            DocbuildBase.metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise DatabaseError(f"schema initialization failed: {exc}", cause=exc) from exc
        logger.info("schema_initialized", url=self._engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self._sessions.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            raise DatabaseError(str(exc), cause=exc) from exc

    # ------------------------------------------------------------------ #
    # Releases
    # ------------------------------------------------------------------ #

    def record_release(
        self,
        package: str,
        version: str,
        source_ref: dict[str, Any] | None = None,
        *,
        priority: int = 0,
    ) -> Release:
        """Idempotently record a (package, version).

        An existing release is returned unchanged; its source reference is
        immutable once observed.
        """
        validate_coordinate(package, "package")
        validate_coordinate(version, "version")

        for _ in range(3):
            try:
                with self._sessions.begin() as session:
                    pkg = session.scalar(select(PackageTable).where(PackageTable.name == package))
                    if pkg is None:
                        pkg = PackageTable(name=package, created_at=utcnow())
                        session.add(pkg)
                        session.flush()

                    row = session.scalar(
                        select(ReleaseTable).where(
                            ReleaseTable.package_id == pkg.id,
                            ReleaseTable.version == version,
                        )
                    )
                    if row is None:
                        row = ReleaseTable(
                            package_id=pkg.id,
                            version=version,
                            source_ref=dict(source_ref or {}),
                            priority=priority,
                            created_at=utcnow(),
                        )
                        session.add(row)
                        session.flush()
                        logger.info("release_recorded", package=package, version=version, priority=priority)
                    release = self._release(row)
                return release
            except IntegrityError:
                # Another writer inserted the same package or release first
                continue
            except SQLAlchemyError as exc:
                raise DatabaseError(str(exc), cause=exc) from exc
        raise DatabaseError(f"could not record release {package} {version}")

    def get_release(self, package: str, version: str) -> Release | None:
        with self._session() as session:
            row = self._release_row(session, package, version)
            return self._release(row) if row is not None else None

    def set_priority(self, package: str, version: str, priority: int) -> None:
        with self._session() as session:
            row = self._require_release(session, package, version)
            row.priority = priority

    # ------------------------------------------------------------------ #
    # Claiming
    # ------------------------------------------------------------------ #

    def _eligible(self):
        """SELECT of every release that may be claimed, in claim order."""
        latest_number = (
            select(
                BuildAttemptTable.release_id,
                func.max(BuildAttemptTable.attempt_number).label("attempt_number"),
            )
            .group_by(BuildAttemptTable.release_id)
            .subquery()
        )
        latest = aliased(BuildAttemptTable)
        return (
            select(
                ReleaseTable.id.label("release_id"),
                latest.id.label("attempt_id"),
                latest.attempt_number,
                latest.status,
            )
            .join(PackageTable, PackageTable.id == ReleaseTable.package_id)
            .outerjoin(latest_number, latest_number.c.release_id == ReleaseTable.id)
            .outerjoin(
                latest,
                and_(
                    latest.release_id == ReleaseTable.id,
                    latest.attempt_number == latest_number.c.attempt_number,
                ),
            )
            .where(PackageTable.name.not_in(select(BlacklistTable.package_name)))
            .where(
                or_(
                    latest.id.is_(None),
                    latest.status == AttemptStatus.QUEUED.value,
                    and_(latest.status.in_(_FAILED), latest.retryable.is_(True)),
                )
            )
            .order_by(
                ReleaseTable.priority,
                ReleaseTable.created_at,
                PackageTable.name,
                ReleaseTable.version,
                ReleaseTable.id,
            )
        )

    def claim_next_pending(
        self,
        worker_id: str,
        lease_seconds: float,
        *,
        target: str | None = None,
    ) -> BuildAttempt | None:
        """Claim the oldest eligible release for *worker_id*.

        Returns the Claimed attempt, or ``None`` when nothing is claimable or
        every candidate in this pass went to another claimer.
        """
        with self._session() as session:
            candidates = session.execute(self._eligible().limit(self._batch_size)).all()

        for candidate in candidates:
            if candidate.status in _FAILED and not self._under_ceiling(candidate.release_id, candidate.attempt_id):
                continue
            lease_expires_at = utcnow() + timedelta(seconds=lease_seconds)
            if candidate.status == AttemptStatus.QUEUED.value:
                attempt = self._claim_queued(candidate.attempt_id, worker_id, lease_expires_at, target)
            else:
                attempt = self._claim_new(
                    candidate.release_id,
                    (candidate.attempt_number or 0) + 1,
                    TriggerSource.SCHEDULER if candidate.attempt_id is None else TriggerSource.RETRY,
                    worker_id,
                    lease_expires_at,
                    target,
                )
            if attempt is not None:
                logger.info(
                    "release_claimed",
                    package=attempt.package,
                    version=attempt.version,
                    attempt_id=attempt.id,
                    attempt_number=attempt.attempt_number,
                    worker_id=worker_id,
                )
                return attempt
            logger.debug("claim_lost", release_id=candidate.release_id, worker_id=worker_id)
        return None

    def _claim_queued(
        self,
        attempt_id: int,
        worker_id: str,
        lease_expires_at: datetime,
        target: str | None,
    ) -> BuildAttempt | None:
        with self._session() as session:
            values: dict[str, Any] = {
                "status": AttemptStatus.CLAIMED.value,
                "worker_id": worker_id,
                "lease_expires_at": lease_expires_at,
            }
            if target is not None:
                values["target"] = target
            result = session.execute(
                update(BuildAttemptTable)
                .where(
                    BuildAttemptTable.id == attempt_id,
                    BuildAttemptTable.status == AttemptStatus.QUEUED.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            row = session.get(BuildAttemptTable, attempt_id, populate_existing=True)
            return self._attempt(row)

    def _claim_new(
        self,
        release_id: int,
        attempt_number: int,
        trigger: TriggerSource,
        worker_id: str,
        lease_expires_at: datetime,
        target: str | None,
    ) -> BuildAttempt | None:
        try:
            with self._sessions.begin() as session:
                row = BuildAttemptTable(
                    release_id=release_id,
                    attempt_number=attempt_number,
                    status=AttemptStatus.CLAIMED.value,
                    trigger=trigger.value,
                    target=target,
                    retryable=False,
                    worker_id=worker_id,
                    lease_expires_at=lease_expires_at,
                    created_at=utcnow(),
                )
                session.add(row)
                session.flush()
                attempt = self._attempt(row)
            return attempt
        except IntegrityError:
            return None
        except SQLAlchemyError as exc:
            raise DatabaseError(str(exc), cause=exc) from exc

    def _under_ceiling(self, release_id: int, attempt_id: int) -> bool:
        """Check the ceiling; an exhausted retryable attempt is made permanent."""
        with self._session() as session:
            if self._failure_count(session, release_id) < self.max_attempts:
                return True
            session.execute(
                update(BuildAttemptTable)
                .where(BuildAttemptTable.id == attempt_id)
                .values(retryable=False)
                .execution_options(synchronize_session=False)
            )
        return False

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    def _transition(self, attempt_id: int, target: AttemptStatus, **values: Any) -> BuildAttempt:
        sources = [status.value for status in allowed_sources(target)]
        with self._session() as session:
            result = session.execute(
                update(BuildAttemptTable)
                .where(BuildAttemptTable.id == attempt_id, BuildAttemptTable.status.in_(sources))
                .values(status=target.value, **values)
                .execution_options(synchronize_session=False)
            )
            row = session.get(BuildAttemptTable, attempt_id, populate_existing=True)
            if result.rowcount != 1:
                if row is None:
                    raise InvalidTransitionError(attempt_id, None, target.value)
                if row.status == AttemptStatus.ERRORED.value and row.reason == FailureReason.LEASE_EXPIRED.value:
                    raise LeaseExpired(f"attempt #{attempt_id} was reclaimed after its lease expired")
                raise InvalidTransitionError(attempt_id, row.status, target.value)
            return self._attempt(row)

    def mark_running(self, attempt_id: int, *, lease_seconds: float | None = None) -> BuildAttempt:
        """Claimed → Running. Optionally extends the lease to cover the build."""
        now = utcnow()
        values: dict[str, Any] = {"started_at": now}
        if lease_seconds is not None:
            values["lease_expires_at"] = now + timedelta(seconds=lease_seconds)
        return self._transition(attempt_id, AttemptStatus.RUNNING, **values)

    def mark_succeeded(
        self,
        attempt_id: int,
        artifact_ref: ArtifactRef,
        *,
        log_ref: str | None = None,
    ) -> BuildAttempt:
        """Running → Succeeded."""
        return self._transition(
            attempt_id,
            AttemptStatus.SUCCEEDED,
            artifact_ref=artifact_ref.location,
            log_ref=log_ref,
            reason=None,
            retryable=False,
            finished_at=utcnow(),
            lease_expires_at=None,
        )

    def mark_failed(
        self,
        attempt_id: int,
        reason: FailureReason,
        *,
        log_ref: str | None = None,
        retryable: bool = False,
    ) -> BuildAttempt:
        """Claimed/Running → Failed."""
        return self._transition(
            attempt_id,
            AttemptStatus.FAILED,
            reason=reason.value,
            log_ref=log_ref,
            retryable=retryable,
            finished_at=utcnow(),
            lease_expires_at=None,
        )

    def mark_errored(
        self,
        attempt_id: int,
        reason: FailureReason,
        *,
        log_ref: str | None = None,
        retryable: bool = False,
    ) -> BuildAttempt:
        """Claimed/Running → Errored."""
        return self._transition(
            attempt_id,
            AttemptStatus.ERRORED,
            reason=reason.value,
            log_ref=log_ref,
            retryable=retryable,
            finished_at=utcnow(),
            lease_expires_at=None,
        )

    def extend_lease(self, attempt_id: int, lease_seconds: float) -> BuildAttempt:
        """Push the lease of an in-flight attempt forward."""
        with self._session() as session:
            result = session.execute(
                update(BuildAttemptTable)
                .where(BuildAttemptTable.id == attempt_id, BuildAttemptTable.status.in_(_IN_FLIGHT))
                .values(lease_expires_at=utcnow() + timedelta(seconds=lease_seconds))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise LeaseExpired(f"attempt #{attempt_id} is no longer in flight")
            return self._attempt(session.get(BuildAttemptTable, attempt_id, populate_existing=True))

    # ------------------------------------------------------------------ #
    # Requeue / recovery
    # ------------------------------------------------------------------ #

    def requeue(self, attempt_id: int) -> BuildAttempt | None:
        """Insert a Queued successor for a retryable terminal attempt.

        Returns ``None`` when the attempt is not retryable, the ceiling is
        reached, or a successor already exists.
        """
        try:
            with self._sessions.begin() as session:
                row = session.get(BuildAttemptTable, attempt_id)
                if row is None or row.status not in _FAILED or not row.retryable:
                    return None
                if self._failure_count(session, row.release_id) >= self.max_attempts:
                    row.retryable = False
                    return None
                queued = self._insert_queued(session, row.release_id, row.attempt_number + 1, TriggerSource.RETRY, row.target)
                attempt = self._attempt(queued)
            logger.info("attempt_requeued", package=attempt.package, version=attempt.version, attempt_number=attempt.attempt_number)
            return attempt
        except IntegrityError:
            return None
        except SQLAlchemyError as exc:
            raise DatabaseError(str(exc), cause=exc) from exc

    def reclaim_expired_leases(self, now: datetime | None = None) -> list[BuildAttempt]:
        """Recover attempts whose holder vanished.

        Each expired attempt is reclaimed exactly once even with several
        schedulers racing; the winner inserts the single Queued successor.
        """
        now = now or utcnow()
        with self._session() as session:
            expired_ids = session.scalars(
                select(BuildAttemptTable.id).where(
                    BuildAttemptTable.status.in_(_IN_FLIGHT),
                    BuildAttemptTable.lease_expires_at < now,
                )
            ).all()

        reclaimed: list[BuildAttempt] = []
        for attempt_id in expired_ids:
            queued: BuildAttempt | None = None
            try:
                with self._sessions.begin() as session:
                    result = session.execute(
                        update(BuildAttemptTable)
                        .where(
                            BuildAttemptTable.id == attempt_id,
                            BuildAttemptTable.status.in_(_IN_FLIGHT),
                            BuildAttemptTable.lease_expires_at < now,
                        )
                        .values(
                            status=AttemptStatus.ERRORED.value,
                            reason=FailureReason.LEASE_EXPIRED.value,
                            retryable=True,
                            finished_at=now,
                            lease_expires_at=None,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        continue
                    row = session.get(BuildAttemptTable, attempt_id, populate_existing=True)
                    if self._failure_count(session, row.release_id) >= self.max_attempts:
                        row.retryable = False
                        logger.warning("lease_expired_ceiling_reached", attempt_id=attempt_id, worker_id=row.worker_id)
                        continue
                    new_row = self._insert_queued(session, row.release_id, row.attempt_number + 1, TriggerSource.RECLAIM, row.target)
                    queued = self._attempt(new_row)
            except IntegrityError:
                continue
            except SQLAlchemyError as exc:
                raise DatabaseError(str(exc), cause=exc) from exc
            if queued is not None:
                logger.warning(
                    "lease_reclaimed",
                    package=queued.package,
                    version=queued.version,
                    expired_attempt_id=attempt_id,
                    queued_attempt_id=queued.id,
                )
                reclaimed.append(queued)
        return reclaimed

    def retrigger(self, package: str, version: str) -> BuildAttempt:
        """Operator re-trigger: queue a release regardless of past failures.

        A release that is already queued or in flight is returned as is.
        """
        with self._session() as session:
            release = self._require_release(session, package, version)
            latest = self._latest_row(session, release.id)
            if latest is not None and latest.status not in (
                AttemptStatus.SUCCEEDED.value,
                AttemptStatus.FAILED.value,
                AttemptStatus.ERRORED.value,
            ):
                return self._attempt(latest)
            number = latest.attempt_number + 1 if latest is not None else 1
            queued = self._insert_queued(session, release.id, number, TriggerSource.MANUAL, None)
            attempt = self._attempt(queued)
        logger.info("release_retriggered", package=package, version=version, attempt_number=attempt.attempt_number)
        return attempt

    def _insert_queued(
        self,
        session: Session,
        release_id: int,
        attempt_number: int,
        trigger: TriggerSource,
        target: str | None,
    ) -> BuildAttemptTable:
        row = BuildAttemptTable(
            release_id=release_id,
            attempt_number=attempt_number,
            status=AttemptStatus.QUEUED.value,
            trigger=trigger.value,
            target=target,
            retryable=False,
            created_at=utcnow(),
        )
        session.add(row)
        session.flush()
        return row

    def _failure_count(self, session: Session, release_id: int) -> int:
        last_manual = session.scalar(
            select(func.max(BuildAttemptTable.attempt_number)).where(
                BuildAttemptTable.release_id == release_id,
                BuildAttemptTable.trigger == TriggerSource.MANUAL.value,
            )
        )
        return session.scalar(
            select(func.count()).where(
                BuildAttemptTable.release_id == release_id,
                BuildAttemptTable.status.in_(_FAILED),
                BuildAttemptTable.attempt_number >= (last_manual or 0),
            )
        ) or 0

    def failure_count(self, release_id: int) -> int:
        """Failed/Errored attempts counted against the retry ceiling."""
        with self._session() as session:
            return self._failure_count(session, release_id)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def latest_successful(self, package: str, version: str) -> ArtifactRef | None:
        """Artifact of the latest Succeeded attempt, the current documentation."""
        with self._session() as session:
            location = session.scalar(
                select(BuildAttemptTable.artifact_ref)
                .join(ReleaseTable, ReleaseTable.id == BuildAttemptTable.release_id)
                .join(PackageTable, PackageTable.id == ReleaseTable.package_id)
                .where(
                    PackageTable.name == package,
                    ReleaseTable.version == version,
                    BuildAttemptTable.status == AttemptStatus.SUCCEEDED.value,
                )
                .order_by(BuildAttemptTable.attempt_number.desc())
                .limit(1)
            )
        return ArtifactRef.parse(location) if location else None

    def get_attempt(self, attempt_id: int) -> BuildAttempt | None:
        with self._session() as session:
            row = session.get(BuildAttemptTable, attempt_id)
            return self._attempt(row) if row is not None else None

    def latest_attempt(self, package: str, version: str) -> BuildAttempt | None:
        with self._session() as session:
            release = self._release_row(session, package, version)
            if release is None:
                return None
            row = self._latest_row(session, release.id)
            return self._attempt(row) if row is not None else None

    def list_attempts(self, package: str, version: str) -> list[BuildAttempt]:
        """Every attempt of a release, oldest first."""
        with self._session() as session:
            release = self._release_row(session, package, version)
            if release is None:
                return []
            rows = session.scalars(
                select(BuildAttemptTable)
                .where(BuildAttemptTable.release_id == release.id)
                .order_by(BuildAttemptTable.attempt_number)
            ).all()
            return [self._attempt(row) for row in rows]

    def pending_count(self) -> int:
        """Size of the logical queue."""
        with self._session() as session:
            return session.scalar(select(func.count()).select_from(self._eligible().subquery())) or 0

    # ------------------------------------------------------------------ #
    # Blacklist / sandbox overrides
    # ------------------------------------------------------------------ #

    def add_to_blacklist(self, package: str, reason: str | None = None) -> None:
        with self._session() as session:
            if session.get(BlacklistTable, package) is None:
                session.add(BlacklistTable(package_name=package, reason=reason, created_at=utcnow()))
        logger.info("package_blacklisted", package=package, reason=reason)

    def remove_from_blacklist(self, package: str) -> bool:
        with self._session() as session:
            row = session.get(BlacklistTable, package)
            if row is None:
                return False
            session.delete(row)
        logger.info("package_unblacklisted", package=package)
        return True

    def is_blacklisted(self, package: str) -> bool:
        with self._session() as session:
            return session.get(BlacklistTable, package) is not None

    def list_blacklist(self) -> list[str]:
        with self._session() as session:
            return list(session.scalars(select(BlacklistTable.package_name).order_by(BlacklistTable.package_name)))

    def set_sandbox_override(
        self,
        package: str,
        *,
        timeout_seconds: int | None = None,
        max_log_bytes: int | None = None,
        max_memory_bytes: int | None = None,
        max_targets: int | None = None,
        max_upload_bytes: int | None = None,
        networking: bool | None = None,
    ) -> None:
        """Merge overrides into the package's row; ``None`` leaves a field as it is.

        ``remove_sandbox_override`` is the only way to clear them.
        """
        changes = {
            "timeout_seconds": timeout_seconds,
            "max_log_bytes": max_log_bytes,
            "max_memory_bytes": max_memory_bytes,
            "max_targets": max_targets,
            "max_upload_bytes": max_upload_bytes,
            "networking": networking,
        }
        with self._session() as session:
            row = session.get(SandboxOverrideTable, package)
            if row is None:
                row = SandboxOverrideTable(package_name=package, updated_at=utcnow())
                session.add(row)
            for column, value in changes.items():
                if value is not None:
                    setattr(row, column, value)
            row.updated_at = utcnow()
        logger.info("sandbox_override_set", package=package, **{k: v for k, v in changes.items() if v is not None})

    def get_sandbox_override(self, package: str) -> dict[str, int | bool | None] | None:
        with self._session() as session:
            row = session.get(SandboxOverrideTable, package)
            if row is None:
                return None
            return {column: getattr(row, column) for column in _OVERRIDE_COLUMNS}

    def remove_sandbox_override(self, package: str) -> None:
        with self._session() as session:
            row = session.get(SandboxOverrideTable, package)
            if row is not None:
                session.delete(row)

    # ------------------------------------------------------------------ #
    # Row helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _release_row(session: Session, package: str, version: str) -> ReleaseTable | None:
        return session.scalar(
            select(ReleaseTable)
            .join(PackageTable, PackageTable.id == ReleaseTable.package_id)
            .where(PackageTable.name == package, ReleaseTable.version == version)
        )

    def _require_release(self, session: Session, package: str, version: str) -> ReleaseTable:
        row = self._release_row(session, package, version)
        if row is None:
            raise LookupError(f"unknown release {package} {version}")
        return row

    @staticmethod
    def _latest_row(session: Session, release_id: int) -> BuildAttemptTable | None:
        return session.scalar(
            select(BuildAttemptTable)
            .where(BuildAttemptTable.release_id == release_id)
            .order_by(BuildAttemptTable.attempt_number.desc())
            .limit(1)
        )

    @staticmethod
    def _release(row: ReleaseTable) -> Release:
        return Release(
            id=row.id,
            package=row.package.name,
            version=row.version,
            source_ref=dict(row.source_ref or {}),
            priority=row.priority,
            created_at=row.created_at,
        )

    def _attempt(self, row: BuildAttemptTable) -> BuildAttempt:
        return BuildAttempt(
            id=row.id,
            release=self._release(row.release),
            attempt_number=row.attempt_number,
            status=AttemptStatus(row.status),
            trigger=TriggerSource(row.trigger),
            target=row.target,
            reason=FailureReason(row.reason) if row.reason else None,
            retryable=bool(row.retryable),
            log_ref=row.log_ref,
            artifact_ref=ArtifactRef.parse(row.artifact_ref) if row.artifact_ref else None,
            worker_id=row.worker_id,
            lease_expires_at=row.lease_expires_at,
            created_at=row.created_at,
            started_at=row.started_at,
            finished_at=row.finished_at,
        )
