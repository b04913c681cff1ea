"""SQLAlchemy 2.0 table definitions for the metadata store.

* ``packages`` / ``releases`` are append-only: a release is never deleted.
* ``build_attempts`` holds one row per attempt. ``UNIQUE(release_id,
  attempt_number)`` is what makes a claim atomic across processes: two
  claimers inserting the same next attempt number cannot both commit.
* ``sandbox_overrides`` and ``blacklisted_packages`` are operator-managed.

Tags:
    docbuild, orm, sqlalchemy, tables, schema
"""

from __future__ import annotations

import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docbuild.core.orm.base import DocbuildBase


class PackageTable(DocbuildBase):
    __tablename__ = "packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)

    releases: Mapped[list[ReleaseTable]] = relationship(back_populates="package")


class ReleaseTable(DocbuildBase):
    __tablename__ = "releases"
    __table_args__ = (UniqueConstraint("package_id", "version", name="uq_releases_package_version"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_id: Mapped[int] = mapped_column(Integer, ForeignKey("packages.id"), nullable=False)
    version: Mapped[str] = mapped_column(Text, nullable=False)
    source_ref: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)

    package: Mapped[PackageTable] = relationship(back_populates="releases")
    attempts: Mapped[list[BuildAttemptTable]] = relationship(
        back_populates="release", order_by="BuildAttemptTable.attempt_number"
    )


class BuildAttemptTable(DocbuildBase):
    __tablename__ = "build_attempts"
    __table_args__ = (
        UniqueConstraint("release_id", "attempt_number", name="uq_build_attempts_release_number"),
        Index("ix_build_attempts_status_lease", "status", "lease_expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    release_id: Mapped[int] = mapped_column(Integer, ForeignKey("releases.id"), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    trigger: Mapped[str] = mapped_column(Text, nullable=False)
    target: Mapped[str | None] = mapped_column(Text)
    reason: Mapped[str | None] = mapped_column(Text)
    retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    log_ref: Mapped[str | None] = mapped_column(Text)
    artifact_ref: Mapped[str | None] = mapped_column(Text)
    worker_id: Mapped[str | None] = mapped_column(Text)
    lease_expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    started_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    finished_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)

    release: Mapped[ReleaseTable] = relationship(back_populates="attempts")


class SandboxOverrideTable(DocbuildBase):
    __tablename__ = "sandbox_overrides"

    package_name: Mapped[str] = mapped_column(Text, primary_key=True)
    timeout_seconds: Mapped[int | None] = mapped_column(Integer)
    max_log_bytes: Mapped[int | None] = mapped_column(Integer)
    max_memory_bytes: Mapped[int | None] = mapped_column(BigInteger)
    max_targets: Mapped[int | None] = mapped_column(Integer)
    max_upload_bytes: Mapped[int | None] = mapped_column(BigInteger)
    networking: Mapped[bool | None] = mapped_column(Boolean)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)


class BlacklistTable(DocbuildBase):
    __tablename__ = "blacklisted_packages"

    package_name: Mapped[str] = mapped_column(Text, primary_key=True)
    reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
