"""SQLAlchemy 2.0 ORM layer for the metadata store."""

from docbuild.core.orm.base import DocbuildBase
from docbuild.core.orm.session import DocbuildSession, create_docbuild_engine, docbuild_session_factory
from docbuild.core.orm.tables import (
    BlacklistTable,
    BuildAttemptTable,
    PackageTable,
    ReleaseTable,
    SandboxOverrideTable,
)

__all__ = [
    "DocbuildBase",
    "DocbuildSession",
    "create_docbuild_engine",
    "docbuild_session_factory",
    "PackageTable",
    "ReleaseTable",
    "BuildAttemptTable",
    "SandboxOverrideTable",
    "BlacklistTable",
]
