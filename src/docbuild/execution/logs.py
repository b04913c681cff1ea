"""Build log storage: one file per attempt, written atomically."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from docbuild.core.errors import ErrorContext, StorageFailure
from docbuild.execution.models import BuildAttempt


class BuildLogStore:
    """Stores logs at ``<root>/<package>/<version>/attempt-<n>.log``.

    The returned reference is the path relative to ``root``.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def write(self, attempt: BuildAttempt, data: bytes) -> str:
        ref = f"{attempt.package}/{attempt.version}/attempt-{attempt.attempt_number}.log"
        path = self.root / ref
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".log-")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                os.replace(tmp, path)
            except BaseException:
                os.unlink(tmp)
                raise
        except OSError as exc:
            raise StorageFailure(
                f"cannot write build log: {exc}",
                context=ErrorContext(package=attempt.package, version=attempt.version, attempt_id=attempt.id),
                cause=exc,
            ) from exc
        return ref

    def read(self, ref: str) -> bytes:
        path = (self.root / ref).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"log reference escapes the log directory: {ref!r}")
        return path.read_bytes()
