"""
Artifact store - durable, atomically published documentation trees.

Layout under the artifact root::

    <package>/<version>/<target>  →  symlink to .objects/<package>/<version>/<target>-<token>
    .objects/                        immutable published trees
    .staging/<token>/                copies in progress

``publish`` copies the build output into ``.staging`` on the same volume,
renames the finished copy into ``.objects`` and then swaps the public path
with one ``os.replace`` of a symlink. A reader resolving
``<package>/<version>/<target>`` therefore sees the previous tree or the new
one, never a partial copy, and a failed publish leaves the previous tree in
place.

Symlinks inside the build output are dropped; a hostile build must not be
able to publish a link to a host file. A file larger than the package's
upload limit rejects the whole tree (``ArtifactTooLarge``) before anything
is copied.
"""

from __future__ import annotations

import os
import shutil
import uuid
from dataclasses import replace
from pathlib import Path

from docbuild.core.errors import ArtifactTooLarge, ErrorContext, StorageFailure
from docbuild.core.logging import get_logger
from docbuild.execution.models import ArtifactRef, validate_coordinate

logger = get_logger(__name__)


def _ignore_symlinks(directory: str, names: list[str]) -> set[str]:
    return {name for name in names if os.path.islink(os.path.join(directory, name))}


class ArtifactStore:
    """Publish and retract documentation trees under ``root``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._objects = self.root / ".objects"
        self._staging = self.root / ".staging"

    def path_for(self, ref: ArtifactRef) -> Path:
        return ref.path(self.root)

    def exists(self, ref: ArtifactRef) -> bool:
        return self.path_for(ref).is_dir()

    def publish(
        self,
        package: str,
        version: str,
        target: str,
        source_dir: Path,
        *,
        max_file_bytes: int | None = None,
    ) -> ArtifactRef:
        """Copy *source_dir* to ``<package>/<version>/<target>`` atomically.

        Raises:
            ArtifactTooLarge: A file exceeds *max_file_bytes*. Nothing is
                written.
            StorageFailure: Anything on the way failed. The previously
                published tree, if any, is untouched.
        """
        validate_coordinate(package, "package")
        validate_coordinate(version, "version")
        validate_coordinate(target, "target")

        ref = ArtifactRef(package, version, target)
        final = self.path_for(ref)
        token = uuid.uuid4().hex
        staging = self._staging / token
        obj = self._objects / package / version / f"{target}-{token}"
        link_tmp = final.parent / f".{target}.{token}.tmp"
        linked = False
        previous: Path | None = None

        if max_file_bytes is not None:
            self._check_sizes(source_dir, max_file_bytes, ErrorContext(package=package, version=version, target=target))

        try:
            self._staging.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source_dir, staging, ignore=_ignore_symlinks)

            obj.parent.mkdir(parents=True, exist_ok=True)
            os.rename(staging, obj)

            final.parent.mkdir(parents=True, exist_ok=True)
            previous = self._current_object(final)
            os.symlink(os.path.relpath(obj, final.parent), link_tmp)
            os.replace(link_tmp, final)
            linked = True
        except (OSError, shutil.Error) as exc:
            shutil.rmtree(staging, ignore_errors=True)
            if not linked:
                shutil.rmtree(obj, ignore_errors=True)
                if link_tmp.is_symlink():
                    link_tmp.unlink()
            raise StorageFailure(
                f"publish failed: {exc}",
                context=ErrorContext(package=package, version=version, target=target, path=str(final)),
                cause=exc,
            ) from exc

        if previous is not None and previous != obj:
            shutil.rmtree(previous, ignore_errors=True)
        logger.info("artifact_published", package=package, version=version, target=target, location=ref.location)
        return ref

    def retract(self, ref: ArtifactRef) -> bool:
        """Administratively delete a published tree. Returns False if absent."""
        final = self.path_for(ref)
        try:
            if final.is_symlink():
                obj = self._current_object(final)
                final.unlink()
                if obj is not None:
                    shutil.rmtree(obj, ignore_errors=True)
            elif final.is_dir():
                shutil.rmtree(final)
            else:
                return False
        except OSError as exc:
            raise StorageFailure(
                f"retract failed: {exc}",
                context=ErrorContext(package=ref.package, version=ref.version, target=ref.target),
                cause=exc,
            ) from exc
        logger.info("artifact_retracted", location=ref.location)
        return True

    def sweep_staging(self) -> int:
        """Remove copies left behind by a crashed publish. Returns how many."""
        if not self._staging.is_dir():
            return 0
        removed = 0
        for leftover in self._staging.iterdir():
            shutil.rmtree(leftover, ignore_errors=True)
            removed += 1
        if removed:
            logger.info("staging_swept", removed=removed)
        return removed

    @staticmethod
    def _check_sizes(source_dir: Path, limit: int, context: ErrorContext) -> None:
        try:
            for dirpath, _dirnames, filenames in os.walk(source_dir):
                for name in filenames:
                    path = os.path.join(dirpath, name)
                    if os.path.islink(path):
                        continue
                    size = os.stat(path).st_size
                    if size > limit:
                        raise ArtifactTooLarge(
                            f"{os.path.relpath(path, source_dir)} is {size} bytes, over the {limit} byte upload limit",
                            context=replace(context, path=path),
                        )
        except OSError as exc:
            raise StorageFailure(f"cannot inspect build output: {exc}", context=context, cause=exc) from exc

    def _current_object(self, final: Path) -> Path | None:
        if not final.is_symlink():
            return None
        return (final.parent / os.readlink(final)).resolve()
