"""
Build executor - runs the documentation tool inside a leased sandbox slot.

One call to ``BuildExecutor.run`` is one build of one target:

    1. copy the fetched source into the slot's private ``build/src`` (once
       per lease; further targets of the same release reuse the copy)
    2. start the tool through the pool (the only way into a slot)
    3. stream combined stdout/stderr into a ``BoundedLogBuffer``
    4. enforce the wall-clock timeout, killing the whole process group
    5. classify: exit 0 with a non-empty docs directory is a success, exit 0
       without one is ``EMPTY_OUTPUT``, anything else ``BUILD_FAILURE``

Where the docs end up is the ``output_template``. Both it and the command
are formatted with::

    package, version, target
    source_dir    staged source, the tool's working directory
    target_dir    <slot>/build/target, for tools with their own target dir
    output_dir    <slot>/output/<target>, for tools told where to write

``cargo doc --target-dir {target_dir}`` leaves its docs in
``{target_dir}/{target}/doc``; a tool that writes straight into
``{output_dir}`` uses the default template. The resolved docs directory is
exported as ``DOCBUILD_OUTPUT_DIR`` and must stay inside the slot.

Outcomes of the tool itself are returned, never raised. Only a failure to
enter the sandbox raises (``SandboxFault``).
"""

from __future__ import annotations

import os
import shutil
import subprocess
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from docbuild.core.enums import AttemptStatus, FailureReason
from docbuild.core.errors import (
    BuildFailure,
    BuildTimeout,
    ConfigError,
    DocbuildError,
    EmptyOutput,
    ErrorContext,
    SandboxFault,
    StorageFailure,
)
from docbuild.core.logging import get_logger
from docbuild.execution.fetcher import MARKER_FILE
from docbuild.execution.sandbox import SandboxPool, SandboxSlot

logger = get_logger(__name__)

_TEMPLATE_FIELDS = ("package", "version", "target", "source_dir", "target_dir", "output_dir")

_REASON_ERRORS: dict[FailureReason, type[DocbuildError]] = {
    FailureReason.TIMEOUT: BuildTimeout,
    FailureReason.EMPTY_OUTPUT: EmptyOutput,
    FailureReason.BUILD_FAILURE: BuildFailure,
}


class BoundedLogBuffer:
    """Byte buffer that keeps at most ``limit`` bytes.

    Anything past the cap is dropped and a truncation marker is appended on
    read. Writes come from the reader thread, reads from the build thread.
    """

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("log limit must be positive")
        self.limit = limit
        self._chunks: list[bytes] = []
        self._size = 0
        self._dropped = 0
        self._lock = threading.Lock()

    @property
    def truncated(self) -> bool:
        return self._dropped > 0

    def write(self, data: bytes) -> None:
        with self._lock:
            room = self.limit - self._size
            if room > 0:
                kept = data[:room]
                self._chunks.append(kept)
                self._size += len(kept)
            self._dropped += max(0, len(data) - max(room, 0))

    def append_line(self, line: str) -> None:
        """Append an orchestrator message; bypasses the cap."""
        with self._lock:
            self._chunks.append(line.encode() + b"\n")

    def getvalue(self) -> bytes:
        with self._lock:
            data = b"".join(self._chunks)
            if self._dropped:
                data += f"\n[log truncated: {self._dropped} bytes over the {self.limit} byte limit]\n".encode()
            return data


@dataclass
class BuildResult:
    """Classified outcome of one tool run."""

    status: AttemptStatus
    log: bytes
    artifact_path: Path | None = None
    reason: FailureReason | None = None
    exit_code: int | None = None
    duration_seconds: float = 0.0
    target: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is AttemptStatus.SUCCEEDED

    def error(self) -> DocbuildError | None:
        """The typed error for a failed run, for logging; ``None`` on success."""
        if self.reason is None:
            return None
        message = f"build tool run ended with {self.reason.value}"
        if self.exit_code is not None:
            message += f" (exit status {self.exit_code})"
        return _REASON_ERRORS[self.reason](
            message,
            context=ErrorContext(target=self.target, metadata={"duration_seconds": round(self.duration_seconds, 2)}),
        )


class BuildExecutor:
    """Run the external documentation tool confined to a slot.

    Args:
        pool: Sandbox pool the slots come from.
        command: argv template; see the module docstring for the fields.
        output_template: Where the docs are once the tool exits.
        env: Extra environment passed to every build.
        max_log_bytes: Default log cap.
        kill_grace_seconds: Bound on waiting for the reader after a kill.

    Raises:
        ConfigError: A template names a field that does not exist.
    """

    def __init__(
        self,
        pool: SandboxPool,
        command: Sequence[str],
        *,
        output_template: str = "{output_dir}",
        env: Mapping[str, str] | None = None,
        max_log_bytes: int = 100 * 1024,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        if not command:
            raise ValueError("build command must not be empty")
        self._pool = pool
        self._command = list(command)
        self._output_template = output_template
        self._env = dict(env or {})
        self._max_log_bytes = max_log_bytes
        self._grace = kill_grace_seconds
        self._check_templates()

    def run(
        self,
        slot: SandboxSlot,
        source_path: Path,
        target: str,
        timeout: float,
        *,
        package: str = "",
        version: str = "",
        max_log_bytes: int | None = None,
        memory_limit: int | None = None,
        networking: bool = True,
    ) -> BuildResult:
        """Build the docs of *source_path* for *target* within *timeout* seconds."""
        log = BoundedLogBuffer(max_log_bytes or self._max_log_bytes)
        workdir = self._stage_source(slot, source_path)
        values = self._values(slot, workdir, package=package, version=version, target=target)
        argv = [part.format(**values) for part in self._command]
        docs_dir = Path(self._output_template.format(**values))
        env = self._environment(slot, docs_dir, package=package, version=version, target=target)
        self._prepare_output(slot, target)

        started = time.monotonic()
        process = self._pool.spawn(
            slot, argv, cwd=workdir, env=env, memory_limit=memory_limit, networking=networking
        )
        reader = threading.Thread(
            target=self._pump, args=(process, log), name=f"slot-{slot.index}-log", daemon=True
        )
        reader.start()

        timed_out = False
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning("build_timeout", slot=slot.index, pid=process.pid, timeout_seconds=timeout)
        finally:
            exit_code = self._pool.terminate(slot, process)
            reader.join(timeout=self._grace)
        duration = time.monotonic() - started

        def failed(reason: FailureReason, message: str) -> BuildResult:
            log.append_line(f"[docbuild] {message}")
            return BuildResult(AttemptStatus.FAILED, log.getvalue(), reason=reason, exit_code=exit_code,
                               duration_seconds=duration, target=target)

        if timed_out:
            return failed(FailureReason.TIMEOUT, f"build killed: exceeded timeout of {timeout:g}s")
        if exit_code != 0:
            return failed(FailureReason.BUILD_FAILURE, f"build tool exited with status {exit_code}")
        if not self._inside_slot(slot, docs_dir):
            return failed(FailureReason.EMPTY_OUTPUT, "documentation directory resolves outside the sandbox")
        if not self._has_output(docs_dir):
            return failed(FailureReason.EMPTY_OUTPUT, "build tool exited successfully but produced no documentation")

        return BuildResult(AttemptStatus.SUCCEEDED, log.getvalue(), artifact_path=docs_dir,
                           exit_code=exit_code, duration_seconds=duration, target=target)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _check_templates(self) -> None:
        dummy = {name: name for name in _TEMPLATE_FIELDS}
        for template in (*self._command, self._output_template):
            try:
                template.format(**dummy)
            except (KeyError, IndexError, ValueError) as exc:
                raise ConfigError(
                    f"invalid build template {template!r}: {exc}",
                    context=ErrorContext(metadata={"fields": list(_TEMPLATE_FIELDS)}),
                    cause=exc,
                ) from exc

    def _stage_source(self, slot: SandboxSlot, source_path: Path) -> Path:
        """Copy the cached source into the slot so the build cannot touch the cache.

        The copy is made once per lease; the slot's ``build/`` is purged on
        acquire, so an existing copy belongs to this release.
        """
        workdir = slot.build_dir / "src"
        if workdir.is_dir():
            return workdir
        try:
            shutil.copytree(source_path, workdir, symlinks=True, ignore=shutil.ignore_patterns(MARKER_FILE))
        except (OSError, shutil.Error) as exc:
            raise SandboxFault(
                f"cannot stage source into slot: {exc}",
                context=ErrorContext(slot=slot.index, path=str(source_path)),
                cause=exc,
            ) from exc
        return workdir

    def _prepare_output(self, slot: SandboxSlot, target: str) -> None:
        try:
            slot.output_for(target).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SandboxFault(
                f"cannot prepare output directory: {exc}", context=ErrorContext(slot=slot.index, target=target),
                cause=exc,
            ) from exc

    @staticmethod
    def _values(slot: SandboxSlot, workdir: Path, *, package: str, version: str, target: str) -> dict[str, str]:
        return {
            "package": package,
            "version": version,
            "target": target,
            "source_dir": str(workdir),
            "target_dir": str(slot.target_dir),
            "output_dir": str(slot.output_for(target)),
        }

    def _environment(
        self, slot: SandboxSlot, docs_dir: Path, *, package: str, version: str, target: str
    ) -> dict[str, str]:
        # Nothing from the orchestrator's environment leaks in except PATH
        env = {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": str(slot.home),
            "TMPDIR": str(slot.tmp_dir),
            "XDG_CACHE_HOME": str(slot.cache_dir),
            "CARGO_TARGET_DIR": str(slot.target_dir),
            "LANG": "C.UTF-8",
        }
        env.update(self._env)
        env.update(
            DOCBUILD_PACKAGE=package,
            DOCBUILD_VERSION=version,
            DOCBUILD_TARGET=target,
            DOCBUILD_OUTPUT_DIR=str(docs_dir),
            DOCBUILD_SLOT=str(slot.index),
        )
        return env

    @staticmethod
    def _pump(process: subprocess.Popen[bytes], log: BoundedLogBuffer) -> None:
        stream = process.stdout
        if stream is None:
            return
        try:
            while chunk := stream.read1(8192):
                log.write(chunk)
        except (OSError, ValueError):
            # Pipe closed underneath us during teardown
            return
        finally:
            stream.close()

    @staticmethod
    def _inside_slot(slot: SandboxSlot, path: Path) -> bool:
        return path.resolve().is_relative_to(slot.root.resolve())

    @staticmethod
    def _has_output(path: Path) -> bool:
        try:
            return path.is_dir() and any(path.iterdir())
        except OSError as exc:
            raise StorageFailure(f"cannot inspect build output: {exc}", cause=exc) from exc
