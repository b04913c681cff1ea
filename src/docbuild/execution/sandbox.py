"""
Sandbox pool - a fixed arena of isolated execution slots.

Each slot is bound 1:1 to a distinct privilege-separated identity and owns a
private workspace on disk::

    <sandbox_root>/slot-<index>/
        home/      HOME of the identity
        cache/     per-identity tool caches (kept between builds)
        tmp/       TMPDIR, purged between builds
        build/     copy of the source being built, purged between builds
            src/       the staged source, shared by every target of one build
            target/    the tool's own target dir ({target_dir} in templates)
        output/    one directory per target for tools that write docs
                   directly ({output_dir}), purged between builds

The slot count is the only admission control: nothing builds without a
leased slot, and ``acquire`` blocks until one is free.

Crossing into a slot identity is confined to one object, ``SandboxCapability``.
It is the only code that prefixes a command with the privilege-crossing
wrapper (``sandbox_command`` in settings, e.g. ``sudo -n -u {identity} --``)
and the only code that signals sandboxed processes. The executor reaches it
through ``SandboxPool.spawn`` / ``SandboxPool.terminate`` and never holds it
directly.
"""

from __future__ import annotations

import os
import queue
import shutil
import signal
import subprocess
import threading
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from docbuild.core.errors import ErrorContext, SandboxFault
from docbuild.core.logging import get_logger

logger = get_logger(__name__)

_SCRATCH_DIRS = ("build", "output", "tmp")


@dataclass(frozen=True)
class SandboxSlot:
    """One execution slot: pool index, identity and private workspace."""

    index: int
    identity: str
    root: Path

    @property
    def home(self) -> Path:
        return self.root / "home"

    @property
    def cache_dir(self) -> Path:
        return self.root / "cache"

    @property
    def tmp_dir(self) -> Path:
        return self.root / "tmp"

    @property
    def build_dir(self) -> Path:
        return self.root / "build"

    @property
    def output_dir(self) -> Path:
        return self.root / "output"

    @property
    def target_dir(self) -> Path:
        return self.build_dir / "target"

    def output_for(self, target: str) -> Path:
        return self.output_dir / target


class SandboxCapability:
    """The single capability boundary into sandbox identities.

    Args:
        command_prefix: argv placed before every sandboxed command. Items are
            formatted with ``identity``, ``index`` and ``home``. Empty runs
            commands as the orchestrator's own user (development only).
        network_isolation: argv placed after the identity prefix when a build
            may not use the network. Empty leaves the network reachable.
        kill_grace_seconds: Time between SIGTERM and SIGKILL on exit.
    """

    def __init__(
        self,
        command_prefix: Sequence[str] = (),
        *,
        network_isolation: Sequence[str] = (),
        kill_grace_seconds: float = 5.0,
    ) -> None:
        self._prefix = list(command_prefix)
        self._network_isolation = list(network_isolation)
        self._grace = kill_grace_seconds

    def wrap(
        self,
        slot: SandboxSlot,
        argv: Sequence[str],
        memory_limit: int | None = None,
        *,
        networking: bool = True,
    ) -> list[str]:
        command = [part.format(identity=slot.identity, index=slot.index, home=slot.home) for part in self._prefix]
        if not networking:
            command += self._network_isolation
        if memory_limit:
            command += ["prlimit", f"--as={memory_limit}", "--"]
        return command + list(argv)

    def enter_sandbox(
        self,
        slot: SandboxSlot,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        memory_limit: int | None = None,
        networking: bool = True,
    ) -> subprocess.Popen[bytes]:
        """Start *argv* as the slot's identity, stdout and stderr combined.

        The process leads a new session so ``exit_sandbox`` can signal
        everything it spawned.
        """
        command = self.wrap(slot, argv, memory_limit, networking=networking)
        try:
            return subprocess.Popen(
                command,
                cwd=cwd,
                env=dict(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            raise SandboxFault(
                f"cannot enter sandbox: {exc}",
                context=ErrorContext(slot=slot.index, metadata={"command": command[0]}),
                cause=exc,
            ) from exc

    def exit_sandbox(self, slot: SandboxSlot, process: subprocess.Popen[bytes]) -> int:
        """Stop *process* and anything left in its process group.

        SIGTERM first, SIGKILL after the grace period. Returns the exit code.
        """
        if process.poll() is None:
            self._signal_group(process, signal.SIGTERM)
            try:
                process.wait(timeout=self._grace)
            except subprocess.TimeoutExpired:
                logger.warning("sandbox_kill", slot=slot.index, pid=process.pid, grace_seconds=self._grace)
                self._signal_group(process, signal.SIGKILL)
                process.wait()
        # Stragglers that outlived the leader
        self._signal_group(process, signal.SIGKILL)
        return process.returncode

    def clean_workspace(self, slot: SandboxSlot) -> None:
        """Purge the slot's scratch directories and recreate its layout."""
        for name in _SCRATCH_DIRS:
            path = slot.root / name
            if path.exists():
                try:
                    shutil.rmtree(path)
                except PermissionError:
                    if not self._prefix:
                        raise
                    # Files owned by the identity are removed as the identity
                    subprocess.run(self.wrap(slot, ["rm", "-rf", str(path)]), check=True, timeout=300)
        for path in (slot.home, slot.cache_dir, slot.tmp_dir, slot.build_dir, slot.output_dir):
            path.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _signal_group(process: subprocess.Popen[bytes], sig: signal.Signals) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            # Group runs as another identity; the wrapper forwards the signal
            if process.poll() is None:
                process.send_signal(sig)


class SandboxPool:
    """Fixed pool of N slots handed out one build at a time."""

    def __init__(
        self,
        size: int,
        root: Path,
        capability: SandboxCapability | None = None,
        *,
        identity_template: str = "docbuild-{index}",
    ) -> None:
        if size < 1:
            raise ValueError("sandbox pool needs at least one slot")
        self._root = Path(root)
        self._capability = capability or SandboxCapability()
        self._slots = [
            SandboxSlot(index=i, identity=identity_template.format(index=i), root=self._root / f"slot-{i}")
            for i in range(size)
        ]
        self._free: queue.Queue[SandboxSlot] = queue.Queue()
        for slot in self._slots:
            self._free.put(slot)
        self._leased: set[int] = set()
        self._lock = threading.Lock()
        self._listeners: list[Callable[[], None]] = []

    @property
    def size(self) -> int:
        return len(self._slots)

    @property
    def available(self) -> int:
        return self._free.qsize()

    @property
    def slots(self) -> list[SandboxSlot]:
        return list(self._slots)

    def add_release_listener(self, callback: Callable[[], None]) -> None:
        """Call *callback* every time a slot is returned."""
        self._listeners.append(callback)

    def acquire(self, block: bool = True, timeout: float | None = None) -> SandboxSlot | None:
        """Lease a slot with a clean workspace, or ``None`` if none came free in time."""
        try:
            slot = self._free.get(block=block, timeout=timeout)
        except queue.Empty:
            return None
        try:
            self._capability.clean_workspace(slot)
        except (OSError, subprocess.SubprocessError) as exc:
            self._free.put(slot)
            raise SandboxFault(
                f"cannot prepare slot workspace: {exc}", context=ErrorContext(slot=slot.index), cause=exc
            ) from exc
        with self._lock:
            self._leased.add(slot.index)
        logger.debug("slot_acquired", slot=slot.index, identity=slot.identity)
        return slot

    def release(self, slot: SandboxSlot, *, notify: bool = True) -> None:
        """Return a leased slot. Its scratch space is purged on next acquire.

        Release listeners run unless *notify* is false.
        """
        with self._lock:
            if slot.index not in self._leased:
                raise ValueError(f"slot {slot.index} is not leased")
            self._leased.discard(slot.index)
        self._free.put(slot)
        logger.debug("slot_released", slot=slot.index)
        if notify:
            for callback in self._listeners:
                callback()

    @contextmanager
    def lease(self, timeout: float | None = None) -> Iterator[SandboxSlot]:
        slot = self.acquire(timeout=timeout)
        if slot is None:
            raise SandboxFault("no sandbox slot became available")
        try:
            yield slot
        finally:
            self.release(slot)

    def _check_leased(self, slot: SandboxSlot) -> None:
        with self._lock:
            if slot.index not in self._leased:
                raise SandboxFault(f"slot {slot.index} is not leased", context=ErrorContext(slot=slot.index))

    def spawn(
        self,
        slot: SandboxSlot,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        memory_limit: int | None = None,
        networking: bool = True,
    ) -> subprocess.Popen[bytes]:
        """Run *argv* inside a leased slot."""
        self._check_leased(slot)
        process = self._capability.enter_sandbox(
            slot, argv, cwd=cwd, env=env, memory_limit=memory_limit, networking=networking
        )
        logger.debug("sandbox_entered", slot=slot.index, pid=process.pid)
        return process

    def terminate(self, slot: SandboxSlot, process: subprocess.Popen[bytes]) -> int:
        """Tear down what runs in a slot."""
        return self._capability.exit_sandbox(slot, process)
