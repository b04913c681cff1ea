"""
Shared pytest fixtures for docbuild tests.

This module provides:
- A file-backed SQLite metadata store per test
- Settings rooted in ``tmp_path``
- Source archive and documentation-tool helpers that need no network and
  no real documentation toolchain
"""

import hashlib
import io
import os
import sys
import tarfile
from pathlib import Path

import pytest

# Ensure docbuild package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from docbuild.core.settings import DocbuildSettings
from docbuild.execution.models import Release
from docbuild.execution.store import MetadataStore


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Store / Settings Fixtures
# =============================================================================


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'docbuild.db'}"


@pytest.fixture
def store(db_url: str):
    """Metadata store on a fresh SQLite file, schema created."""
    s = MetadataStore.from_url(db_url, max_attempts=3)
    s.init_schema()
    yield s
    s.dispose()


@pytest.fixture
def settings(tmp_path: Path, db_url: str) -> DocbuildSettings:
    return DocbuildSettings(
        prefix=tmp_path / "prefix",
        database_url=db_url,
        slot_count=2,
        build_timeout_seconds=30,
        lease_seconds=120,
        max_memory_bytes=None,
        poll_interval_seconds=0.1,
        kill_grace_seconds=1.0,
    )


# =============================================================================
# Source Archive Helpers
# =============================================================================


def build_archive(path: Path, files: dict[str, str]) -> str:
    """Write a .tar.gz containing *files*; return its SHA-256."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tf:
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return hashlib.sha256(path.read_bytes()).hexdigest()


@pytest.fixture
def make_release(tmp_path: Path, store: MetadataStore):
    """Record a release whose source is a local archive."""

    def _make(
        package: str = "pkg-a",
        version: str = "1.0.0",
        *,
        checksum: bool = True,
        manifest: str = "",
        **kwargs,
    ) -> Release:
        archive = tmp_path / "archives" / f"{package}-{version}.tar.gz"
        digest = build_archive(
            archive,
            {
                f"{package}-{version}/Cargo.toml": (
                    f'[package]\nname = "{package}"\nversion = "{version}"\n' + manifest
                ),
                f"{package}-{version}/src/lib.rs": "//! docs\n",
            },
        )
        source_ref = {"url": archive.as_uri()}
        if checksum:
            source_ref["checksum"] = digest
        return store.record_release(package, version, source_ref, **kwargs)

    return _make


# =============================================================================
# Documentation Tool Helpers
# =============================================================================

_WRITE_DOCS = (
    "import os, pathlib; "
    "out = pathlib.Path(os.environ['DOCBUILD_OUTPUT_DIR']); "
    "out.mkdir(parents=True, exist_ok=True); "
    "(out / 'index.html').write_text('<h1>' + os.environ['DOCBUILD_PACKAGE'] + '</h1>'); "
    "print('documented', os.environ['DOCBUILD_PACKAGE'])"
)


def tool(script: str) -> list[str]:
    """argv running *script* with this interpreter."""
    return [sys.executable, "-c", script]


@pytest.fixture
def docs_command() -> list[str]:
    """A build command that succeeds and writes index.html."""
    return tool(_WRITE_DOCS)


# Honours --target and --target-dir and leaves the docs where cargo does:
# <target-dir>/<target>/doc/<crate>/
_FAKE_CARGO = """#!@PYTHON@
import pathlib
import sys
import tomllib

args = sys.argv[1:]
if args[:1] != ["doc"]:
    sys.exit("fake cargo only knows doc")
target = args[args.index("--target") + 1]
target_dir = pathlib.Path(args[args.index("--target-dir") + 1])
crate = tomllib.loads(pathlib.Path("Cargo.toml").read_text())["package"]["name"].replace("-", "_")
docs = target_dir / target / "doc" / crate
docs.mkdir(parents=True, exist_ok=True)
(docs / "index.html").write_text("<h1>" + crate + "</h1>")
print(" Documenting", crate, "for", target)
"""


@pytest.fixture
def fake_cargo(tmp_path: Path) -> dict[str, str]:
    """``build_env`` putting a stand-in ``cargo`` first on PATH."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "cargo"
    script.write_text(_FAKE_CARGO.replace("@PYTHON@", sys.executable))
    script.chmod(0o755)
    return {"PATH": f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}"}


@pytest.fixture
def archive_builder():
    """``build_archive`` for tests that shape their own archives."""
    return build_archive
