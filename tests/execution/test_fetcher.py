"""Tests for SourceFetcher: local archives, HTTP downloads and the cache."""

from __future__ import annotations

import hashlib
import io
import tarfile
import zipfile
from pathlib import Path

import httpx
import pytest

from docbuild.core.errors import SourceUnavailable
from docbuild.execution.fetcher import MARKER_FILE, SourceFetcher
from docbuild.execution.models import Release


def _release(package="pkg-a", version="1.0.0", **source_ref) -> Release:
    return Release(id=1, package=package, version=version, source_ref=source_ref)


def _tarball(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


# ── Fixtures ────────────────────────────────────────────────────────────


@pytest.fixture
def cache(tmp_path: Path) -> Path:
    return tmp_path / "sources"


@pytest.fixture
def archive(tmp_path: Path, archive_builder) -> tuple[Path, str]:
    path = tmp_path / "pkg-a-1.0.0.tar.gz"
    digest = archive_builder(path, {"pkg-a-1.0.0/Cargo.toml": "[package]\n", "pkg-a-1.0.0/src/lib.rs": "//!\n"})
    return path, digest


# ── Local archives ──────────────────────────────────────────────────────


class TestLocalFetch:
    def test_file_url(self, cache, archive):
        path, digest = archive
        fetcher = SourceFetcher(cache)

        source = fetcher.fetch(_release(url=path.as_uri(), checksum=digest))

        assert source == cache / "pkg-a" / "1.0.0"
        assert (source / "Cargo.toml").is_file()
        assert (source / "src" / "lib.rs").is_file()
        assert (source / MARKER_FILE).read_text() == digest
        assert list((cache / ".tmp").iterdir()) == []

    def test_plain_path(self, cache, archive):
        path, _ = archive
        assert (SourceFetcher(cache).fetch(_release(url=str(path))) / "Cargo.toml").is_file()

    def test_cache_hit_skips_download(self, cache, archive):
        path, digest = archive
        fetcher = SourceFetcher(cache)
        release = _release(url=path.as_uri(), checksum=digest)
        fetcher.fetch(release)
        path.unlink()

        assert fetcher.is_cached(release)
        assert (fetcher.fetch(release) / "Cargo.toml").is_file()

    def test_stale_cache_entry_replaced(self, cache, archive):
        path, digest = archive
        stale = cache / "pkg-a" / "1.0.0"
        stale.mkdir(parents=True)
        (stale / MARKER_FILE).write_text("0" * 64)
        (stale / "leftover").write_text("x")
        release = _release(url=path.as_uri(), checksum=digest)

        source = SourceFetcher(cache).fetch(release)

        assert not (source / "leftover").exists()
        assert (source / MARKER_FILE).read_text() == digest

    def test_archive_without_wrapper_dir(self, cache, tmp_path, archive_builder):
        path = tmp_path / "flat.tar.gz"
        archive_builder(path, {"Cargo.toml": "", "README.md": ""})
        source = SourceFetcher(cache).fetch(_release(url=path.as_uri()))
        assert sorted(p.name for p in source.iterdir()) == [MARKER_FILE, "Cargo.toml", "README.md"]

    def test_zip_archive(self, cache, tmp_path):
        path = tmp_path / "pkg.zip"
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("pkg-a-1.0.0/Cargo.toml", "[package]\n")
        source = SourceFetcher(cache).fetch(_release(url=path.as_uri()))
        assert (source / "Cargo.toml").is_file()


class TestLocalFetchErrors:
    def test_checksum_mismatch(self, cache, archive):
        path, _ = archive
        with pytest.raises(SourceUnavailable, match="checksum mismatch") as exc_info:
            SourceFetcher(cache).fetch(_release(url=path.as_uri(), checksum="f" * 64))
        assert exc_info.value.retryable is True
        assert not (cache / "pkg-a" / "1.0.0").exists()

    def test_missing_archive(self, cache, tmp_path):
        with pytest.raises(SourceUnavailable, match="not found"):
            SourceFetcher(cache).fetch(_release(url=(tmp_path / "nope.tar.gz").as_uri()))

    def test_corrupt_archive(self, cache, tmp_path):
        path = tmp_path / "bad.tar.gz"
        path.write_bytes(b"\x1f\x8b this is not gzip")
        with pytest.raises(SourceUnavailable, match="corrupt"):
            SourceFetcher(cache).fetch(_release(url=path.as_uri()))

    def test_empty_archive(self, cache, tmp_path, archive_builder):
        path = tmp_path / "empty.tar.gz"
        archive_builder(path, {})
        with pytest.raises(SourceUnavailable, match="empty"):
            SourceFetcher(cache).fetch(_release(url=path.as_uri()))

    def test_path_traversal_member_rejected(self, cache, tmp_path, archive_builder):
        path = tmp_path / "evil.tar.gz"
        archive_builder(path, {"../escaped": "gotcha"})
        with pytest.raises(SourceUnavailable):
            SourceFetcher(cache).fetch(_release(url=path.as_uri()))
        assert not (cache / ".tmp" / "escaped").exists()

    def test_no_url_no_template(self, cache):
        with pytest.raises(SourceUnavailable) as exc_info:
            SourceFetcher(cache).fetch(_release())
        assert exc_info.value.retryable is False


# ── HTTP ────────────────────────────────────────────────────────────────


class TestHttpFetch:
    def test_registry_template(self, cache):
        body = _tarball({"pkg-a-1.0.0/Cargo.toml": "[package]\n"})
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, content=body)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        fetcher = SourceFetcher(cache, url_template="https://registry.test/{package}/{version}.tar.gz", client=client)

        source = fetcher.fetch(_release(checksum=hashlib.sha256(body).hexdigest()))

        assert seen == ["https://registry.test/pkg-a/1.0.0.tar.gz"]
        assert (source / "Cargo.toml").is_file()

    def test_http_404(self, cache):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        fetcher = SourceFetcher(cache, client=client)

        with pytest.raises(SourceUnavailable, match="HTTP 404") as exc_info:
            fetcher.fetch(_release(url="https://registry.test/pkg-a-1.0.0.crate"))
        assert exc_info.value.context.metadata["http_status"] == 404

    def test_connection_error(self, cache):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        fetcher = SourceFetcher(cache, client=httpx.Client(transport=httpx.MockTransport(handler)))
        with pytest.raises(SourceUnavailable, match="download failed"):
            fetcher.fetch(_release(url="https://registry.test/x.crate"))

    def test_injected_client_not_closed(self, cache):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        fetcher = SourceFetcher(cache, client=client)
        fetcher.close()
        assert not client.is_closed
