"""
Source fetcher - materializes a release's source tree in the shared cache.

Cache layout::

    <source_cache_dir>/
        <package>/<version>/        extracted source, marker file inside
        .tmp/                       download + extraction scratch space

A cache entry is valid when its directory exists and its marker records the
archive's SHA-256 (and that digest matches the release's checksum, when the
release carries one). Entries are installed with a single rename from
``.tmp`` on the same volume, so a reader never sees a half-extracted tree.

Archives come from the release's ``source_ref["url"]`` when present, otherwise
from ``registry_url_template``. ``file://`` URLs and plain paths are read
directly; everything else goes through httpx.
"""

from __future__ import annotations

import gzip
import hashlib
import os
import shutil
import tarfile
import tempfile
import zipfile
import zlib
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from docbuild.core.errors import ErrorContext, SourceUnavailable, StorageFailure
from docbuild.core.logging import get_logger
from docbuild.execution.models import Release

logger = get_logger(__name__)

MARKER_FILE = ".docbuild-source"
_CHUNK = 64 * 1024


class SourceFetcher:
    """Resolve (package, version) to a local source directory."""

    def __init__(
        self,
        cache_dir: Path,
        *,
        url_template: str | None = None,
        client: httpx.Client | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self._url_template = url_template
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self._timeout,
                follow_redirects=True,
                headers={"User-Agent": "docbuild"},
            )
        return self._client

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    def cache_path(self, release: Release) -> Path:
        return self.cache_dir / release.package / release.version

    def is_cached(self, release: Release) -> bool:
        path = self.cache_path(release)
        marker = path / MARKER_FILE
        if not marker.is_file():
            return False
        if release.checksum is None:
            return True
        return marker.read_text().strip() == release.checksum.lower()

    def fetch(self, release: Release) -> Path:
        """Return the cached source tree of *release*, downloading it if needed.

        Raises:
            SourceUnavailable: Coordinates unresolvable, download failed,
                checksum mismatch or unreadable archive.
            StorageFailure: The cache could not be written.
        """
        final = self.cache_path(release)
        if self.is_cached(release):
            logger.debug("source_cache_hit", package=release.package, version=release.version)
            return final

        url = self._resolve_url(release)
        context = ErrorContext(package=release.package, version=release.version, url=url)

        try:
            scratch_root = self.cache_dir / ".tmp"
            scratch_root.mkdir(parents=True, exist_ok=True)
            scratch = Path(tempfile.mkdtemp(prefix=f"{release.package}-{release.version}-", dir=scratch_root))
        except OSError as exc:
            raise StorageFailure(f"cannot create scratch space: {exc}", context=context, cause=exc) from exc

        try:
            archive = scratch / "archive"
            digest = self._download(url, archive, context)
            if release.checksum and digest != release.checksum.lower():
                raise SourceUnavailable(
                    f"checksum mismatch: expected {release.checksum}, got {digest}",
                    context=context,
                )
            extracted = scratch / "src"
            self._extract(archive, extracted, context)
            root = self._source_root(extracted, context)
            (root / MARKER_FILE).write_text(digest)
            self._install(root, final, scratch)
        except OSError as exc:
            raise StorageFailure(f"cannot populate source cache: {exc}", context=context, cause=exc) from exc
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        logger.info("source_fetched", package=release.package, version=release.version, sha256=digest)
        return final

    # ------------------------------------------------------------------ #
    # Steps
    # ------------------------------------------------------------------ #

    def _resolve_url(self, release: Release) -> str:
        if release.url:
            return release.url
        if self._url_template:
            return self._url_template.format(package=release.package, version=release.version)
        raise SourceUnavailable(
            "release has no source URL and no registry template is configured",
            retryable=False,
            context=ErrorContext(package=release.package, version=release.version),
        )

    def _download(self, url: str, dest: Path, context: ErrorContext) -> str:
        """Write *url* to *dest*, returning the hex SHA-256 of the bytes."""
        sha = hashlib.sha256()
        parsed = urlparse(url)

        if parsed.scheme in ("", "file"):
            local = Path(unquote(parsed.path) if parsed.scheme else url)
            try:
                with open(local, "rb") as src, open(dest, "wb") as out:
                    while chunk := src.read(_CHUNK):
                        sha.update(chunk)
                        out.write(chunk)
            except FileNotFoundError as exc:
                raise SourceUnavailable(f"source archive not found: {local}", context=context, cause=exc) from exc
            return sha.hexdigest()

        try:
            with self.client.stream("GET", url) as response:
                response.raise_for_status()
                with open(dest, "wb") as out:
                    for chunk in response.iter_bytes(_CHUNK):
                        sha.update(chunk)
                        out.write(chunk)
        except httpx.HTTPStatusError as exc:
            context.metadata["http_status"] = exc.response.status_code
            raise SourceUnavailable(
                f"download failed with HTTP {exc.response.status_code}", context=context, cause=exc
            ) from exc
        except httpx.HTTPError as exc:
            raise SourceUnavailable(f"download failed: {exc}", context=context, cause=exc) from exc
        return sha.hexdigest()

    def _extract(self, archive: Path, dest: Path, context: ErrorContext) -> None:
        dest.mkdir()
        try:
            if zipfile.is_zipfile(archive):
                with zipfile.ZipFile(archive) as zf:
                    zf.extractall(dest)
            else:
                with tarfile.open(archive, "r:*") as tf:
                    tf.extractall(dest, filter="data")
        except (tarfile.TarError, zipfile.BadZipFile, gzip.BadGzipFile, EOFError, zlib.error) as exc:
            raise SourceUnavailable(f"corrupt source archive: {exc}", context=context, cause=exc) from exc

    def _source_root(self, extracted: Path, context: ErrorContext) -> Path:
        """Archives usually wrap everything in ``<name>-<version>/``; unwrap it."""
        entries = list(extracted.iterdir())
        if not entries:
            raise SourceUnavailable("source archive is empty", context=context)
        if len(entries) == 1 and entries[0].is_dir():
            return entries[0]
        return extracted

    def _install(self, root: Path, final: Path, scratch: Path) -> None:
        final.parent.mkdir(parents=True, exist_ok=True)
        if final.exists():
            # Stale or corrupt entry: move it into scratch, cleaned up with it
            os.rename(final, scratch / "stale")
        os.rename(root, final)
