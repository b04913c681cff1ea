"""Tests for DocbuildSettings."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from docbuild.core.settings import DEFAULT_BUILD_COMMAND, DEFAULT_BUILD_OUTPUT, DocbuildSettings


class TestDerivedPaths:
    def test_layout_under_prefix(self, tmp_path):
        s = DocbuildSettings(prefix=tmp_path)
        assert s.index_dir == tmp_path / "index"
        assert s.source_cache_dir == tmp_path / "sources"
        assert s.artifact_root == tmp_path / "documentation"
        assert s.log_dir == tmp_path / "logs"
        assert s.sandbox_root == tmp_path / "sandbox"
        assert s.lock_file == tmp_path / "docbuild.lock"
        assert s.database_url == f"sqlite:///{tmp_path / 'docbuild.db'}"

    def test_explicit_path_wins(self, tmp_path):
        s = DocbuildSettings(prefix=tmp_path, artifact_root=tmp_path / "public")
        assert s.artifact_root == tmp_path / "public"

    def test_ensure_directories(self, tmp_path):
        s = DocbuildSettings(prefix=tmp_path / "root")
        s.ensure_directories()
        for path in (s.source_cache_dir, s.artifact_root, s.log_dir, s.sandbox_root):
            assert path.is_dir()
        assert not s.index_dir.exists()


class TestEnvironment:
    def test_env_prefix(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DOCBUILD_PREFIX", str(tmp_path))
        monkeypatch.setenv("DOCBUILD_SLOT_COUNT", "8")
        monkeypatch.setenv("DOCBUILD_SANDBOX_COMMAND", '["sudo", "-n", "-u", "{identity}", "--"]')
        s = DocbuildSettings()
        assert s.prefix == Path(tmp_path)
        assert s.slot_count == 8
        assert s.sandbox_command == ["sudo", "-n", "-u", "{identity}", "--"]

    def test_defaults(self, tmp_path):
        s = DocbuildSettings(prefix=tmp_path)
        assert s.build_command == DEFAULT_BUILD_COMMAND
        assert s.build_command is not DEFAULT_BUILD_COMMAND
        assert s.build_output_dir == DEFAULT_BUILD_OUTPUT == "{target_dir}/{target}/doc"
        assert "{target_dir}" in s.build_command
        assert s.max_targets == 10
        assert s.max_upload_bytes == 500 * 1024**2
        assert s.network_isolation_command == []
        assert s.max_attempts == 3
        assert s.build_timeout_seconds == 900
        assert s.max_log_bytes == 100 * 1024


class TestValidation:
    def test_lease_must_outlive_timeout(self, tmp_path):
        with pytest.raises(ValidationError, match="lease_seconds"):
            DocbuildSettings(prefix=tmp_path, build_timeout_seconds=600, lease_seconds=600)

    @pytest.mark.parametrize("field", ["slot_count", "max_attempts"])
    def test_positive(self, tmp_path, field):
        with pytest.raises(ValidationError):
            DocbuildSettings(prefix=tmp_path, **{field: 0})
