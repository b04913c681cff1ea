"""Tests for ``docbuild db`` and ``docbuild queue`` CLI commands."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from docbuild import __version__
from docbuild.cli.app import app
from docbuild.core.enums import AttemptStatus, FailureReason
from docbuild.execution.logs import BuildLogStore
from docbuild.execution.store import MetadataStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def _no_logging_setup():
    with patch("docbuild.cli.app.configure_logging"):
        yield


@pytest.fixture
def cli(tmp_path, db_url):
    """Invoke the CLI against a prefix and database under tmp_path."""
    base = ["--prefix", str(tmp_path / "prefix"), "--database", db_url]

    def _invoke(*args: str):
        return runner.invoke(app, [*args, *base])

    return _invoke


@pytest.fixture
def initialized(cli):
    result = cli("db", "init")
    assert result.exit_code == 0, result.output
    return cli


class TestRoot:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestDbInit:
    def test_init_creates_schema_and_layout(self, cli, tmp_path, db_url):
        result = cli("db", "init")

        assert result.exit_code == 0
        assert "Initialized" in result.output
        assert (tmp_path / "prefix" / "documentation").is_dir()
        store = MetadataStore.from_url(db_url)
        try:
            assert store.pending_count() == 0
        finally:
            store.dispose()

    def test_init_is_idempotent(self, cli):
        assert cli("db", "init").exit_code == 0
        assert cli("db", "init").exit_code == 0


class TestQueue:
    def test_add_and_pending(self, initialized):
        result = initialized("queue", "add", "serde", "1.0.0", "--url", "file:///tmp/serde.tar.gz")
        assert result.exit_code == 0
        assert "Recorded" in result.output

        result = initialized("queue", "pending")
        assert "1 release(s) pending" in result.output

    def test_add_rejects_bad_name(self, initialized):
        result = initialized("queue", "add", "../etc", "1.0.0")
        assert result.exit_code == 2

    def test_status(self, initialized, store):
        initialized("queue", "add", "serde", "1.0.0")
        attempt = store.claim_next_pending("w1", 60)
        store.mark_failed(attempt.id, FailureReason.BUILD_FAILURE)

        result = initialized("queue", "status", "serde", "1.0.0")

        assert result.exit_code == 0
        assert "build_failure" in result.output
        assert "none" in result.output

    def test_status_unknown(self, initialized):
        result = initialized("queue", "status", "ghost", "1.0.0")
        assert "No attempts" in result.output

    def test_retrigger(self, initialized, store):
        initialized("queue", "add", "serde", "1.0.0")
        attempt = store.claim_next_pending("w1", 60)
        store.mark_failed(attempt.id, FailureReason.BUILD_FAILURE)

        result = initialized("queue", "retrigger", "serde", "1.0.0")

        assert result.exit_code == 0
        assert "attempt 2 is queued" in result.output
        assert store.latest_attempt("serde", "1.0.0").status is AttemptStatus.QUEUED

    def test_retrigger_unknown(self, initialized):
        result = initialized("queue", "retrigger", "ghost", "1.0.0")
        assert result.exit_code == 1


class TestBlacklist:
    def test_add_list_remove(self, initialized, store):
        assert initialized("queue", "blacklist", "add", "evil", "--reason", "fork bomb").exit_code == 0
        assert store.is_blacklisted("evil")

        result = initialized("queue", "blacklist", "list")
        assert "evil" in result.output

        assert initialized("queue", "blacklist", "remove", "evil").exit_code == 0
        assert not store.is_blacklisted("evil")

    def test_remove_missing(self, initialized):
        assert initialized("queue", "blacklist", "remove", "nobody").exit_code == 1


class TestLimits:
    def test_show_defaults(self, initialized):
        result = initialized("queue", "limits", "serde")
        assert result.exit_code == 0
        assert "Maximum build time: 15 minutes" in result.output
        assert "Maximum size of a build log: 100 KB" in result.output

    def test_set_and_reset(self, initialized, store):
        result = initialized("queue", "limits", "huge", "--timeout", "3600")
        assert "Maximum build time: 1 hours" in result.output
        assert store.get_sandbox_override("huge")["timeout_seconds"] == 3600

        result = initialized("queue", "limits", "huge", "--reset")
        assert "Maximum build time: 15 minutes" in result.output
        assert store.get_sandbox_override("huge") is None

    def test_separate_calls_merge(self, initialized, store):
        initialized("queue", "limits", "huge", "--timeout", "3600")
        result = initialized("queue", "limits", "huge", "--max-log", "2048")

        assert result.exit_code == 0
        assert "Maximum build time: 1 hours" in result.output
        override = store.get_sandbox_override("huge")
        assert override["timeout_seconds"] == 3600
        assert override["max_log_bytes"] == 2048

    def test_targets_upload_and_network(self, initialized, store):
        result = initialized(
            "queue", "limits", "wide", "--max-targets", "3", "--max-upload", "1048576", "--network"
        )

        assert result.exit_code == 0, result.output
        assert "Maximum number of build targets: 3" in result.output
        assert "Maximum uploaded file size: 1 MB" in result.output
        assert "Network access: allowed" in result.output

        initialized("queue", "limits", "wide", "--no-network")
        override = store.get_sandbox_override("wide")
        assert override["networking"] is False
        assert override["max_targets"] == 3


class TestLog:
    @pytest.fixture
    def failed_twice(self, initialized, store, tmp_path):
        logs = BuildLogStore(tmp_path / "prefix" / "logs")
        initialized("queue", "add", "serde", "1.0.0")
        for text in (b"error[E0425]: first\n", b"error[E0599]: second\n"):
            attempt = store.claim_next_pending("w1", 60)
            store.mark_failed(attempt.id, FailureReason.BUILD_FAILURE, log_ref=logs.write(attempt, text))
            store.retrigger("serde", "1.0.0")
        return initialized

    def test_latest_log(self, failed_twice):
        result = failed_twice("queue", "log", "serde", "1.0.0")

        assert result.exit_code == 0, result.output
        assert "attempt 2 (failed)" in result.output
        assert "error[E0599]: second" in result.output

    def test_given_attempt(self, failed_twice):
        result = failed_twice("queue", "log", "serde", "1.0.0", "--attempt", "1")

        assert result.exit_code == 0
        assert "error[E0425]: first" in result.output
        assert "second" not in result.output

    def test_attempt_without_log(self, failed_twice):
        # Attempt 3 is queued and has not run
        assert failed_twice("queue", "log", "serde", "1.0.0", "--attempt", "3").exit_code == 1

    def test_unknown_release(self, initialized):
        result = initialized("queue", "log", "ghost", "1.0.0")
        assert result.exit_code == 1
