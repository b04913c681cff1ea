"""Tests for value types and the attempt state machine."""

from __future__ import annotations

from pathlib import Path

import pytest

from docbuild.core.enums import AttemptStatus
from docbuild.core.errors import InvalidTransitionError
from docbuild.execution.models import (
    VALID_TRANSITIONS,
    ArtifactRef,
    Release,
    allowed_sources,
    validate_coordinate,
    validate_transition,
)


class TestValidateCoordinate:
    @pytest.mark.parametrize("value", ["serde", "serde_json", "tokio-util", "1.0.0", "0.1.0-alpha.1+build.5"])
    def test_accepts(self, value):
        assert validate_coordinate(value) == value

    @pytest.mark.parametrize("value", ["", "../x", "a/b", "a\\b", "-flag", ".git", "a..b", "x" * 256, "sp ace"])
    def test_rejects(self, value):
        with pytest.raises(ValueError, match="invalid version"):
            validate_coordinate(value, "version")


class TestTransitions:
    def test_terminal_states_have_no_exits(self):
        for status in AttemptStatus:
            if status.is_terminal:
                assert VALID_TRANSITIONS[status] == frozenset()

    def test_queued_only_to_claimed(self):
        validate_transition(1, AttemptStatus.QUEUED, AttemptStatus.CLAIMED)
        with pytest.raises(InvalidTransitionError):
            validate_transition(1, AttemptStatus.QUEUED, AttemptStatus.RUNNING)

    def test_succeeded_only_from_running(self):
        assert allowed_sources(AttemptStatus.SUCCEEDED) == {AttemptStatus.RUNNING}

    def test_failed_from_claimed_or_running(self):
        assert allowed_sources(AttemptStatus.FAILED) == {AttemptStatus.CLAIMED, AttemptStatus.RUNNING}

    def test_error_message(self):
        with pytest.raises(InvalidTransitionError, match="#7: succeeded → running"):
            validate_transition(7, AttemptStatus.SUCCEEDED, AttemptStatus.RUNNING)


class TestArtifactRef:
    def test_location_and_path(self):
        ref = ArtifactRef("serde", "1.0.0", "x86_64-unknown-linux-gnu")
        assert ref.location == "serde/1.0.0/x86_64-unknown-linux-gnu"
        assert str(ref) == ref.location
        assert ref.path(Path("/docs")) == Path("/docs/serde/1.0.0/x86_64-unknown-linux-gnu")

    def test_parse(self):
        assert ArtifactRef.parse("a/1/t") == ArtifactRef("a", "1", "t")

    def test_parse_malformed(self):
        with pytest.raises(ValueError):
            ArtifactRef.parse("a/1")


class TestRelease:
    def test_source_ref_accessors(self):
        release = Release(id=1, package="a", version="1", source_ref={"url": "file:///x", "checksum": "ab"})
        assert release.url == "file:///x"
        assert release.checksum == "ab"

    def test_empty_source_ref(self):
        release = Release(id=1, package="a", version="1")
        assert release.url is None
        assert release.checksum is None
