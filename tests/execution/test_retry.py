"""Tests for RetryPolicy."""

import pytest

from docbuild.core.enums import AttemptStatus, FailureReason
from docbuild.execution.retry import DEFAULT_RULES, RetryPolicy


class TestRetryPolicy:
    def test_every_reason_has_a_rule(self):
        assert set(DEFAULT_RULES) == set(FailureReason)

    @pytest.mark.parametrize("reason", [FailureReason.BUILD_FAILURE, FailureReason.EMPTY_OUTPUT])
    def test_tool_failures_are_permanent(self, reason):
        decision = RetryPolicy().decide(reason, 1)
        assert decision.status is AttemptStatus.FAILED
        assert decision.retryable is False
        assert decision.exhausted is False

    @pytest.mark.parametrize(
        "reason, status",
        [
            (FailureReason.SOURCE_UNAVAILABLE, AttemptStatus.FAILED),
            (FailureReason.TIMEOUT, AttemptStatus.FAILED),
            (FailureReason.SANDBOX_FAULT, AttemptStatus.ERRORED),
            (FailureReason.STORAGE_FAILURE, AttemptStatus.ERRORED),
            (FailureReason.LEASE_EXPIRED, AttemptStatus.ERRORED),
        ],
    )
    def test_transient_under_ceiling(self, reason, status):
        decision = RetryPolicy(max_attempts=3).decide(reason, 2)
        assert decision.status is status
        assert decision.retryable is True

    def test_source_unavailable_exhausted_becomes_errored(self):
        decision = RetryPolicy(max_attempts=3).decide(FailureReason.SOURCE_UNAVAILABLE, 3)
        assert decision.status is AttemptStatus.ERRORED
        assert decision.retryable is False
        assert decision.exhausted is True

    def test_timeout_exhausted_stays_failed(self):
        decision = RetryPolicy(max_attempts=2).decide(FailureReason.TIMEOUT, 2)
        assert decision.status is AttemptStatus.FAILED
        assert decision.exhausted is True

    def test_single_attempt_policy(self):
        assert RetryPolicy(max_attempts=1).decide(FailureReason.SANDBOX_FAULT, 1).retryable is False

    def test_non_retryable_error_skips_remaining_attempts(self):
        decision = RetryPolicy(max_attempts=3).decide(FailureReason.SOURCE_UNAVAILABLE, 1, retryable=False)
        assert decision.status is AttemptStatus.ERRORED
        assert decision.retryable is False
        assert decision.exhausted is True

    def test_non_retryable_flag_on_permanent_reason(self):
        decision = RetryPolicy().decide(FailureReason.BUILD_FAILURE, 1, retryable=False)
        assert decision.status is AttemptStatus.FAILED
        assert decision.exhausted is False

    def test_invalid_ceiling(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
