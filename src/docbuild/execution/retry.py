"""
Retry policy - maps a failure reason onto the attempt's final status.

The scheduler never decides ad hoc whether to retry: every failure goes
through ``RetryPolicy.decide`` with the number of failures the release has
accumulated (including this one). Errors raised with ``retryable=False``
skip straight to the exhausted status.

Classification::

    reason               status    retryable   once the ceiling is reached
    ──────────────────   ───────   ─────────   ───────────────────────────
    source_unavailable   FAILED    yes         ERRORED
    timeout              FAILED    yes         FAILED
    sandbox_fault        ERRORED   yes         ERRORED
    storage_failure      ERRORED   yes         ERRORED
    lease_expired        ERRORED   yes         ERRORED
    build_failure        FAILED    no          -
    empty_output         FAILED    no          -
"""

from __future__ import annotations

from dataclasses import dataclass

from docbuild.core.enums import AttemptStatus, FailureReason


@dataclass(frozen=True)
class RetryRule:
    status: AttemptStatus
    retryable: bool
    exhausted_status: AttemptStatus


DEFAULT_RULES: dict[FailureReason, RetryRule] = {
    FailureReason.SOURCE_UNAVAILABLE: RetryRule(AttemptStatus.FAILED, True, AttemptStatus.ERRORED),
    FailureReason.TIMEOUT: RetryRule(AttemptStatus.FAILED, True, AttemptStatus.FAILED),
    FailureReason.SANDBOX_FAULT: RetryRule(AttemptStatus.ERRORED, True, AttemptStatus.ERRORED),
    FailureReason.STORAGE_FAILURE: RetryRule(AttemptStatus.ERRORED, True, AttemptStatus.ERRORED),
    FailureReason.LEASE_EXPIRED: RetryRule(AttemptStatus.ERRORED, True, AttemptStatus.ERRORED),
    FailureReason.BUILD_FAILURE: RetryRule(AttemptStatus.FAILED, False, AttemptStatus.FAILED),
    FailureReason.EMPTY_OUTPUT: RetryRule(AttemptStatus.FAILED, False, AttemptStatus.FAILED),
}


@dataclass(frozen=True)
class RetryDecision:
    status: AttemptStatus
    retryable: bool
    exhausted: bool = False


@dataclass
class RetryPolicy:
    """Retry ceiling plus the reason → status table.

    Args:
        max_attempts: Failures a release may accumulate before it is left
            terminal until an operator re-trigger.
    """

    max_attempts: int = 3
    rules: dict[FailureReason, RetryRule] | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.rules is None:
            self.rules = dict(DEFAULT_RULES)

    def decide(self, reason: FailureReason, failures: int, *, retryable: bool = True) -> RetryDecision:
        """Decide the outcome of the *failures*-th failure of a release.

        ``retryable=False`` comes from an error that knows a retry cannot
        help (e.g. a release with no resolvable source): the rule's
        exhausted status applies at once.
        """
        rule = self.rules[reason]
        if not rule.retryable:
            return RetryDecision(rule.status, False)
        if not retryable:
            return RetryDecision(rule.exhausted_status, False, exhausted=True)
        if failures >= self.max_attempts:
            return RetryDecision(rule.exhausted_status, False, exhausted=True)
        return RetryDecision(rule.status, True)
