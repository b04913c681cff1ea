"""
Shared enums for build attempts.

Persisted as their string values, so renaming a member is a schema change.

STDLIB ONLY - NO PYDANTIC.
"""

from enum import Enum


class AttemptStatus(str, Enum):
    """
    Lifecycle status of one build attempt.

    Valid transition graph::

        QUEUED   → CLAIMED
        CLAIMED  → RUNNING | FAILED | ERRORED
        RUNNING  → SUCCEEDED | FAILED | ERRORED
        SUCCEEDED, FAILED, ERRORED → (terminal)

    Re-queueing never reopens a terminal attempt; it inserts a new row.
    """

    QUEUED = "queued"
    CLAIMED = "claimed"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (AttemptStatus.SUCCEEDED, AttemptStatus.FAILED, AttemptStatus.ERRORED)

    @property
    def is_in_flight(self) -> bool:
        return self in (AttemptStatus.CLAIMED, AttemptStatus.RUNNING)


class FailureReason(str, Enum):
    """Why an attempt ended Failed or Errored."""

    SOURCE_UNAVAILABLE = "source_unavailable"
    BUILD_FAILURE = "build_failure"
    EMPTY_OUTPUT = "empty_output"
    TIMEOUT = "timeout"
    SANDBOX_FAULT = "sandbox_fault"
    STORAGE_FAILURE = "storage_failure"
    LEASE_EXPIRED = "lease_expired"


class TriggerSource(str, Enum):
    """What created an attempt row."""

    SCHEDULER = "scheduler"  # first claim of a release
    RETRY = "retry"  # automatic requeue after a transient failure
    RECLAIM = "reclaim"  # lease expiry recovery
    MANUAL = "manual"  # operator re-trigger, resets the retry ceiling
