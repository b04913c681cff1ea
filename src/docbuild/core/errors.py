"""
Structured error types for docbuild.

Every failure a build can run into is expressed as a typed error carrying its
category, whether the scheduler may retry it, and the ``FailureReason`` that
ends up persisted on the build attempt. The scheduler never inspects error
messages; it looks at ``reason`` and ``retryable`` only.

Manifesto:
    - **Typed Error Hierarchy:** One class per failure mode in the build pipeline
    - **Retry Is Data:** ``retryable`` and ``reason`` travel with the error
    - **Rich Context:** Errors carry package/version/slot for logging
    - **Error Chaining:** The original exception is kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       DocbuildError                              │
        │  (category, retryable, reason, context, cause)                  │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  SourceUnavailable   BuildFailure        SandboxFault            │
        │  (SOURCE, retry)     (BUILD, permanent)  (SANDBOX, retry)        │
        │                          │                                       │
        │                  EmptyOutput, ArtifactTooLarge                   │
        │                                                                  │
        │  BuildTimeout        StorageFailure      DatabaseError           │
        │  (BUILD, retry)      (STORAGE, retry)    (DATABASE)              │
        │                                                                  │
        │  LeaseExpired        InvalidTransitionError   ConfigError        │
        │  (recovery signal)   (INTERNAL, ValueError)   (CONFIG)           │
        └─────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Raise a bare Exception out of a pipeline stage
    ✅ DO: Wrap it in the matching DocbuildError subclass with ``cause=``

    ❌ DON'T: Let build-tool failures escape the scheduler
    ✅ DO: Convert them into an attempt status

Tags:
    error-handling, exception-hierarchy, retry-logic, docbuild
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from docbuild.core.enums import FailureReason


class ErrorCategory(str, Enum):
    """Standard error categories for classification and alerting."""

    # Infrastructure errors (operator-visible)
    DATABASE = "DATABASE"
    STORAGE = "STORAGE"
    SANDBOX = "SANDBOX"

    # Input errors
    SOURCE = "SOURCE"
    BUILD = "BUILD"

    # Configuration / programming errors
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only non-``None`` fields end up in ``to_dict()``, so logging an error from
    the fetcher does not carry empty slot fields and vice versa.
    """

    package: str | None = None
    version: str | None = None
    target: str | None = None
    attempt_id: int | None = None
    slot: int | None = None
    path: str | None = None
    url: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["package", "version", "target", "attempt_id", "slot", "path", "url"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class DocbuildError(Exception):
    """
    Base exception for all docbuild errors.

    Subclasses set ``default_category``, ``default_retryable`` and
    ``default_reason``; callers may override any of them per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False
    default_reason: FailureReason | None = None

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        reason: FailureReason | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.reason = reason or self.default_reason
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DocbuildError:
        """Add context fields, returning self for chaining."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logging."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.reason is not None:
            result["reason"] = self.reason.value
        if self.context:
            result["context"] = self.context.to_dict()
        if self.cause:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


# =============================================================================
# PIPELINE ERRORS
# =============================================================================


class SourceUnavailable(DocbuildError):
    """Release coordinates could not be resolved, or the archive is corrupt."""

    default_category = ErrorCategory.SOURCE
    default_retryable = True
    default_reason = FailureReason.SOURCE_UNAVAILABLE


class BuildFailure(DocbuildError):
    """The documentation tool exited non-zero. Permanent for this release."""

    default_category = ErrorCategory.BUILD
    default_retryable = False
    default_reason = FailureReason.BUILD_FAILURE


class EmptyOutput(BuildFailure):
    """The tool exited 0 but produced no documentation."""

    default_reason = FailureReason.EMPTY_OUTPUT


class ArtifactTooLarge(BuildFailure):
    """A rendered file exceeds the upload size limit of its package."""


class BuildTimeout(DocbuildError):
    """The build exceeded its wall-clock limit and was killed."""

    default_category = ErrorCategory.BUILD
    default_retryable = True
    default_reason = FailureReason.TIMEOUT


class SandboxFault(DocbuildError):
    """Entering or tearing down a sandbox slot failed."""

    default_category = ErrorCategory.SANDBOX
    default_retryable = True
    default_reason = FailureReason.SANDBOX_FAULT


class StorageFailure(DocbuildError):
    """Writing to the artifact store, log store or source cache failed."""

    default_category = ErrorCategory.STORAGE
    default_retryable = True
    default_reason = FailureReason.STORAGE_FAILURE


# =============================================================================
# METADATA STORE ERRORS
# =============================================================================


class DatabaseError(DocbuildError):
    """The metadata store could not be reached or a statement failed."""

    default_category = ErrorCategory.DATABASE
    default_retryable = True


class LeaseExpired(DocbuildError):
    """
    The attempt's lease ran out and it was reclaimed by another scheduler.

    Raised from a status transition; the holder must drop the attempt
    without touching the store again.
    """

    default_category = ErrorCategory.INTERNAL
    default_retryable = True
    default_reason = FailureReason.LEASE_EXPIRED


class InvalidTransitionError(DocbuildError, ValueError):
    """Raised when an attempt is not in the state a transition expects."""

    def __init__(self, attempt_id: int, current: str | None, target: str) -> None:
        self.attempt_id = attempt_id
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid attempt transition for #{attempt_id}: {current} → {target}",
            context=ErrorContext(attempt_id=attempt_id),
        )


class ConfigError(DocbuildError):
    """Settings are missing or invalid."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Whether *error* may be retried. Unknown exceptions are not."""
    if isinstance(error, DocbuildError):
        return error.retryable
    return False


def categorize_error(error: BaseException) -> ErrorCategory:
    """Map any exception onto an ``ErrorCategory``."""
    if isinstance(error, DocbuildError):
        return error.category
    if isinstance(error, OSError):
        return ErrorCategory.STORAGE
    return ErrorCategory.INTERNAL


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "DocbuildError",
    "SourceUnavailable",
    "BuildFailure",
    "EmptyOutput",
    "ArtifactTooLarge",
    "BuildTimeout",
    "SandboxFault",
    "StorageFailure",
    "DatabaseError",
    "LeaseExpired",
    "InvalidTransitionError",
    "ConfigError",
    "is_retryable",
    "categorize_error",
]
