"""
Structured error types for clusterdeck.

Every failure in the build → stage → submit → execute pipeline is raised as a
:class:`ClusterError` subclass carrying a category, an explicit retry flag,
structured context and an optional chained cause.

Manifesto:
    - **Typed taxonomy:** one class per failure the deployment pipeline can
      surface (build, staging, scheduling, execution, liveness)
    - **Explicit retry semantics:** only transport and staging I/O are
      retryable; everything else is surfaced to the caller
    - **Rich context:** submission id, worker id and paths travel with the error

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        ClusterError                           │
        │        (category, retryable, retry_after, context, cause)     │
        ├──────────────────────────────────────────────────────────────┤
        │  BuildError          StagingError        NotFoundError        │
        │  (BUILD)             (STORAGE)           (NOT_FOUND)          │
        │                      PathResolutionError                      │
        │                      VolumeMismatchError                      │
        │                                                               │
        │  SchedulingTimeout   ExecutionFailure    WorkerLost           │
        │  (SCHEDULING)        (EXECUTION)         (LIVENESS)           │
        │                                                               │
        │  TransportError      ConfigError         InvalidTransitionError│
        │  (NETWORK, retry)    (CONFIG)            (STATE)              │
        └──────────────────────────────────────────────────────────────┘

Usage:
    from clusterdeck.core.errors import BuildError

    raise BuildError("entry point not found").with_context(
        entry_point="lessons.wordcount:main",
    )

Tags:
    error-handling, exception-hierarchy, retry-logic, clusterdeck

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and HTTP mapping."""

    BUILD = "BUILD"
    STORAGE = "STORAGE"
    NOT_FOUND = "NOT_FOUND"
    SCHEDULING = "SCHEDULING"
    EXECUTION = "EXECUTION"
    LIVENESS = "LIVENESS"
    NETWORK = "NETWORK"
    CONFIG = "CONFIG"
    STATE = "STATE"
    VALIDATION = "VALIDATION"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Only non-``None`` fields are serialized by :meth:`to_dict`.
    """

    submission_id: str | None = None
    worker_id: str | None = None
    entry_point: str | None = None
    path: str | None = None
    url: str | None = None
    http_status: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["submission_id", "worker_id", "entry_point", "path", "url", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ClusterError(Exception):
    """
    Base exception for all clusterdeck errors.

    Subclasses set ``default_category`` and ``default_retryable`` so call
    sites rarely need to pass them explicitly.

    Examples:
        >>> error = ClusterError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False

        >>> error = StagingError("disk full").with_context(path="/data/in")
        >>> error.context.path
        '/data/in'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    # Short machine-readable code used by the HTTP layer and the CLI.
    code: str = "INTERNAL"

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ClusterError:
        """
        Add context to this error (fluent API).

        Usage:
            raise NotFoundError("Unknown submission").with_context(
                submission_id="sub-0001",
            )
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# BUILD / STAGING
# =============================================================================


class BuildError(ClusterError):
    """Bad entry point or unresolved dependencies. Fatal, raised before staging."""

    default_category = ErrorCategory.BUILD
    code = "BUILD_FAILED"

    def __init__(self, message: str, *, unresolved: list[str] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.unresolved = unresolved or []

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.unresolved:
            result["unresolved"] = list(self.unresolved)
        return result


class StagingError(ClusterError):
    """Copying artifacts or datasets onto the shared volume failed."""

    default_category = ErrorCategory.STORAGE
    code = "STAGING_FAILED"


class PathResolutionError(ClusterError):
    """A reference does not resolve inside the shared volume root."""

    default_category = ErrorCategory.VALIDATION
    code = "PATH_UNRESOLVED"


class VolumeMismatchError(ClusterError):
    """Two processes see different volumes behind the same logical root."""

    default_category = ErrorCategory.CONFIG
    code = "VOLUME_MISMATCH"

    def __init__(self, expected: str, actual: str, message: str | None = None):
        self.expected = expected
        self.actual = actual
        super().__init__(message or f"Shared volume mismatch: expected {expected}, found {actual}")


# =============================================================================
# LOOKUP / STATE
# =============================================================================


class InvalidSubmissionError(ClusterError):
    """A submission request is not well-formed."""

    default_category = ErrorCategory.VALIDATION
    code = "INVALID_INPUT"


class NotFoundError(ClusterError):
    """Unknown submission id, unknown worker or missing artifact. Never retried."""

    default_category = ErrorCategory.NOT_FOUND
    code = "NOT_FOUND"


class InvalidTransitionError(ClusterError):
    """Raised when an illegal submission state transition is attempted."""

    default_category = ErrorCategory.STATE
    code = "CONFLICT"

    def __init__(self, current: str, target: str, message: str | None = None) -> None:
        self.current = current
        self.target = target
        super().__init__(message or f"Invalid SubmissionStatus transition: {current} → {target}")


# =============================================================================
# SCHEDULING / EXECUTION / LIVENESS
# =============================================================================


class SchedulingTimeout(ClusterError):
    """No capable worker appeared before the scheduling deadline."""

    default_category = ErrorCategory.SCHEDULING
    code = "SCHEDULING_TIMEOUT"


class ExecutionFailure(ClusterError):
    """Worker-reported runtime fault. Recorded on the submission, not retried."""

    default_category = ErrorCategory.EXECUTION
    code = "EXECUTION_FAILED"


class WorkerLost(ClusterError):
    """A worker stopped heartbeating past the liveness timeout."""

    default_category = ErrorCategory.LIVENESS
    code = "WORKER_LOST"


# =============================================================================
# TRANSPORT / CONFIG
# =============================================================================


class TransportError(ClusterError):
    """HTTP round-trip to the coordinator failed. Usually transient."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True
    code = "UNAVAILABLE"


class ConfigError(ClusterError):
    """Configuration is missing or invalid. Never retryable."""

    default_category = ErrorCategory.CONFIG
    code = "INVALID_INPUT"


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, ClusterError):
        return error.retryable
    return isinstance(error, (ConnectionError, OSError))


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ClusterError",
    "BuildError",
    "StagingError",
    "PathResolutionError",
    "VolumeMismatchError",
    "NotFoundError",
    "InvalidTransitionError",
    "InvalidSubmissionError",
    "SchedulingTimeout",
    "ExecutionFailure",
    "WorkerLost",
    "TransportError",
    "ConfigError",
    "is_retryable",
]
