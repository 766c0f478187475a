"""Execution domain models.

Defines the records the coordinator owns and the messages exchanged with
workers:

- SubmissionStatus / VALID_TRANSITIONS: the per-submission state machine
- SubmissionRequest / SubmissionRecord: what a client asks for, what the
  coordinator tracks
- WorkerRegistration / Capacity: live workers and their resources
- Assignment / TaskOutcome: coordinator → worker and worker → coordinator

These models are used by ClusterCoordinator, WorkerAgent and the API layer.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from clusterdeck.core.errors import InvalidSubmissionError, InvalidTransitionError


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class DeployMode(str, Enum):
    """Where the driving logic's output is followed from.

    ``client``: the submitting terminal tails task logs while it waits.
    ``cluster``: the task runs detached; the client only follows status.
    """

    CLIENT = "client"
    CLUSTER = "cluster"


class SubmissionStatus(str, Enum):
    """Status of a job submission.

    Valid transition graph::

        SUBMITTED → SCHEDULED | CANCELLED | FAILED (scheduling timeout)
        SCHEDULED → RUNNING | CANCELLED | LOST (worker lost before ack)
        RUNNING   → SUCCEEDED | FAILED | LOST
        SUCCEEDED, FAILED, LOST, CANCELLED → (terminal)
    """

    SUBMITTED = "SUBMITTED"
    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    LOST = "LOST"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        """Position along SUBMITTED → SCHEDULED → RUNNING → terminal."""
        return _RANK[self]


TERMINAL_STATUSES: frozenset[SubmissionStatus] = frozenset({
    SubmissionStatus.SUCCEEDED,
    SubmissionStatus.FAILED,
    SubmissionStatus.LOST,
    SubmissionStatus.CANCELLED,
})

_RANK: dict[SubmissionStatus, int] = {
    SubmissionStatus.SUBMITTED: 0,
    SubmissionStatus.SCHEDULED: 1,
    SubmissionStatus.RUNNING: 2,
    SubmissionStatus.SUCCEEDED: 3,
    SubmissionStatus.FAILED: 3,
    SubmissionStatus.LOST: 3,
    SubmissionStatus.CANCELLED: 3,
}

VALID_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.SUBMITTED: frozenset({
        SubmissionStatus.SCHEDULED,
        SubmissionStatus.CANCELLED,
        SubmissionStatus.FAILED,
    }),
    SubmissionStatus.SCHEDULED: frozenset({
        SubmissionStatus.RUNNING,
        SubmissionStatus.CANCELLED,
        SubmissionStatus.LOST,
    }),
    SubmissionStatus.RUNNING: frozenset({
        SubmissionStatus.SUCCEEDED,
        SubmissionStatus.FAILED,
        SubmissionStatus.LOST,
    }),
    SubmissionStatus.SUCCEEDED: frozenset(),
    SubmissionStatus.FAILED: frozenset(),
    SubmissionStatus.LOST: frozenset(),
    SubmissionStatus.CANCELLED: frozenset(),
}


def validate_transition(current: SubmissionStatus, target: SubmissionStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_transition(SubmissionStatus.RUNNING, SubmissionStatus.SUCCEEDED)
        >>> validate_transition(SubmissionStatus.SUCCEEDED, SubmissionStatus.RUNNING)
        Traceback (most recent call last):
        ...
        InvalidTransitionError: Invalid SubmissionStatus transition: SUCCEEDED → RUNNING
    """
    if target not in VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value)


class FailureCause(str, Enum):
    """Why a submission ended in FAILED or LOST."""

    ARTIFACT_NOT_FOUND = "ArtifactNotFound"
    ENTRY_POINT_NOT_RESOLVABLE = "EntryPointNotResolvable"
    EXECUTION_FAILURE = "ExecutionFailure"
    RESOURCE_EXHAUSTED = "ResourceExhausted"
    CANCELLED = "Cancelled"
    SCHEDULING_TIMEOUT = "SchedulingTimeout"
    WORKER_LOST = "WorkerLost"


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Capacity:
    """Resources a worker offers or a submission requests."""

    cores: int = 1
    memory_mb: int = 512

    def fits(self, request: Capacity) -> bool:
        return request.cores <= self.cores and request.memory_mb <= self.memory_mb

    def __add__(self, other: Capacity) -> Capacity:
        return Capacity(self.cores + other.cores, self.memory_mb + other.memory_mb)

    def __sub__(self, other: Capacity) -> Capacity:
        return Capacity(self.cores - other.cores, self.memory_mb - other.memory_mb)

    def to_dict(self) -> dict[str, int]:
        return {"cores": self.cores, "memory_mb": self.memory_mb}


@dataclass
class WorkerRegistration:
    """Coordinator-side record of a live worker."""

    worker_id: str
    capacity: Capacity
    sequence: int
    registered_at: datetime
    last_seen: float
    hostname: str = ""
    volume_id: str | None = None
    reported_at: datetime | None = None
    state: str = "alive"

    def to_dict(self, *, used: Capacity | None = None, now: float | None = None) -> dict[str, Any]:
        data: dict[str, Any] = {
            "worker_id": self.worker_id,
            "capacity": self.capacity.to_dict(),
            "sequence": self.sequence,
            "registered_at": self.registered_at.isoformat(),
            "hostname": self.hostname,
            "volume_id": self.volume_id,
            "state": self.state,
            "reported_at": self.reported_at.isoformat() if self.reported_at else None,
        }
        if used is not None:
            data["used"] = used.to_dict()
        if now is not None:
            data["silence_s"] = round(max(0.0, now - self.last_seen), 3)
        return data


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SubmissionRequest:
    """What the submission client sends to the coordinator."""

    artifact_path: str
    entry_point: str
    args: tuple[str, ...] = ()
    deploy_mode: DeployMode = DeployMode.CLIENT
    supervise: bool = False
    resources: Capacity = field(default_factory=Capacity)
    name: str | None = None
    idempotency_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_path": self.artifact_path,
            "entry_point": self.entry_point,
            "args": list(self.args),
            "deploy_mode": self.deploy_mode.value,
            "supervise": self.supervise,
            "cores": self.resources.cores,
            "memory_mb": self.resources.memory_mb,
            "name": self.name,
            "idempotency_key": self.idempotency_key,
        }


@dataclass
class SubmissionRecord:
    """Coordinator-owned lifecycle record of one submission."""

    submission_id: str
    request: SubmissionRequest
    sequence: int
    submitted_at: float
    status: SubmissionStatus = SubmissionStatus.SUBMITTED
    worker_id: str | None = None
    cause: FailureCause | None = None
    error: str | None = None
    output_location: str | None = None
    cancel_requested_at: float | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    history: list[tuple[SubmissionStatus, datetime]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.status, self.created_at))

    def transition_to(self, target: SubmissionStatus) -> None:
        """Move to *target*, enforcing :data:`VALID_TRANSITIONS`."""
        validate_transition(self.status, target)
        self.status = target
        self.updated_at = utcnow()
        self.history.append((target, self.updated_at))

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_requested_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            **self.request.to_dict(),
            "status": self.status.value,
            "worker_id": self.worker_id,
            "cause": self.cause.value if self.cause else None,
            "error": self.error,
            "output_location": self.output_location,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "history": [
                {"status": status.value, "at": at.isoformat()} for status, at in self.history
            ],
        }


# ---------------------------------------------------------------------------
# Coordinator ⇄ worker messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Assignment:
    """A unit of work delivered to a worker in a heartbeat response."""

    submission_id: str
    artifact_path: str
    entry_point: str
    args: tuple[str, ...] = ()
    deploy_mode: DeployMode = DeployMode.CLIENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "artifact_path": self.artifact_path,
            "entry_point": self.entry_point,
            "args": list(self.args),
            "deploy_mode": self.deploy_mode.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Assignment:
        return cls(
            submission_id=data["submission_id"],
            artifact_path=data["artifact_path"],
            entry_point=data["entry_point"],
            args=tuple(data.get("args", ())),
            deploy_mode=DeployMode(data.get("deploy_mode", DeployMode.CLIENT.value)),
        )


@dataclass(frozen=True)
class TaskOutcome:
    """Terminal status a worker reports for an executed task."""

    status: SubmissionStatus
    cause: FailureCause | None = None
    error: str | None = None
    output_location: str | None = None

    def __post_init__(self) -> None:
        if self.status not in (SubmissionStatus.SUCCEEDED, SubmissionStatus.FAILED):
            raise ValueError(f"A task outcome must be SUCCEEDED or FAILED, got {self.status.value}")

    @property
    def succeeded(self) -> bool:
        return self.status == SubmissionStatus.SUCCEEDED

    @classmethod
    def success(cls, output_location: str | None = None) -> TaskOutcome:
        return cls(SubmissionStatus.SUCCEEDED, output_location=output_location)

    @classmethod
    def failure(cls, cause: FailureCause, error: str) -> TaskOutcome:
        return cls(SubmissionStatus.FAILED, cause=cause, error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "cause": self.cause.value if self.cause else None,
            "error": self.error,
            "output_location": self.output_location,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskOutcome:
        cause = data.get("cause")
        return cls(
            status=SubmissionStatus(data["status"]),
            cause=FailureCause(cause) if cause else None,
            error=data.get("error"),
            output_location=data.get("output_location"),
        )


@dataclass(frozen=True)
class HeartbeatReply:
    """What a worker learns from one heartbeat."""

    assignments: tuple[Assignment, ...] = ()
    cancellations: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "assignments": [a.to_dict() for a in self.assignments],
            "cancellations": list(self.cancellations),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HeartbeatReply:
        return cls(
            assignments=tuple(Assignment.from_dict(a) for a in data.get("assignments", ())),
            cancellations=tuple(data.get("cancellations", ())),
        )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

_ENTRY_POINT_RE = re.compile(
    r"^(?P<module>[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)(?::(?P<attr>[A-Za-z_]\w*))?$"
)

DEFAULT_ENTRY_ATTR = "main"


@dataclass(frozen=True)
class EntryPoint:
    """A fully qualified runnable: ``package.module:function``.

    When the ``:function`` part is omitted the module's ``main`` is used.
    """

    module: str
    attr: str = DEFAULT_ENTRY_ATTR

    @classmethod
    def parse(cls, value: str) -> EntryPoint:
        match = _ENTRY_POINT_RE.match(value.strip()) if value else None
        if match is None:
            raise InvalidSubmissionError(
                f"Malformed entry point {value!r}: expected 'package.module' or 'package.module:function'"
            )
        return cls(match["module"], match["attr"] or DEFAULT_ENTRY_ATTR)

    def __str__(self) -> str:
        return f"{self.module}:{self.attr}"
