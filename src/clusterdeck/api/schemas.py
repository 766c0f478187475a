"""
API schemas — request bodies, response payloads and RFC 7807 errors.

Every 2xx response wraps its payload in :class:`SuccessResponse`
(``{"data": ...}``); every 4xx/5xx response is a :class:`ProblemDetail`
whose ``code`` names the :class:`~clusterdeck.core.errors.ClusterError`
that caused it, so clients can rebuild the typed error.

Doc-Types: API_REFERENCE
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field

from clusterdeck.execution.models import DeployMode, FailureCause

T = TypeVar("T")


# ── RFC 7807 Problem Detail ─────────────────────────────────────────────


class ErrorDetail(BaseModel):
    """Field-level error detail."""

    code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    field: str | None = Field(default=None, description="Field path if error is field-specific")


class ProblemDetail(BaseModel):
    """RFC 7807 «Problem Details for HTTP APIs».

    Error Codes:
        - ``NOT_FOUND`` (404): unknown submission or worker
        - ``CONFLICT`` (409): invalid state transition
        - ``INVALID_INPUT`` (400): malformed submission or registration
        - ``VOLUME_MISMATCH`` (400): worker mounts a different shared volume
        - ``VALIDATION_FAILED`` (422): request body failed schema validation
        - ``INTERNAL`` (500): unexpected server error

    Example:
        {
            "type": "about:blank",
            "title": "Unknown submission: sub-00042-1a2b3c4d",
            "status": 404,
            "code": "NOT_FOUND",
            "instance": "/api/v1/submissions/sub-00042-1a2b3c4d"
        }
    """

    type: str = Field(default="about:blank", description="Error type URI")
    title: str = Field(description="Short human-readable error summary")
    status: int = Field(description="HTTP status code")
    code: str = Field(default="INTERNAL", description="clusterdeck error code")
    detail: str = Field(default="", description="Human-readable explanation")
    instance: str = Field(default="", description="URI of the failing request")
    errors: list[ErrorDetail] = Field(default_factory=list)


class SuccessResponse(BaseModel, Generic[T]):
    """Standard success envelope."""

    data: T = Field(description="Response payload")
    elapsed_ms: float = Field(default=0.0, description="Server-side processing time in milliseconds")


# ── Submissions ──────────────────────────────────────────────────────────


class SubmitBody(BaseModel):
    """Request body for a new submission.

    Example:
        {
            "artifact_path": "/data/artifacts/wordcount.pyz",
            "entry_point": "wordcount.job:main",
            "args": ["/data/in", "/data/out"],
            "deploy_mode": "client"
        }
    """

    artifact_path: str = Field(description="Absolute artifact path on the shared volume")
    entry_point: str = Field(description="package.module[:function]")
    args: list[str] = Field(default_factory=list, description="Extra positional arguments")
    deploy_mode: DeployMode = Field(default=DeployMode.CLIENT)
    supervise: bool = Field(default=False, description="Recorded supervision flag (cluster mode only)")
    cores: int = Field(default=1, ge=1)
    memory_mb: int = Field(default=512, ge=1)
    name: str | None = Field(default=None, description="Display name")
    idempotency_key: str | None = Field(
        default=None, description="Retries carrying the same key return the original submission"
    )


class SubmissionAccepted(BaseModel):
    submission_id: str
    status: str


class HistoryEntry(BaseModel):
    status: str
    at: datetime


class SubmissionSchema(BaseModel):
    """Full Job Submission Record."""

    submission_id: str
    artifact_path: str
    entry_point: str
    args: list[str]
    deploy_mode: DeployMode
    supervise: bool
    cores: int
    memory_mb: int
    name: str | None = None
    status: str
    worker_id: str | None = None
    cause: str | None = None
    error: str | None = None
    output_location: str | None = None
    cancel_requested: bool = False
    created_at: datetime
    updated_at: datetime
    history: list[HistoryEntry] = Field(default_factory=list)


class AckBody(BaseModel):
    worker_id: str = Field(description="Worker acknowledging the assignment")


class ReportBody(BaseModel):
    """Terminal status reported by the executing worker."""

    worker_id: str
    status: Literal["SUCCEEDED", "FAILED"]
    cause: FailureCause | None = None
    error: str | None = None
    output_location: str | None = None


class LogAppendBody(BaseModel):
    lines: list[str] = Field(default_factory=list)


class LogChunk(BaseModel):
    """A page of task log lines and the offset to request next."""

    lines: list[str]
    next_offset: int


# ── Workers ──────────────────────────────────────────────────────────────


class RegisterWorkerBody(BaseModel):
    worker_id: str = Field(min_length=1)
    cores: int = Field(ge=1)
    memory_mb: int = Field(ge=1)
    hostname: str = ""
    volume_id: str | None = Field(default=None, description="Id of the shared volume the worker mounts")


class CapacitySchema(BaseModel):
    cores: int
    memory_mb: int


class WorkerSchema(BaseModel):
    worker_id: str
    capacity: CapacitySchema
    sequence: int
    registered_at: datetime
    hostname: str = ""
    volume_id: str | None = None
    state: str = "alive"
    reported_at: datetime | None = None
    used: CapacitySchema | None = None
    silence_s: float | None = None


class HeartbeatBody(BaseModel):
    timestamp: datetime | None = Field(default=None, description="Worker-side send time")
    active: list[str] | None = Field(
        default=None, description="Submissions the worker holds (acknowledged or awaiting ack)"
    )


class AssignmentSchema(BaseModel):
    submission_id: str
    artifact_path: str
    entry_point: str
    args: list[str] = Field(default_factory=list)
    deploy_mode: DeployMode = DeployMode.CLIENT


class HeartbeatReplySchema(BaseModel):
    assignments: list[AssignmentSchema] = Field(default_factory=list)
    cancellations: list[str] = Field(default_factory=list)


# ── Cluster ──────────────────────────────────────────────────────────────


class ClusterInfo(BaseModel):
    """What a client needs to stage inputs the workers can see."""

    shared_root: str
    volume_id: str | None = None
    version: str
    liveness_timeout: float
    scheduling_timeout: float


class ClusterSnapshot(BaseModel):
    volume_id: str | None = None
    started_at: datetime
    liveness_timeout: float
    workers: list[WorkerSchema] = Field(default_factory=list)
    submissions: list[SubmissionSchema] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any]) -> ClusterSnapshot:
        return cls.model_validate(snapshot)
