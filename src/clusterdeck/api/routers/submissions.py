"""
Submissions router — submit, inspect and cancel jobs; worker ack/report; task logs.

Endpoints:
    POST   /submissions                     Submit a job (202)
    GET    /submissions                     List submission records
    GET    /submissions/{id}                Get one record
    POST   /submissions/{id}/cancel         Cancel
    POST   /submissions/{id}/ack            Worker acknowledges its assignment
    POST   /submissions/{id}/report         Worker reports a terminal status
    POST   /submissions/{id}/logs           Worker appends task log lines
    GET    /submissions/{id}/logs?offset=N  Client tails task log lines

Tags:
    clusterdeck, api, submissions, lifecycle

Doc-Types: API_REFERENCE
"""

from __future__ import annotations

from fastapi import APIRouter, Query

from clusterdeck.api.deps import Coordinator
from clusterdeck.api.schemas import (
    AckBody,
    LogAppendBody,
    LogChunk,
    ReportBody,
    SubmissionAccepted,
    SubmissionSchema,
    SubmitBody,
    SuccessResponse,
)
from clusterdeck.execution.models import (
    Capacity,
    SubmissionRecord,
    SubmissionRequest,
    SubmissionStatus,
    TaskOutcome,
)

router = APIRouter(prefix="/submissions")


def _schema(record: SubmissionRecord) -> SubmissionSchema:
    return SubmissionSchema.model_validate(record.to_dict())


@router.post("", response_model=SuccessResponse[SubmissionAccepted], status_code=202)
def submit(coordinator: Coordinator, body: SubmitBody):
    """Accept a submission; it is scheduled on the next scheduling cycle.

    Raises:
        400 INVALID_INPUT: Relative artifact path, malformed entry point, or
            ``supervise`` outside cluster deploy mode.
    """
    request = SubmissionRequest(
        artifact_path=body.artifact_path,
        entry_point=body.entry_point,
        args=tuple(body.args),
        deploy_mode=body.deploy_mode,
        supervise=body.supervise,
        resources=Capacity(cores=body.cores, memory_mb=body.memory_mb),
        name=body.name,
        idempotency_key=body.idempotency_key,
    )
    submission_id = coordinator.submit(request)
    status = coordinator.get_status(submission_id)
    return SuccessResponse(data=SubmissionAccepted(submission_id=submission_id, status=status.value))


@router.get("", response_model=SuccessResponse[list[SubmissionSchema]])
def list_submissions(
    coordinator: Coordinator,
    status: SubmissionStatus | None = Query(default=None, description="Filter by status"),
):
    """List submission records in submission order."""
    return SuccessResponse(data=[_schema(r) for r in coordinator.list_submissions(status)])


@router.get("/{submission_id}", response_model=SuccessResponse[SubmissionSchema])
def get_submission(coordinator: Coordinator, submission_id: str):
    """Full record including status history. 404 for unknown ids."""
    return SuccessResponse(data=_schema(coordinator.get(submission_id)))


@router.post("/{submission_id}/cancel", response_model=SuccessResponse[SubmissionSchema])
def cancel_submission(coordinator: Coordinator, submission_id: str):
    """Cancel a submission.

    SUBMITTED/SCHEDULED become CANCELLED at once; a RUNNING submission is
    flagged and finishes as FAILED (Cancelled) once its worker aborts it.

    Raises:
        409 CONFLICT: The submission already reached a terminal state.
    """
    coordinator.cancel(submission_id)
    return SuccessResponse(data=_schema(coordinator.get(submission_id)))


@router.post("/{submission_id}/ack", response_model=SuccessResponse[SubmissionSchema])
def acknowledge(coordinator: Coordinator, submission_id: str, body: AckBody):
    """SCHEDULED → RUNNING. Repeating it is a no-op; 409 if the submission was withdrawn meanwhile."""
    return SuccessResponse(data=_schema(coordinator.acknowledge(body.worker_id, submission_id)))


@router.post("/{submission_id}/report", response_model=SuccessResponse[SubmissionSchema])
def report(coordinator: Coordinator, submission_id: str, body: ReportBody):
    """RUNNING → SUCCEEDED | FAILED."""
    outcome = TaskOutcome(
        status=SubmissionStatus(body.status),
        cause=body.cause,
        error=body.error,
        output_location=body.output_location,
    )
    return SuccessResponse(data=_schema(coordinator.report(body.worker_id, submission_id, outcome)))


@router.post("/{submission_id}/logs", response_model=SuccessResponse[LogChunk])
def append_logs(coordinator: Coordinator, submission_id: str, body: LogAppendBody):
    next_offset = coordinator.append_logs(submission_id, body.lines)
    return SuccessResponse(data=LogChunk(lines=[], next_offset=next_offset))


@router.get("/{submission_id}/logs", response_model=SuccessResponse[LogChunk])
def get_logs(
    coordinator: Coordinator,
    submission_id: str,
    offset: int = Query(default=0, ge=0, description="Absolute line offset to read from"),
):
    lines, next_offset = coordinator.get_logs(submission_id, offset)
    return SuccessResponse(data=LogChunk(lines=lines, next_offset=next_offset))
