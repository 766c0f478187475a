"""Execution layer: the coordinator state machine, workers and task runner.

    models.py        Submission / worker records and coordinator ⇄ worker messages
    coordinator.py   ClusterCoordinator (in-memory state machine)
    transport.py     CoordinatorClient (httpx) used by workers and clients
    runner.py        TaskRunner (one artifact, one subprocess)
    worker.py        WorkerAgent (register, heartbeat, run, report)
    retry.py         Backoff strategies for flaky I/O
    packaging/       ArtifactBuilder (.pyz Job Artifacts)
"""

from clusterdeck.execution.coordinator import ClusterCoordinator, TickResult
from clusterdeck.execution.models import (
    Assignment,
    Capacity,
    DeployMode,
    EntryPoint,
    FailureCause,
    HeartbeatReply,
    SubmissionRecord,
    SubmissionRequest,
    SubmissionStatus,
    TaskOutcome,
    WorkerRegistration,
)

__all__ = [
    "Assignment",
    "Capacity",
    "ClusterCoordinator",
    "DeployMode",
    "EntryPoint",
    "FailureCause",
    "HeartbeatReply",
    "SubmissionRecord",
    "SubmissionRequest",
    "SubmissionStatus",
    "TaskOutcome",
    "TickResult",
    "WorkerRegistration",
]
