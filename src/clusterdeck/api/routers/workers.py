"""
Workers router — registration, heartbeats and deregistration.

Endpoints:
    POST   /workers                   Register (idempotent per worker id)
    POST   /workers/{id}/heartbeat    Refresh liveness; returns assignments + cancellations
    DELETE /workers/{id}              Deregister; unfinished submissions become LOST
    GET    /workers                   List live workers

Tags:
    clusterdeck, api, workers, liveness

Doc-Types: API_REFERENCE
"""

from __future__ import annotations

from fastapi import APIRouter, Response

from clusterdeck.api.deps import Coordinator
from clusterdeck.api.schemas import (
    HeartbeatBody,
    HeartbeatReplySchema,
    RegisterWorkerBody,
    SuccessResponse,
    WorkerSchema,
)
from clusterdeck.execution.models import Capacity

router = APIRouter(prefix="/workers")


@router.post("", response_model=SuccessResponse[WorkerSchema], status_code=201)
def register_worker(coordinator: Coordinator, body: RegisterWorkerBody):
    """Register a worker.

    Raises:
        400 VOLUME_MISMATCH: The worker mounts a different shared volume.
    """
    registration = coordinator.register_worker(
        body.worker_id,
        Capacity(cores=body.cores, memory_mb=body.memory_mb),
        hostname=body.hostname,
        volume_id=body.volume_id,
    )
    return SuccessResponse(data=WorkerSchema.model_validate(registration.to_dict()))


@router.get("", response_model=SuccessResponse[list[WorkerSchema]])
def list_workers(coordinator: Coordinator):
    return SuccessResponse(
        data=[WorkerSchema.model_validate(w.to_dict()) for w in coordinator.list_workers()]
    )


@router.post("/{worker_id}/heartbeat", response_model=SuccessResponse[HeartbeatReplySchema])
def heartbeat(coordinator: Coordinator, worker_id: str, body: HeartbeatBody | None = None):
    """Heartbeat. 404 tells the worker to re-register.

    When the body lists the worker's ``active`` submissions, delivered but
    unacknowledged work missing from it is delivered again and RUNNING work
    missing from it becomes LOST.
    """
    body = body or HeartbeatBody()
    reply = coordinator.heartbeat(worker_id, body.timestamp, active=body.active)
    return SuccessResponse(data=HeartbeatReplySchema.model_validate(reply.to_dict()))


@router.delete("/{worker_id}", status_code=204)
def deregister_worker(coordinator: Coordinator, worker_id: str):
    coordinator.deregister(worker_id)
    return Response(status_code=204)
