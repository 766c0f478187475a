"""
Cluster router — read-only monitoring of the coordinator's state.

Endpoints:
    GET /cluster        Live workers, all submission records and status counts
    GET /cluster/info   Shared root and volume id clients stage against

Doc-Types: API_REFERENCE
"""

from __future__ import annotations

from fastapi import APIRouter

from clusterdeck import __version__
from clusterdeck.api.deps import Coordinator, Settings
from clusterdeck.api.schemas import ClusterInfo, ClusterSnapshot, SuccessResponse

router = APIRouter(prefix="/cluster")


@router.get("", response_model=SuccessResponse[ClusterSnapshot])
def snapshot(coordinator: Coordinator):
    return SuccessResponse(data=ClusterSnapshot.from_snapshot(coordinator.snapshot()))


@router.get("/info", response_model=SuccessResponse[ClusterInfo])
def info(coordinator: Coordinator, settings: Settings):
    return SuccessResponse(
        data=ClusterInfo(
            shared_root=str(settings.shared_root),
            volume_id=coordinator.volume_id,
            version=__version__,
            liveness_timeout=coordinator.liveness_timeout,
            scheduling_timeout=coordinator.scheduling_timeout,
        )
    )
