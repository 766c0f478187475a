"""
FastAPI dependency injection — settings and the coordinator singleton.

Usage in routers::

    from clusterdeck.api.deps import Coordinator, Settings

    @router.get("/things")
    def list_things(coordinator: Coordinator, settings: Settings):
        ...

The coordinator lives on ``app.state`` so a test can build an app around
its own instance (with a fake clock) and inspect it directly.

Tags:
    clusterdeck, api, dependency-injection

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from clusterdeck.core.settings import ClusterSettings, get_settings
from clusterdeck.execution.coordinator import ClusterCoordinator


def get_coordinator(request: Request) -> ClusterCoordinator:
    """The coordinator owned by the running application."""
    return request.app.state.coordinator


Settings = Annotated[ClusterSettings, Depends(get_settings)]
Coordinator = Annotated[ClusterCoordinator, Depends(get_coordinator)]

__all__ = ["Coordinator", "Settings", "get_coordinator", "get_settings"]
