"""
FastAPI application factory for the Cluster Coordinator.

``create_app()`` wires middleware, routers, error handlers and the
lifespan that runs the coordinator's scheduling loop into a single
``FastAPI`` instance.

Manifesto:
    The app factory is the single composition root. The coordinator
    instance, its scheduler thread and every router are wired here so
    the state machine itself never touches FastAPI.

Tags:
    clusterdeck, api, app-factory, composition-root, FastAPI

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from functools import partial

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from clusterdeck import __version__
from clusterdeck.api.middleware.errors import (
    cluster_error_handler,
    unhandled_exception_handler,
    validation_error_handler,
)
from clusterdeck.api.middleware.request_id import RequestIDMiddleware
from clusterdeck.core.errors import ClusterError
from clusterdeck.core.health import HealthCheck, check_shared_volume, create_health_router
from clusterdeck.core.logging import get_logger
from clusterdeck.core.settings import ClusterSettings, get_settings
from clusterdeck.deploy.volume import SharedVolume
from clusterdeck.execution.coordinator import ClusterCoordinator

logger = get_logger("clusterdeck.api")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the scheduling loop on startup and stop it on shutdown."""
    settings: ClusterSettings = app.state.settings
    coordinator: ClusterCoordinator = app.state.coordinator
    logger.info(
        "coordinator.starting",
        version=app.version,
        shared_root=str(settings.shared_root),
        volume_id=coordinator.volume_id,
    )
    if app.state.run_scheduler:
        coordinator.start_background(settings.scheduling_interval)
    yield
    coordinator.stop()
    logger.info("coordinator.shutting_down")


def _prepare_volume(settings: ClusterSettings) -> str | None:
    try:
        return SharedVolume(settings.shared_root).ensure()
    except ClusterError as exc:
        logger.warning("coordinator.volume_unavailable", root=str(settings.shared_root), error=exc.message)
        return None


def create_app(
    *,
    settings: ClusterSettings | None = None,
    coordinator: ClusterCoordinator | None = None,
    run_scheduler: bool = True,
) -> FastAPI:
    """Build and return a fully-configured coordinator application.

    Parameters
    ----------
    settings : ClusterSettings | None
        Override settings (useful for testing).  When ``None`` the cached
        singleton from :func:`get_settings` is used.
    coordinator : ClusterCoordinator | None
        Pre-built coordinator (tests pass one with a fake clock).  When
        ``None`` one is created from *settings* and the shared volume is
        initialised so workers can compare volume ids.
    run_scheduler : bool
        Run :meth:`ClusterCoordinator.tick` in a background thread while
        the app is running.
    """
    settings = settings or get_settings()
    if coordinator is None:
        coordinator = ClusterCoordinator.from_settings(settings, volume_id=_prepare_volume(settings))

    app = FastAPI(
        title="clusterdeck coordinator",
        version=__version__,
        lifespan=lifespan,
        docs_url=f"{settings.api_prefix}/docs",
        openapi_url=f"{settings.api_prefix}/openapi.json",
    )

    app.state.settings = settings
    app.state.coordinator = coordinator
    app.state.run_scheduler = run_scheduler

    app.dependency_overrides[get_settings] = lambda: settings

    # ── Middleware (outermost → innermost) ────────────────────────────
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Exception handlers ───────────────────────────────────────────
    app.add_exception_handler(ClusterError, cluster_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # ── Routers ──────────────────────────────────────────────────────
    from clusterdeck.api.routers import cluster, submissions, workers

    # Health endpoints at root level (no prefix) for container healthchecks
    app.include_router(
        create_health_router(
            "clusterdeck-coordinator",
            version=__version__,
            checks=[
                HealthCheck(
                    "shared_volume",
                    partial(check_shared_volume, settings.shared_root, coordinator.volume_id),
                )
            ],
        ),
    )

    prefix = settings.api_prefix
    app.include_router(submissions.router, prefix=prefix, tags=["submissions"])
    app.include_router(workers.router, prefix=prefix, tags=["workers"])
    app.include_router(cluster.router, prefix=prefix, tags=["cluster"])

    return app


def create_app_from_env() -> FastAPI:
    """Zero-argument factory for ``uvicorn --factory``."""
    return create_app()
