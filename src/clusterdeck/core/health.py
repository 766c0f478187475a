"""Health probes for the coordinator HTTP service.

Provides:

- **Response models**: ``HealthResponse``, ``CheckResult``, ``LivenessResponse``
- **``HealthCheck``**: a declarative dependency check with ``required`` /
  ``timeout_s`` knobs
- **``create_health_router()``**: ``/health``, ``/health/ready`` and
  ``/health/live`` for container healthchecks
- **``check_shared_volume()``**: the volume the coordinator hands out paths on
  must exist and carry the expected ``.volume-id`` marker

Quick start::

    from functools import partial
    from clusterdeck.core.health import HealthCheck, check_shared_volume, create_health_router

    router = create_health_router(
        "clusterdeck-coordinator",
        version="0.1.0",
        checks=[HealthCheck("shared_volume", partial(check_shared_volume, "/data", volume_id))],
    )
    app.include_router(router)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from clusterdeck.core.errors import VolumeMismatchError

# Set when the service first imports this module.
_START_TIME = time.monotonic()


# ── Response Models ──────────────────────────────────────────────────────


class CheckResult(BaseModel):
    """Result of a single dependency health check."""

    status: Literal["healthy", "degraded", "unhealthy"]
    latency_ms: float | None = None
    error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health response envelope returned from ``GET /health``."""

    status: Literal["healthy", "degraded", "unhealthy"] = "healthy"
    service: str = ""
    version: str = ""
    uptime_s: float = Field(default_factory=lambda: round(time.monotonic() - _START_TIME, 1))
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    checks: dict[str, CheckResult] = Field(default_factory=dict)


class LivenessResponse(BaseModel):
    """Response for liveness probes — always ``{"status": "alive"}``."""

    status: str = "alive"


# ── Health Check Definition ──────────────────────────────────────────────


@dataclass
class HealthCheck:
    """Declarative description of a single dependency health check.

    Parameters
    ----------
    name : str
        Dependency name (e.g. ``"shared_volume"``).
    check_fn : () -> Awaitable[bool]
        Async callable.  Should return ``True`` or raise on failure.
    required : bool
        If *True*, failure makes the overall status ``unhealthy``;
        otherwise only ``degraded``.
    timeout_s : float
        Max seconds to wait before the check is considered failed.
    """

    name: str
    check_fn: Callable[[], Awaitable[bool]]
    required: bool = True
    timeout_s: float = 5.0


async def check_shared_volume(root: str | Path, expected_volume_id: str | None = None) -> bool:
    """The shared root exists, is a directory and carries the expected volume id."""
    path = Path(root)
    if not path.is_dir():
        raise FileNotFoundError(f"shared root {path} is not mounted")
    if expected_volume_id:
        marker = path / ".volume-id"
        actual = marker.read_text(encoding="utf-8").strip() if marker.exists() else ""
        if actual != expected_volume_id:
            raise VolumeMismatchError(expected_volume_id, actual or "<none>")
    return True


# ── Internal helpers ─────────────────────────────────────────────────────


async def _run_checks(checks: list[HealthCheck]) -> dict[str, CheckResult]:
    """Execute all checks in parallel and return name → result."""

    async def _one(hc: HealthCheck) -> tuple[str, CheckResult]:
        start = time.monotonic()
        try:
            await asyncio.wait_for(hc.check_fn(), timeout=hc.timeout_s)
            elapsed = (time.monotonic() - start) * 1000
            return hc.name, CheckResult(status="healthy", latency_ms=round(elapsed, 2))
        except TimeoutError:
            return hc.name, CheckResult(status="unhealthy", error="timeout")
        except Exception as exc:  # noqa: BLE001
            elapsed = (time.monotonic() - start) * 1000
            return hc.name, CheckResult(
                status="unhealthy",
                latency_ms=round(elapsed, 2),
                error=str(exc)[:200],
            )

    pairs = await asyncio.gather(*[_one(hc) for hc in checks])
    return dict(pairs)


def _compute_status(
    check_results: dict[str, CheckResult],
    checks: list[HealthCheck],
) -> Literal["healthy", "degraded", "unhealthy"]:
    check_map = {hc.name: hc for hc in checks}
    any_required_down = False
    any_optional_down = False

    for name, result in check_results.items():
        if result.status != "healthy":
            hc = check_map.get(name)
            if hc and hc.required:
                any_required_down = True
            else:
                any_optional_down = True

    if any_required_down:
        return "unhealthy"
    if any_optional_down:
        return "degraded"
    return "healthy"


# ── Router Factory ───────────────────────────────────────────────────────


def create_health_router(
    service_name: str,
    version: str,
    checks: list[HealthCheck] | None = None,
    prefix: str = "/health",
) -> APIRouter:
    """Create an ``APIRouter`` with health endpoints.

    ``GET {prefix}``         Runs all checks; 503 when unhealthy.
    ``GET {prefix}/ready``   Readiness probe; 503 unless every check passes.
    ``GET {prefix}/live``    Liveness probe; always 200.
    """
    router = APIRouter(tags=["health"])
    _checks: list[HealthCheck] = checks or []

    def _make_response(
        status: Literal["healthy", "degraded", "unhealthy"],
        check_results: dict[str, CheckResult],
    ) -> HealthResponse:
        return HealthResponse(
            status=status,
            service=service_name,
            version=version,
            checks=check_results,
        )

    @router.get(prefix, response_model=HealthResponse)
    async def health() -> JSONResponse:
        """Primary health — runs all dependency checks."""
        check_results = await _run_checks(_checks)
        status = _compute_status(check_results, _checks)
        code = 503 if status == "unhealthy" else 200
        return JSONResponse(content=_make_response(status, check_results).model_dump(), status_code=code)

    @router.get(f"{prefix}/ready", response_model=HealthResponse)
    async def readiness() -> JSONResponse:
        """Readiness probe — 503 if any dependency is down."""
        check_results = await _run_checks(_checks)
        status = _compute_status(check_results, _checks)
        code = 503 if status != "healthy" else 200
        return JSONResponse(content=_make_response(status, check_results).model_dump(), status_code=code)

    @router.get(f"{prefix}/live", response_model=LivenessResponse)
    async def liveness() -> LivenessResponse:
        """Liveness probe — always 200 if the process is running."""
        return LivenessResponse()

    return router


__all__ = [
    "CheckResult",
    "HealthCheck",
    "HealthResponse",
    "LivenessResponse",
    "check_shared_volume",
    "create_health_router",
]
