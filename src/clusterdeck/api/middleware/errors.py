"""
Error-handling middleware — maps clusterdeck errors to RFC 7807 responses.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from clusterdeck.api.schemas import ErrorDetail, ProblemDetail
from clusterdeck.core.errors import ClusterError
from clusterdeck.core.logging import get_logger

logger = get_logger(__name__)

# ── Error code → HTTP status mapping ─────────────────────────────────────

ERROR_CODE_TO_STATUS: dict[str, int] = {
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "INVALID_INPUT": 400,
    "VOLUME_MISMATCH": 400,
    "PATH_UNRESOLVED": 400,
    "BUILD_FAILED": 400,
    "VALIDATION_FAILED": 422,
    "SCHEDULING_TIMEOUT": 409,
    "STAGING_FAILED": 500,
    "UNAVAILABLE": 503,
    "INTERNAL": 500,
}


def status_for_error_code(code: str) -> int:
    """Resolve an error code to HTTP status, defaulting to 500."""
    return ERROR_CODE_TO_STATUS.get(code, 500)


def problem_response(
    *,
    status: int,
    title: str,
    code: str = "INTERNAL",
    detail: str = "",
    instance: str = "",
    errors: list[dict[str, Any]] | None = None,
) -> JSONResponse:
    """Build an RFC 7807 JSON error response."""
    body = ProblemDetail(
        title=title,
        status=status,
        code=code,
        detail=detail,
        instance=instance,
    )
    if errors:
        body.errors = [ErrorDetail(**e) for e in errors]
    return JSONResponse(
        status_code=status,
        content=body.model_dump(),
        media_type="application/problem+json",
    )


async def cluster_error_handler(request: Request, exc: ClusterError) -> JSONResponse:
    """Typed clusterdeck errors → Problem Details with the error's code."""
    status = status_for_error_code(exc.code)
    logger.info("api.error", code=exc.code, status=status, path=request.url.path, error=exc.message)
    return problem_response(
        status=status,
        title=exc.message,
        code=exc.code,
        detail=exc.category.value,
        instance=str(request.url.path),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Schema validation failures → 422 Problem Details with field errors."""
    errors = [
        {
            "code": str(err.get("type", "invalid")).upper(),
            "message": str(err.get("msg", "")),
            "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body") or None,
        }
        for err in exc.errors()
    ]
    return problem_response(
        status=422,
        title="Request validation failed",
        code="VALIDATION_FAILED",
        instance=str(request.url.path),
        errors=errors,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions — returns 500 with ProblemDetail."""
    logger.exception("api.unhandled_error", path=request.url.path)
    return problem_response(
        status=500,
        title="Internal Server Error",
        detail=str(exc) if request.app.state.settings.debug else "An unexpected error occurred.",
        instance=str(request.url.path),
    )
