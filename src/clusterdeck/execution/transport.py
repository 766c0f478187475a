"""CoordinatorClient — typed HTTP access to the Cluster Coordinator.

Workers and the submission client talk to the coordinator only through
this class.  It speaks the ``/api/v1`` JSON API, unwraps the
``{"data": ...}`` envelope and turns RFC 7807 problem responses back into
the :mod:`clusterdeck.core.errors` classes the coordinator raised::

    404 NOT_FOUND        → NotFoundError
    409 CONFLICT         → InvalidTransitionError
    400 VOLUME_MISMATCH  → VolumeMismatchError
    400/422 validation   → InvalidSubmissionError
    connection failures,
    502/503/504          → TransportError (retryable)

Retryable failures of idempotent calls are retried with
:class:`ExponentialBackoff` before the error is surfaced.  Reads, worker
registration, heartbeats, acks and reports are safe to resend; ``submit``
carries an idempotency key so a resend returns the original submission.
Cancel, log appends and deregistration are sent once.

Tests inject FastAPI's ``TestClient`` (an ``httpx.Client``) so the whole
worker/client stack runs against an in-process coordinator.
"""

from __future__ import annotations

import dataclasses
import time
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

import httpx

from clusterdeck.core.errors import (
    ClusterError,
    InvalidSubmissionError,
    InvalidTransitionError,
    NotFoundError,
    TransportError,
    VolumeMismatchError,
)
from clusterdeck.core.logging import get_logger
from clusterdeck.execution.models import (
    Capacity,
    HeartbeatReply,
    SubmissionRequest,
    SubmissionStatus,
    TaskOutcome,
)
from clusterdeck.execution.retry import ExponentialBackoff, RetryContext, RetryStrategy

logger = get_logger(__name__)

_RETRYABLE_STATUS = {502, 503, 504}
_VALIDATION_CODES = {"INVALID_INPUT", "VALIDATION_FAILED", "PATH_UNRESOLVED", "BUILD_FAILED"}


def _error_from_response(response: httpx.Response) -> ClusterError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    code = body.get("code", "")
    title = body.get("title") or f"HTTP {response.status_code} from coordinator"
    status = response.status_code

    error: ClusterError
    if status == 404 or code == "NOT_FOUND":
        error = NotFoundError(title)
    elif status == 409 or code == "CONFLICT":
        error = InvalidTransitionError("", "", message=title)
    elif code == "VOLUME_MISMATCH":
        error = VolumeMismatchError("", "", message=title)
    elif code in _VALIDATION_CODES or status in (400, 422):
        error = InvalidSubmissionError(title)
    elif status in _RETRYABLE_STATUS:
        error = TransportError(title)
    else:
        error = ClusterError(title)
    return error.with_context(http_status=status, url=str(response.request.url))


def _unwrap(response: httpx.Response) -> Any:
    if response.status_code == 204 or not response.content:
        return None
    return response.json().get("data")


class CoordinatorClient:
    """HTTP client for the coordinator API.

    Parameters
    ----------
    base_url:
        Coordinator address, e.g. ``http://coordinator:7077``.
    api_prefix:
        Route prefix (``/api/v1``).
    client:
        Pre-built ``httpx.Client`` (``fastapi.testclient.TestClient`` in tests).
    strategy:
        Retry strategy for retryable failures.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:7077",
        *,
        api_prefix: str = "/api/v1",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
        strategy: RetryStrategy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_prefix = api_prefix.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)
        self._strategy = strategy or ExponentialBackoff(
            max_retries=2, base_delay=0.5, max_delay=5.0, retryable_errors=(TransportError,)
        )
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> CoordinatorClient:
        return cls(
            settings.coordinator_url,
            api_prefix=settings.api_prefix,
            timeout=settings.request_timeout,
            **kwargs,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> CoordinatorClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # -- transport -----------------------------------------------------------

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.api_prefix}{path}"
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise TransportError(
                f"Cannot reach coordinator at {self.base_url}: {exc}", cause=exc
            ).with_context(url=url) from exc
        if response.status_code >= 400:
            raise _error_from_response(response)
        return response

    def _request(self, method: str, path: str, *, retry: bool = True, **kwargs: Any) -> Any:
        if not retry:
            response = self._send(method, path, **kwargs)
            return _unwrap(response)

        def _on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning("transport.retry", method=method, path=path, attempt=attempt, delay=round(delay, 2), error=str(error))

        context = RetryContext(self._strategy, on_retry=_on_retry, sleep=self._sleep)
        response = context.run(self._send, method, path, **kwargs)
        return _unwrap(response)

    # -- submissions ---------------------------------------------------------

    def submit(self, request: SubmissionRequest) -> str:
        if not request.idempotency_key:
            request = dataclasses.replace(request, idempotency_key=uuid.uuid4().hex)
        data = self._request("POST", "/submissions", json=request.to_dict())
        return data["submission_id"]

    def get(self, submission_id: str) -> dict[str, Any]:
        return self._request("GET", f"/submissions/{submission_id}")

    def get_status(self, submission_id: str) -> SubmissionStatus:
        return SubmissionStatus(self.get(submission_id)["status"])

    def list_submissions(self, status: SubmissionStatus | None = None) -> list[dict[str, Any]]:
        params = {"status": status.value} if status else None
        return self._request("GET", "/submissions", params=params)

    def cancel(self, submission_id: str) -> dict[str, Any]:
        return self._request("POST", f"/submissions/{submission_id}/cancel", retry=False)

    def acknowledge(self, worker_id: str, submission_id: str) -> dict[str, Any]:
        return self._request("POST", f"/submissions/{submission_id}/ack", json={"worker_id": worker_id})

    def report(self, worker_id: str, submission_id: str, outcome: TaskOutcome) -> dict[str, Any]:
        body = {"worker_id": worker_id, **outcome.to_dict()}
        return self._request("POST", f"/submissions/{submission_id}/report", json=body)

    def append_logs(self, submission_id: str, lines: Iterable[str]) -> int:
        data = self._request("POST", f"/submissions/{submission_id}/logs", json={"lines": list(lines)}, retry=False)
        return data["next_offset"]

    def get_logs(self, submission_id: str, offset: int = 0) -> tuple[list[str], int]:
        data = self._request("GET", f"/submissions/{submission_id}/logs", params={"offset": offset})
        return data["lines"], data["next_offset"]

    # -- workers -------------------------------------------------------------

    def register_worker(
        self,
        worker_id: str,
        capacity: Capacity,
        *,
        hostname: str = "",
        volume_id: str | None = None,
    ) -> dict[str, Any]:
        body = {"worker_id": worker_id, **capacity.to_dict(), "hostname": hostname, "volume_id": volume_id}
        return self._request("POST", "/workers", json=body)

    def heartbeat(
        self,
        worker_id: str,
        timestamp: datetime | None = None,
        *,
        active: Iterable[str] | None = None,
    ) -> HeartbeatReply:
        body = {
            "timestamp": timestamp.isoformat() if timestamp else None,
            "active": None if active is None else list(active),
        }
        data = self._request("POST", f"/workers/{worker_id}/heartbeat", json=body)
        return HeartbeatReply.from_dict(data)

    def deregister(self, worker_id: str) -> None:
        self._request("DELETE", f"/workers/{worker_id}", retry=False)

    # -- cluster -------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        return self._request("GET", "/cluster")

    def info(self) -> dict[str, Any]:
        return self._request("GET", "/cluster/info")


__all__ = ["CoordinatorClient"]
