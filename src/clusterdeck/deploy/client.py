"""Submission Client — build, stage, submit and follow a lesson job to completion.

``SubmissionClient.run`` is the whole deployment pipeline seen from the
author's terminal::

    build (ArtifactBuilder) → stage (shared volume) → submit (coordinator)
        → poll status until terminal → RunReport

Deploy modes decide what is followed while polling:

- ``client``: task log lines are tailed to the terminal as they arrive
- ``cluster``: only status transitions are shown

Polling is bounded by ``poll_timeout``; hitting it produces a ``Timeout``
report (exit code 4), never an indefinite wait.

Exit codes (:attr:`RunReport.exit_code`)::

    0  SUCCEEDED
    1  FAILED
    2  LOST
    3  CANCELLED
    4  Timeout (poll ceiling reached)
    5  build / staging / submission error (no submission id exists)

Errors before a submission id exists are raised as the typed
:class:`~clusterdeck.core.errors.ClusterError`; the CLI maps them to 5.
"""

from __future__ import annotations

import tempfile
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from clusterdeck.core.errors import TransportError, VolumeMismatchError
from clusterdeck.core.logging import get_logger
from clusterdeck.deploy.staging import StagedDeployment, stage
from clusterdeck.deploy.volume import SharedVolume
from clusterdeck.execution.models import (
    Capacity,
    DeployMode,
    SubmissionRequest,
    SubmissionStatus,
)
from clusterdeck.execution.packaging import ArtifactBuilder
from clusterdeck.execution.transport import CoordinatorClient

logger = get_logger(__name__)

EXIT_CODES: dict[SubmissionStatus, int] = {
    SubmissionStatus.SUCCEEDED: 0,
    SubmissionStatus.FAILED: 1,
    SubmissionStatus.LOST: 2,
    SubmissionStatus.CANCELLED: 3,
}
EXIT_TIMEOUT = 4
EXIT_PRE_SUBMISSION = 5


@dataclass
class RunReport:
    """Terminal outcome of one submission as seen by the client."""

    submission_id: str
    status: SubmissionStatus | None
    cause: str | None = None
    error: str | None = None
    output_location: str | None = None
    worker_id: str | None = None
    timed_out: bool = False
    elapsed_s: float = 0.0
    artifact_path: str | None = None
    log_lines: int = 0

    @property
    def exit_code(self) -> int:
        if self.timed_out or self.status is None:
            return EXIT_TIMEOUT
        return EXIT_CODES.get(self.status, EXIT_TIMEOUT)

    @property
    def outcome(self) -> str:
        return "Timeout" if self.timed_out or self.status is None else self.status.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "outcome": self.outcome,
            "status": self.status.value if self.status else None,
            "cause": self.cause,
            "error": self.error,
            "output_location": self.output_location,
            "worker_id": self.worker_id,
            "timed_out": self.timed_out,
            "elapsed_s": round(self.elapsed_s, 3),
            "artifact_path": self.artifact_path,
            "log_lines": self.log_lines,
            "exit_code": self.exit_code,
        }


def _ignore(_: Any) -> None:
    return None


class SubmissionClient:
    """Drives a job from local sources to a terminal status.

    Parameters
    ----------
    coordinator:
        HTTP client for the coordinator.
    shared_root:
        This machine's mount of the shared volume.  Must be the same
        logical path (and the same volume) the workers use.
    on_status / on_log:
        Callbacks for status transitions and tailed log lines.
    """

    def __init__(
        self,
        coordinator: CoordinatorClient,
        shared_root: str | Path,
        *,
        poll_interval: float = 2.0,
        poll_timeout: float = 3600.0,
        builder: ArtifactBuilder | None = None,
        on_status: Callable[[SubmissionStatus], None] = _ignore,
        on_log: Callable[[str], None] = _ignore,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.coordinator = coordinator
        self.volume = SharedVolume(shared_root)
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.builder = builder or ArtifactBuilder()
        self.on_status = on_status
        self.on_log = on_log
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> SubmissionClient:
        return cls(
            CoordinatorClient.from_settings(settings),
            settings.shared_root,
            poll_interval=settings.poll_interval,
            poll_timeout=settings.poll_timeout,
            **kwargs,
        )

    # -- pipeline ------------------------------------------------------------

    def run(
        self,
        entry_point: str,
        source_units: Sequence[str | Path],
        dataset_paths: Sequence[str | Path] = (),
        *,
        args: Sequence[str] = (),
        deploy_mode: DeployMode = DeployMode.CLIENT,
        supervise: bool = False,
        resources: Capacity | None = None,
        name: str | None = None,
        source_root: str | Path | None = None,
    ) -> RunReport:
        """Build, stage, submit and wait.

        Raises:
            BuildError, StagingError, VolumeMismatchError, InvalidSubmissionError,
            TransportError: before a submission id exists.
        """
        name = name or entry_point.partition(":")[0].rsplit(".", 1)[-1] or "job"
        with tempfile.TemporaryDirectory(prefix="clusterdeck_run_") as tmp:
            artifact, _manifest = self.builder.build(entry_point, source_units, Path(tmp) / f"{name}.pyz")
            self.check_volume()
            staged = stage(artifact, dataset_paths, self.volume.root, source_root=source_root)

        submission_id = self.submit_staged(
            staged,
            entry_point,
            args=args,
            deploy_mode=deploy_mode,
            supervise=supervise,
            resources=resources,
            name=name,
        )
        report = self.wait(submission_id, deploy_mode=deploy_mode)
        report.artifact_path = str(staged.artifact_path)
        return report

    def check_volume(self) -> str:
        """Ensure the local shared root is the volume the coordinator uses."""
        local_id = self.volume.ensure()
        remote_id = self.coordinator.info().get("volume_id")
        if remote_id and local_id != remote_id:
            raise VolumeMismatchError(remote_id, local_id).with_context(path=str(self.volume.root))
        return local_id

    def submit_staged(
        self,
        staged: StagedDeployment,
        entry_point: str,
        *,
        args: Sequence[str] = (),
        deploy_mode: DeployMode = DeployMode.CLIENT,
        supervise: bool = False,
        resources: Capacity | None = None,
        name: str | None = None,
    ) -> str:
        request = SubmissionRequest(
            artifact_path=str(staged.artifact_path),
            entry_point=entry_point,
            args=tuple(args),
            deploy_mode=deploy_mode,
            supervise=supervise,
            resources=resources or Capacity(),
            name=name,
        )
        submission_id = self.coordinator.submit(request)
        logger.info("client.submitted", submission_id=submission_id, artifact=request.artifact_path)
        return submission_id

    def wait(self, submission_id: str, *, deploy_mode: DeployMode = DeployMode.CLIENT) -> RunReport:
        """Poll until the submission is terminal or ``poll_timeout`` elapses."""
        started = self._clock()
        deadline = started + self.poll_timeout
        tail = deploy_mode == DeployMode.CLIENT
        offset = 0
        lines_seen = 0
        last_status: SubmissionStatus | None = None
        record: dict[str, Any] = {}

        while True:
            try:
                record = self.coordinator.get(submission_id)
                status = SubmissionStatus(record["status"])
                if status != last_status:
                    last_status = status
                    self.on_status(status)
                if tail:
                    lines, offset = self.coordinator.get_logs(submission_id, offset)
                    for line in lines:
                        self.on_log(line)
                    lines_seen += len(lines)
            except TransportError as exc:
                logger.warning("client.poll_failed", submission_id=submission_id, error=exc.message)
                status = last_status

            if status is not None and status.is_terminal:
                return RunReport(
                    submission_id=submission_id,
                    status=status,
                    cause=record.get("cause"),
                    error=record.get("error"),
                    output_location=record.get("output_location"),
                    worker_id=record.get("worker_id"),
                    elapsed_s=self._clock() - started,
                    log_lines=lines_seen,
                )
            if self._clock() >= deadline:
                logger.warning("client.poll_timeout", submission_id=submission_id, status=status.value if status else None)
                return RunReport(
                    submission_id=submission_id,
                    status=None,
                    worker_id=record.get("worker_id"),
                    timed_out=True,
                    elapsed_s=self._clock() - started,
                    log_lines=lines_seen,
                )
            self._sleep(self.poll_interval)


__all__ = [
    "EXIT_CODES",
    "EXIT_PRE_SUBMISSION",
    "EXIT_TIMEOUT",
    "RunReport",
    "SubmissionClient",
]
